"""Run store abstraction for workflow state persistence."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional, Protocol

from ..errors import InvalidRunTransition, StoreConsistencyError
from .models import (
    RunStatus,
    StepEvent,
    StepExecution,
    StepOutcome,
    StepStatus,
    WorkflowRun,
    utcnow,
)


class RunStore(Protocol):
    """Protocol for workflow run persistence backends.

    ``claim_attempt`` and ``record_step_outcome`` are compare-and-set writes:
    each either applies atomically (projection update plus history event) or
    raises :class:`~atelier.errors.StoreConsistencyError`.
    """

    async def create_run(self, workflow_type: str, args: dict[str, Any]) -> str:
        """Persist a new ``running`` run and return its id."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run by id."""

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        """Return all runs, optionally filtered by status."""

    async def mark_run_status(self, run_id: str, status: RunStatus) -> None:
        """Move a run forward. Leaving a terminal state raises ``InvalidRunTransition``."""

    async def advance_cursor(self, run_id: str, cursor: str) -> None:
        """Record the last step the executor finished for the run."""

    async def append_or_get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution:
        """Return the step record, creating an unclaimed placeholder if needed."""

    async def get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution | None:
        """Return the step record if it exists."""

    async def claim_attempt(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ) -> StepExecution:
        """Start ``attempt`` for ``owner``; the stored attempt must be ``attempt - 1``.

        With ``lease_seconds`` the claim holds a lease until that many seconds
        from now. A pending attempt under another owner's live lease cannot be
        claimed.
        """

    async def record_step_outcome(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        outcome: StepOutcome,
        owner: Optional[str] = None,
    ) -> StepExecution:
        """Finish ``attempt``; it must be the stored, still pending attempt.

        When ``owner`` is given the attempt must also have been claimed by it.
        """

    async def list_steps(self, run_id: str) -> list[StepExecution]:
        """Return the latest state of every step of a run."""

    async def step_history(self, run_id: str) -> list[StepEvent]:
        """Return the append-only event log of a run in write order."""


def lease_expiry(lease_seconds: Optional[float], now: Optional[datetime] = None) -> Optional[datetime]:
    if lease_seconds is None:
        return None
    return (now or utcnow()) + timedelta(seconds=lease_seconds)


def ensure_claimable(
    step: StepExecution,
    attempt: int,
    owner: Optional[str] = None,
    now: Optional[datetime] = None,
) -> None:
    """Raise ``StoreConsistencyError`` unless ``attempt`` may be started on ``step``."""
    if step.status.is_terminal:
        raise StoreConsistencyError(
            f"Step {step.step_name}[{step.step_key}] of run {step.run_id} is already {step.status.value}"
        )
    if step.attempt != attempt - 1:
        raise StoreConsistencyError(
            f"Step {step.step_name}[{step.step_key}] of run {step.run_id} is at attempt "
            f"{step.attempt}, cannot claim attempt {attempt}"
        )
    if step.lease_held_by_other(owner, now):
        raise StoreConsistencyError(
            f"Step {step.step_name}[{step.step_key}] of run {step.run_id} attempt {step.attempt} "
            f"is leased to {step.claimed_by} until {step.lease_expires_at.isoformat()}"
        )


def ensure_recordable(step: StepExecution, attempt: int, owner: Optional[str] = None) -> None:
    """Raise ``StoreConsistencyError`` unless ``attempt`` is the pending attempt of ``step``."""
    if step.attempt != attempt or step.status is not StepStatus.PENDING:
        raise StoreConsistencyError(
            f"Step {step.step_name}[{step.step_key}] of run {step.run_id} is at attempt "
            f"{step.attempt} ({step.status.value}), cannot record attempt {attempt}"
        )
    if owner is not None and step.claimed_by is not None and step.claimed_by != owner:
        raise StoreConsistencyError(
            f"Step {step.step_name}[{step.step_key}] of run {step.run_id} attempt {attempt} "
            f"is claimed by {step.claimed_by}, not {owner}"
        )


def check_transition(run_id: str, current: RunStatus, new: RunStatus) -> bool:
    """Return ``True`` if the status must be written, ``False`` for a no-op."""
    if current is new:
        return False
    if current.is_terminal:
        raise InvalidRunTransition(
            f"Run {run_id} is {current.value} and cannot become {new.value}"
        )
    return True
