"""In-memory implementation of the run store."""

from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, List, Optional, Tuple

from ..errors import RunNotFoundError
from .models import (
    RunStatus,
    StepEvent,
    StepExecution,
    StepOutcome,
    StepStatus,
    WorkflowRun,
    utcnow,
)
from .repository import (
    RunStore,
    check_transition,
    ensure_claimable,
    ensure_recordable,
    lease_expiry,
)

StepId = Tuple[str, str, str]


class InMemoryRunStore(RunStore):
    """Store workflow runs in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Returned models are copies, so
    callers never observe a write that has not been committed here.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: Dict[StepId, StepExecution] = {}
        self._history: List[StepEvent] = []
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    def _require_run(self, run_id: str) -> WorkflowRun:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run

    def _append_event(self, step: StepExecution) -> None:
        self._history.append(
            StepEvent(
                id=len(self._history) + 1,
                run_id=step.run_id,
                step_name=step.step_name,
                step_key=step.step_key,
                attempt=step.attempt,
                status=step.status,
                result=step.result,
                error=step.error,
            )
        )

    def _require_step(self, run_id: str, step_name: str, step_key: str) -> StepExecution:
        step = self._steps.get((run_id, step_name, step_key))
        if step is None:
            step = StepExecution(run_id=run_id, step_name=step_name, step_key=step_key)
            self._steps[(run_id, step_name, step_key)] = step
        return step

    # ------------------------------------------------------------------
    async def create_run(self, workflow_type: str, args: dict[str, Any]) -> str:
        run_id = str(uuid.uuid4())
        async with self._lock:
            self._runs[run_id] = WorkflowRun(
                id=run_id, workflow_type=str(workflow_type), args=dict(args)
            )
        return run_id

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        return run.model_copy(deep=True) if run else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        status = RunStatus(status) if status is not None else None
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if status is None or run.status is status
        ]

    async def mark_run_status(self, run_id: str, status: RunStatus) -> None:
        status = RunStatus(status)
        async with self._lock:
            run = self._require_run(run_id)
            if not check_transition(run_id, run.status, status):
                return
            run.status = status
            if status.is_terminal:
                run.completed_at = utcnow()

    async def advance_cursor(self, run_id: str, cursor: str) -> None:
        async with self._lock:
            self._require_run(run_id).cursor = cursor

    async def append_or_get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution:
        async with self._lock:
            return self._require_step(run_id, step_name, step_key).model_copy(deep=True)

    async def get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution | None:
        step = self._steps.get((run_id, step_name, step_key))
        return step.model_copy(deep=True) if step else None

    async def claim_attempt(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ) -> StepExecution:
        async with self._lock:
            step = self._require_step(run_id, step_name, step_key)
            now = utcnow()
            ensure_claimable(step, attempt, owner, now)
            step.attempt = attempt
            step.status = StepStatus.PENDING
            step.error = None
            step.started_at = now
            step.finished_at = None
            step.claimed_by = owner
            step.lease_expires_at = lease_expiry(lease_seconds, now)
            self._append_event(step)
            return step.model_copy(deep=True)

    async def record_step_outcome(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        outcome: StepOutcome,
        owner: Optional[str] = None,
    ) -> StepExecution:
        async with self._lock:
            step = self._require_step(run_id, step_name, step_key)
            ensure_recordable(step, attempt, owner)
            step.status = outcome.status
            step.result = outcome.result
            step.error = outcome.error
            step.finished_at = utcnow()
            step.lease_expires_at = None
            self._append_event(step)
            return step.model_copy(deep=True)

    async def list_steps(self, run_id: str) -> list[StepExecution]:
        return [
            step.model_copy(deep=True)
            for key, step in self._steps.items()
            if key[0] == run_id
        ]

    async def step_history(self, run_id: str) -> list[StepEvent]:
        return [
            event.model_copy(deep=True)
            for event in self._history
            if event.run_id == run_id
        ]
