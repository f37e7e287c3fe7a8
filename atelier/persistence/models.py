"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WorkflowType(str, Enum):
    """Built-in workflow types. Stored as plain strings, so the set is open."""

    LOOK_GENERATION = "look_generation"


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RunStatus.RUNNING


class StepStatus(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.SUCCEEDED, StepStatus.FAILED_TERMINAL)


class StepError(BaseModel):
    """Structured failure reason of a step attempt."""

    type: str
    message: str
    retryable: bool = False

    @classmethod
    def from_exception(cls, exc: BaseException, retryable: bool) -> "StepError":
        return cls(
            type=type(exc).__name__,
            message=str(exc) or type(exc).__name__,
            retryable=retryable,
        )


class StepOutcome(BaseModel):
    """Result of one step attempt as written to the store."""

    status: StepStatus
    result: Optional[dict[str, Any]] = None
    error: Optional[StepError] = None

    @classmethod
    def success(cls, result: dict[str, Any] | None) -> "StepOutcome":
        return cls(status=StepStatus.SUCCEEDED, result=result or {})

    @classmethod
    def failure(cls, error: StepError, terminal: bool) -> "StepOutcome":
        status = StepStatus.FAILED_TERMINAL if terminal else StepStatus.FAILED_RETRYABLE
        return cls(status=status, error=error)


class StepExecution(BaseModel):
    """Latest state of a ``(run_id, step_name, step_key)`` step."""

    run_id: str
    step_name: str
    step_key: str
    attempt: int = 0
    status: StepStatus = StepStatus.PENDING
    result: Optional[dict[str, Any]] = None
    error: Optional[StepError] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    claimed_by: Optional[str] = None
    lease_expires_at: Optional[datetime] = None

    @property
    def is_placeholder(self) -> bool:
        return self.attempt == 0

    def lease_held_by_other(self, owner: Optional[str], now: Optional[datetime] = None) -> bool:
        """True while another owner's claim on the pending attempt has not expired."""
        if self.status is not StepStatus.PENDING or self.attempt == 0:
            return False
        if self.claimed_by is None or self.claimed_by == owner or self.lease_expires_at is None:
            return False
        return self.lease_expires_at > (now or utcnow())


class StepEvent(BaseModel):
    """Append-only history entry: one claim or one outcome of a step attempt."""

    id: Optional[int] = None
    run_id: str
    step_name: str
    step_key: str
    attempt: int
    status: StepStatus
    result: Optional[dict[str, Any]] = None
    error: Optional[StepError] = None
    recorded_at: datetime = Field(default_factory=utcnow)


class WorkflowRun(BaseModel):
    """Persisted workflow run."""

    id: str
    workflow_type: str
    args: dict[str, Any] = Field(default_factory=dict)
    status: RunStatus = RunStatus.RUNNING
    cursor: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
