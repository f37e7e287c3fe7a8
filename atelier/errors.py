"""Error taxonomy for atelier workflows."""

from __future__ import annotations

from typing import Optional


class AtelierError(Exception):
    """Base class for all atelier errors."""


class FatalInputError(AtelierError):
    """Input is malformed or missing; retrying cannot help."""


class RetryableExternalError(AtelierError):
    """Transient failure of an external service (timeout, rate limit, 5xx)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LimiterTimeoutError(RetryableExternalError):
    """No concurrency slot became available in time."""


class TerminalExternalError(AtelierError):
    """External service rejected the request permanently."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreConsistencyError(AtelierError):
    """Concurrent write conflict on a step record."""


class InvalidRunTransition(AtelierError):
    """A run status change would move backwards or leave a terminal state."""


class RunNotFoundError(AtelierError, KeyError):
    """No run exists with the given id."""


class UnknownStepError(AtelierError, KeyError):
    """No step handler is registered under the given name."""


class UnknownWorkflowError(AtelierError, KeyError):
    """No workflow is registered under the given type."""


class StepFailedError(AtelierError):
    """A step reached ``failed_terminal``."""

    def __init__(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        message: str,
        error_type: Optional[str] = None,
        fatal: bool = False,
    ) -> None:
        super().__init__(
            f"Step {step_name}[{step_key}] failed for run_id={run_id}: {message}"
        )
        self.run_id = run_id
        self.step_name = step_name
        self.step_key = step_key
        self.message = message
        self.error_type = error_type
        self.fatal = fatal


def classify_status(status_code: int) -> type[AtelierError]:
    """Map an HTTP status to the error class a failed call should raise.

    429 and 5xx are transient; every other 4xx is a permanent rejection.
    """

    if status_code == 429 or status_code >= 500:
        return RetryableExternalError
    return TerminalExternalError


def raise_for_status(status_code: int, message: str) -> None:
    """Raise the classified error for a non-2xx status code."""
    if 200 <= status_code < 300:
        return
    error_cls = classify_status(status_code)
    raise error_cls(message, status_code=status_code)
