from __future__ import annotations

import random
from typing import Callable, Optional

from pydantic import BaseModel, ConfigDict, Field

from .constants import (
    DEFAULT_BASE_DELAY,
    DEFAULT_JITTER,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
)
from .errors import FatalInputError, TerminalExternalError


def compute_backoff(
    attempt: int,
    base: float = DEFAULT_BASE_DELAY,
    cap: float = DEFAULT_MAX_DELAY,
    jitter: float = DEFAULT_JITTER,
) -> float:
    """Compute capped exponential backoff with jitter.

    Jitter is a fraction of the exponential delay, so with ``jitter <= 1``
    the delay for ``attempt + 1`` is never below the delay for ``attempt``.
    """
    raw = base * 2 ** max(attempt - 1, 0)
    return min(cap, raw + random.uniform(0, jitter * raw))


def default_classifier(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` should be retried."""
    if isinstance(exc, (TerminalExternalError, FatalInputError)):
        return False
    # timeouts, rate limits and unclassified handler errors stay within the budget
    return True


class RetryPolicy(BaseModel):
    """How often and how fast a failed step attempt is retried."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=DEFAULT_BASE_DELAY, ge=0)
    max_delay: float = Field(default=DEFAULT_MAX_DELAY, ge=0)
    jitter: float = Field(default=DEFAULT_JITTER, ge=0, le=1)
    classifier: Optional[Callable[[BaseException], bool]] = Field(
        default=None, exclude=True
    )

    def is_retryable(self, exc: BaseException) -> bool:
        classify = self.classifier or default_classifier
        return classify(exc)

    def should_retry(self, attempt: int, exc: BaseException) -> bool:
        return self.is_retryable(exc) and attempt < self.max_attempts

    def delay_for(self, attempt: int) -> float:
        return compute_backoff(
            attempt, base=self.base_delay, cap=self.max_delay, jitter=self.jitter
        )

