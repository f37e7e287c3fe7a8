"""Process-wide concurrency limiter for expensive steps."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Set

from pydantic import BaseModel, Field

from .constants import DEFAULT_LIMITER_CAPACITY
from .errors import LimiterTimeoutError

logger = logging.getLogger(__name__)


class LimiterToken(BaseModel):
    """Proof of a held concurrency slot."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)


class ConcurrencyLimiter:
    """Bounds how many calls to external generation models run at once.

    One instance is shared by every run and every entry point in the
    process, which makes it the single backpressure point in front of the
    rate-limited models.
    """

    def __init__(self, capacity: int = DEFAULT_LIMITER_CAPACITY) -> None:
        if capacity < 1:
            raise ValueError("Limiter capacity must be at least 1")
        self._capacity = capacity
        self._semaphore = asyncio.Semaphore(capacity)
        self._held: Set[str] = set()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        return len(self._held)

    @property
    def available(self) -> int:
        return self._capacity - len(self._held)

    async def acquire(self, timeout: Optional[float] = None) -> LimiterToken:
        """Wait for a free slot.

        Raises:
            LimiterTimeoutError: If no slot frees up within ``timeout`` seconds.
        """
        try:
            if timeout is None:
                await self._semaphore.acquire()
            else:
                await asyncio.wait_for(self._semaphore.acquire(), timeout)
        except asyncio.TimeoutError as exc:
            raise LimiterTimeoutError(
                f"No concurrency slot available within {timeout}s"
            ) from exc
        token = LimiterToken()
        self._held.add(token.id)
        logger.debug(f"Acquired limiter slot {token.id} ({self.in_use}/{self._capacity})")
        return token

    def release(self, token: LimiterToken) -> None:
        if token.id not in self._held:
            raise ValueError(f"Limiter token {token.id} is not held")
        self._held.remove(token.id)
        self._semaphore.release()
        logger.debug(f"Released limiter slot {token.id} ({self.in_use}/{self._capacity})")

    @asynccontextmanager
    async def slot(self, timeout: Optional[float] = None) -> AsyncIterator[LimiterToken]:
        token = await self.acquire(timeout)
        try:
            yield token
        finally:
            self.release(token)
