"""Look record store abstraction and in-memory implementation."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Protocol

from .models import Look, LookComposition, LookStatus, _utcnow


class LookStore(Protocol):
    """Persistence for Look records driven by the image generation step."""

    async def create_pending_look(
        self, user_id: str, composition: LookComposition, source_key: Optional[str] = None
    ) -> str:
        """Create a ``pending_generation`` look.

        A second call with the same ``source_key`` returns the existing id.
        """

    async def get_look(self, look_id: str) -> Look | None:
        """Return the look if it exists."""

    async def list_looks(self, user_id: str) -> list[Look]:
        """Return a user's looks in creation order."""

    async def set_look_generating(self, look_id: str) -> None:
        """Mark an image attempt as in progress."""

    async def set_look_ready(self, look_id: str, image_ref: str) -> None:
        """Attach the generated image."""

    async def set_look_failed(self, look_id: str, reason: str) -> None:
        """Record that image generation failed terminally."""


class InMemoryLookStore(LookStore):
    """Keep looks in local memory. Intended for tests and local runs."""

    def __init__(self) -> None:
        self._looks: Dict[str, Look] = {}
        self._by_source: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def add(self, look: Look) -> str:
        """Insert a fully built look, e.g. one curated by the chat flow."""
        async with self._lock:
            self._looks[look.id] = look
            if look.source_key:
                self._by_source[look.source_key] = look.id
        return look.id

    async def create_pending_look(
        self, user_id: str, composition: LookComposition, source_key: Optional[str] = None
    ) -> str:
        async with self._lock:
            if source_key and source_key in self._by_source:
                return self._by_source[source_key]
            look = Look.from_composition(user_id, composition, source_key)
            self._looks[look.id] = look
            if source_key:
                self._by_source[source_key] = look.id
            return look.id

    async def get_look(self, look_id: str) -> Look | None:
        return self._looks.get(look_id)

    async def list_looks(self, user_id: str) -> list[Look]:
        return [look for look in self._looks.values() if look.user_id == user_id]

    def _update(self, look_id: str, status: LookStatus, image_ref: Optional[str], error: Optional[str]) -> None:
        look = self._looks.get(look_id)
        if look is None:
            raise KeyError(f"Look {look_id} not found")
        look.status = status.value
        look.image_ref = image_ref
        look.error_message = error
        look.updated_at = _utcnow()

    async def set_look_generating(self, look_id: str) -> None:
        async with self._lock:
            self._update(look_id, LookStatus.GENERATING, None, None)

    async def set_look_ready(self, look_id: str, image_ref: str) -> None:
        async with self._lock:
            self._update(look_id, LookStatus.READY, image_ref, None)

    async def set_look_failed(self, look_id: str, reason: str) -> None:
        async with self._lock:
            self._update(look_id, LookStatus.GENERATION_FAILED, None, reason)


def looks_by_status(looks: List[Look]) -> Dict[str, int]:
    """Count looks per status, e.g. for reporting progress to a UI."""
    counts = {status.value: 0 for status in LookStatus}
    for look in looks:
        counts[look.status] = counts.get(look.status, 0) + 1
    return counts
