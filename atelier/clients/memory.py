"""In-memory catalog and profile stores."""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from .base import CatalogItem, CatalogStore, ProfileStore, UserProfile


class InMemoryCatalog(CatalogStore):
    def __init__(self, items: Optional[Iterable[CatalogItem]] = None) -> None:
        self._items: Dict[str, CatalogItem] = {}
        for item in items or []:
            self.add(item)

    def add(self, item: CatalogItem) -> None:
        self._items[item.id] = item

    async def get_item(self, item_id: str) -> CatalogItem | None:
        return self._items.get(item_id)

    async def list_items(self, limit: int = 500) -> list[CatalogItem]:
        return [item for item in self._items.values() if item.active][:limit]


class InMemoryProfileStore(ProfileStore):
    def __init__(self, profiles: Optional[Iterable[UserProfile]] = None) -> None:
        self._profiles: Dict[str, UserProfile] = {}
        for profile in profiles or []:
            self.add(profile)

    def add(self, profile: UserProfile) -> None:
        self._profiles[profile.user_id] = profile

    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        return self._profiles.get(user_id)
