"""Collaborators called by the look workflows."""

from __future__ import annotations

from .base import (
    CatalogItem,
    CatalogStore,
    OutfitComposer,
    ProfileStore,
    TryOnRenderer,
    UserProfile,
)
from .composer import PydanticAIOutfitComposer
from .memory import InMemoryCatalog, InMemoryProfileStore
from .renderer import HttpTryOnRenderer

__all__ = [
    "CatalogItem",
    "CatalogStore",
    "HttpTryOnRenderer",
    "InMemoryCatalog",
    "InMemoryProfileStore",
    "OutfitComposer",
    "ProfileStore",
    "PydanticAIOutfitComposer",
    "TryOnRenderer",
    "UserProfile",
]
