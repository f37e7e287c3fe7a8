"""Interfaces of the collaborators the workflows call."""

from __future__ import annotations

from typing import List, Optional, Protocol

from pydantic import BaseModel, Field

from ..looks.models import LookComposition


class CatalogItem(BaseModel):
    """Catalog data needed for curation and try-on references."""

    id: str
    name: str = ""
    brand: Optional[str] = None
    category: Optional[str] = None
    colors: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    active: bool = True
    price: float = 0.0
    currency: str = "USD"
    images: List[str] = Field(default_factory=list)

    @property
    def description(self) -> str:
        colors = "/".join(self.colors)
        brand = f" by {self.brand}" if self.brand else ""
        return f"{colors} {self.name}{brand}".strip()


class UserProfile(BaseModel):
    """Profile data used as curation and image generation input."""

    user_id: str
    gender: Optional[str] = None
    body_photo_ref: Optional[str] = None
    budget_range: Optional[str] = None
    style_preferences: List[str] = Field(default_factory=list)
    first_name: Optional[str] = None


class CatalogStore(Protocol):
    async def get_item(self, item_id: str) -> CatalogItem | None:
        """Return the catalog item, or ``None`` if unknown."""

    async def list_items(self, limit: int = 500) -> list[CatalogItem]:
        """Return items that may be offered to the outfit composer."""


class ProfileStore(Protocol):
    async def get_user_profile(self, user_id: str) -> UserProfile | None:
        """Return the user's profile, or ``None`` if unknown."""


class OutfitComposer(Protocol):
    async def compose_outfits(self, profile: UserProfile) -> list[LookComposition]:
        """Ask a generative text model for outfit compositions.

        Raises ``RetryableExternalError`` for timeouts and rate limits and
        ``TerminalExternalError`` for refused or invalid requests.
        """


class TryOnRenderer(Protocol):
    async def render_try_on(
        self,
        user_photo_ref: str,
        item_image_refs: list[str],
        outfit_description: Optional[str] = None,
    ) -> str:
        """Generate a try-on image and return a reference to the stored asset.

        ``outfit_description`` describes the items in words for renderers
        that can fall back to a text-only request.

        Failures are classified like :meth:`OutfitComposer.compose_outfits`.
        """
