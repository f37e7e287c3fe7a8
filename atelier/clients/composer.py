"""Outfit composition backed by a pydantic-ai agent."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, List, Optional

from pydantic_ai import Agent
from pydantic_ai.exceptions import ModelHTTPError, UnexpectedModelBehavior

from ..errors import (
    FatalInputError,
    RetryableExternalError,
    classify_status,
)
from ..looks.models import LookComposition
from .base import CatalogItem, CatalogStore, OutfitComposer, UserProfile

logger = logging.getLogger(__name__)

STYLIST_PROMPT = (
    "You are a fashion stylist. Compose complete outfits from the catalog "
    "items you are given, using their ids exactly. Each outfit combines "
    "pieces that work together, outfits cover different occasions, and an "
    "item is not repeated across outfits when it can be avoided. Give every "
    "outfit a short name, style tags, an occasion and a one sentence comment "
    "addressed to the user."
)


def build_curation_prompt(profile: UserProfile, items: List[CatalogItem], looks: int) -> str:
    lines = [
        f"Create {looks} outfits for this user.",
        f"Gender: {profile.gender or 'not specified'}",
        f"Style preferences: {', '.join(profile.style_preferences) or 'casual'}",
        f"Budget range: {profile.budget_range or 'mid'}",
        f"Name: {profile.first_name or 'friend'}",
        "",
        "Available items:",
    ]
    for item in items:
        lines.append(
            f"- id={item.id} name={item.name!r} category={item.category or 'other'} "
            f"colors={', '.join(item.colors)} tags={', '.join(item.tags)} "
            f"price={item.price} {item.currency}"
        )
    return "\n".join(lines)


class PydanticAIOutfitComposer(OutfitComposer):
    """Asks an LLM for structured outfit compositions."""

    def __init__(
        self,
        catalog: CatalogStore,
        model: str = "openai:gpt-4o",
        looks: int = 3,
        catalog_limit: int = 500,
        agent: Optional[Any] = None,
    ) -> None:
        self._catalog = catalog
        self._looks = looks
        self._catalog_limit = catalog_limit
        self._agent = agent or Agent(
            model,
            output_type=List[LookComposition],
            system_prompt=STYLIST_PROMPT,
            defer_model_check=True,
        )

    async def compose_outfits(self, profile: UserProfile) -> list[LookComposition]:
        items = await self._catalog.list_items(limit=self._catalog_limit)
        unique = list({item.id: item for item in items}.values())
        if not unique:
            raise FatalInputError("No catalog items available for curation")

        prompt = build_curation_prompt(profile, unique, self._looks)
        logger.debug(f"Composing outfits for user {profile.user_id} from {len(unique)} items")
        try:
            result = await self._agent.run(prompt)
        except ModelHTTPError as exc:
            error_cls = classify_status(exc.status_code)
            raise error_cls(
                f"Outfit model returned HTTP {exc.status_code}", status_code=exc.status_code
            ) from exc
        except UnexpectedModelBehavior as exc:
            raise RetryableExternalError(f"Outfit model misbehaved: {exc}") from exc
        except asyncio.TimeoutError as exc:
            raise RetryableExternalError("Outfit model timed out") from exc

        return list(result.output)
