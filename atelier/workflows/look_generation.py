"""Look generation workflow.

Sequence for one user:

1. ``curate_looks`` asks the outfit composer for compositions and validates
   them against the catalog. It is the fatal step: if it fails terminally
   the run fails and no looks are created.
2. Every composition becomes a ``pending_generation`` look.
3. ``generate_image`` renders a try-on image per look, one look at a time.
   A failed look is marked ``generation_failed`` and the run moves on.
4. The run completes once every look has a terminal image outcome.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from pydantic import BaseModel

from ..clients.base import CatalogStore, OutfitComposer, ProfileStore, TryOnRenderer
from ..config import CurationConfig, RendererConfig
from ..errors import FatalInputError, RetryableExternalError, StepFailedError
from ..looks.models import LookComposition
from ..looks.store import LookStore
from ..persistence.models import WorkflowType
from ..steps import StepContext, StepRegistry
from .base import WorkflowContext, WorkflowRegistry

if TYPE_CHECKING:
    from ..executor import WorkflowExecutor

logger = logging.getLogger(__name__)

CURATE_LOOKS = "curate_looks"
GENERATE_IMAGE = "generate_image"


@dataclass
class LookGenerationDeps:
    """Collaborators shared by the look generation steps."""

    catalog: CatalogStore
    profiles: ProfileStore
    composer: OutfitComposer
    renderer: TryOnRenderer
    looks: LookStore
    curation: CurationConfig = field(default_factory=CurationConfig)
    renderer_settings: RendererConfig = field(default_factory=RendererConfig)


class LookImageResult(BaseModel):
    """Per-look outcome of image generation."""

    look_id: str
    success: bool
    image_ref: Optional[str] = None
    error: Optional[str] = None


# ----------------------------------------------------------------------
# Step handlers
async def curate_looks(ctx: StepContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Compose outfits for a user and keep only those the catalog can serve."""
    deps: LookGenerationDeps = ctx.deps
    settings = deps.curation
    user_id = payload.get("user_id")
    if not user_id:
        raise FatalInputError("curate_looks requires a user_id")

    profile = await deps.profiles.get_user_profile(user_id)
    if profile is None:
        raise FatalInputError(f"User profile not found: {user_id}")

    proposals = await deps.composer.compose_outfits(profile)
    logger.info(f"Composer proposed {len(proposals)} outfits for user {user_id}")

    compositions: List[LookComposition] = []
    for proposal in proposals:
        if len(compositions) >= settings.max_looks:
            break
        item_ids: List[str] = []
        # LookComposition guarantees unique item ids
        for item_id in proposal.item_ids:
            item = await deps.catalog.get_item(item_id)
            if item is None or not item.active:
                logger.warning(f"Dropping unavailable item {item_id} from outfit {proposal.name!r}")
                continue
            item_ids.append(item_id)
        if len(item_ids) < settings.min_items_per_look:
            logger.warning(
                f"Dropping outfit {proposal.name!r}: {len(item_ids)} usable items, "
                f"need {settings.min_items_per_look}"
            )
            continue
        compositions.append(proposal.model_copy(update={"item_ids": item_ids}))

    if len(compositions) < settings.min_looks:
        raise RetryableExternalError(
            f"Only {len(compositions)} usable outfits composed, need {settings.min_looks}"
        )
    return {"compositions": [c.model_dump() for c in compositions]}


async def generate_image(ctx: StepContext, payload: Dict[str, Any]) -> Dict[str, Any]:
    """Render the try-on image for one look."""
    deps: LookGenerationDeps = ctx.deps
    look_id = payload.get("look_id") or ctx.step_key
    look = await deps.looks.get_look(look_id)
    if look is None:
        raise FatalInputError(f"Look not found: {look_id}")

    await deps.looks.set_look_generating(look_id)

    profile = await deps.profiles.get_user_profile(look.user_id)
    if profile is None or not profile.body_photo_ref:
        raise FatalInputError(f"User {look.user_id} has no reference photo for try-on")

    image_refs: List[str] = []
    descriptions: List[str] = []
    for item_id in look.item_ids:
        item = await deps.catalog.get_item(item_id)
        if item is None or not item.images:
            logger.warning(f"No reference image for item {item_id} of look {look_id}")
            continue
        image_refs.append(item.images[0])
        descriptions.append(item.description)
    image_refs = image_refs[: deps.renderer_settings.max_reference_images]
    if not image_refs:
        raise FatalInputError(f"Look {look_id} has no item images to render")

    logger.info(
        f"Rendering look {look_id} with {len(image_refs)} item images (attempt {ctx.attempt})"
    )
    asset_ref = await deps.renderer.render_try_on(
        profile.body_photo_ref, image_refs, outfit_description=", ".join(descriptions)
    )
    return {"image_ref": asset_ref}


def register_steps(registry: StepRegistry) -> None:
    registry.register(CURATE_LOOKS, curate_looks, fatal=True)
    registry.register(GENERATE_IMAGE, generate_image, expensive=True)


# ----------------------------------------------------------------------
# Shared image generation for the durable run and the chat batch
async def generate_look_image(
    executor: "WorkflowExecutor",
    scope: str,
    look_id: str,
    ctx: Optional[WorkflowContext] = None,
) -> LookImageResult:
    """Run ``generate_image`` for a look and project the outcome onto it.

    The projection is applied after every call, including replays, so the
    look status converges on the step outcome after an interrupted run.
    """
    deps: LookGenerationDeps = executor.deps
    payload = {"look_id": look_id}
    try:
        if ctx is not None:
            result = await ctx.step(GENERATE_IMAGE, look_id, payload)
        else:
            result = await executor.run_step(scope, GENERATE_IMAGE, look_id, payload)
    except StepFailedError as exc:
        if await deps.looks.get_look(look_id) is not None:
            await deps.looks.set_look_failed(look_id, exc.message)
        return LookImageResult(look_id=look_id, success=False, error=exc.message)

    image_ref = result["image_ref"]
    await deps.looks.set_look_ready(look_id, image_ref)
    return LookImageResult(look_id=look_id, success=True, image_ref=image_ref)


# ----------------------------------------------------------------------
# Workflow body
async def look_generation(ctx: WorkflowContext, args: Dict[str, Any]) -> None:
    user_id = args.get("user_id")
    if not user_id:
        raise FatalInputError("look_generation requires a user_id")
    deps: LookGenerationDeps = ctx.deps

    logger.info(f"Step 1: curating looks for user {user_id} (run_id={ctx.run_id})")
    curated = await ctx.step(CURATE_LOOKS, user_id, {"user_id": user_id})
    compositions = [LookComposition.model_validate(c) for c in curated["compositions"]]

    look_ids = []
    for index, composition in enumerate(compositions):
        look_id = await deps.looks.create_pending_look(
            user_id, composition, source_key=f"{ctx.run_id}:{index}"
        )
        look_ids.append(look_id)
    logger.info(f"Step 2: {len(look_ids)} pending looks for run_id={ctx.run_id}")

    results = []
    for look_id in look_ids:
        results.append(await generate_look_image(ctx.executor, ctx.run_id, look_id, ctx))

    succeeded = sum(1 for r in results if r.success)
    logger.info(
        f"Step 3: images generated for {succeeded}/{len(results)} looks (run_id={ctx.run_id})"
    )


def register_workflow(registry: WorkflowRegistry) -> None:
    registry.register(WorkflowType.LOOK_GENERATION, look_generation)
