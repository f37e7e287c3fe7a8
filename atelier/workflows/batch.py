"""Image generation for looks curated outside a workflow run."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Sequence

from pydantic import BaseModel, Field

from ..constants import BATCH_SCOPE
from ..errors import AtelierError
from .look_generation import LookImageResult, generate_look_image

if TYPE_CHECKING:
    from ..executor import WorkflowExecutor

logger = logging.getLogger(__name__)


class BatchResult(BaseModel):
    """Outcome of a batch; ``success`` is true when any look got an image."""

    success: bool
    results: List[LookImageResult] = Field(default_factory=list)


async def generate_images_for_looks(
    executor: "WorkflowExecutor", look_ids: Sequence[str]
) -> BatchResult:
    """Generate try-on images for existing looks, one after another.

    Each look is checkpointed under the batch scope keyed by its id, so
    calling this again for the same look replays the stored outcome instead
    of rendering a second image.
    """
    if not look_ids:
        logger.info("Batch image generation called with no looks")
        return BatchResult(success=False)

    results: List[LookImageResult] = []
    for look_id in look_ids:
        try:
            result = await generate_look_image(executor, BATCH_SCOPE, look_id)
        except AtelierError as exc:
            # reported on the look's result; the batch carries on
            logger.warning(f"Batch image generation for look {look_id} failed: {exc}")
            result = LookImageResult(look_id=look_id, success=False, error=str(exc))
        results.append(result)

    succeeded = sum(1 for r in results if r.success)
    logger.info(f"Batch image generation finished: {succeeded}/{len(results)} looks ready")
    return BatchResult(success=succeeded > 0, results=results)
