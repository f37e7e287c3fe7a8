"""Entry points used by the application layer."""

from __future__ import annotations

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from ..clients.base import CatalogStore, ProfileStore
from ..clients.composer import PydanticAIOutfitComposer
from ..clients.renderer import HttpTryOnRenderer
from ..config import AtelierConfig, load_config
from ..engine import WorkflowEngine
from ..errors import FatalInputError
from ..executor import Sleep, WorkflowExecutor
from ..limiter import ConcurrencyLimiter
from ..looks.models import LookStatus
from ..looks.sql import SQLLookStore
from ..looks.store import InMemoryLookStore, LookStore, looks_by_status
from ..persistence import get_run_store
from ..persistence.models import WorkflowType
from ..persistence.repository import RunStore
from ..retry import RetryPolicy
from ..steps import StepRegistry
from .base import WorkflowRegistry
from .batch import BatchResult, generate_images_for_looks
from .look_generation import LookGenerationDeps, register_steps, register_workflow

logger = logging.getLogger(__name__)


def build_deps(
    catalog: CatalogStore,
    profiles: ProfileStore,
    config: Optional[AtelierConfig] = None,
    looks: Optional[LookStore] = None,
) -> LookGenerationDeps:
    """Create the production collaborators from configuration.

    The look store defaults to ``looks_database_url`` when configured and to
    an in-memory store otherwise.
    """
    config = config or load_config()
    if looks is None:
        if config.looks_database_url:
            looks = SQLLookStore(config.looks_database_url)
        else:
            looks = InMemoryLookStore()
    if not config.renderer.endpoint:
        raise ValueError("renderer.endpoint must be configured")

    composer = PydanticAIOutfitComposer(
        catalog,
        model=config.curation.model,
        looks=config.curation.max_looks,
        catalog_limit=config.curation.catalog_limit,
    )
    renderer = HttpTryOnRenderer(
        config.renderer.endpoint,
        api_key=config.renderer.api_key,
        timeout=config.renderer.timeout,
    )
    return LookGenerationDeps(
        catalog=catalog,
        profiles=profiles,
        composer=composer,
        renderer=renderer,
        looks=looks,
        curation=config.curation,
        renderer_settings=config.renderer,
    )


class LookGenerationService:
    """Starts look generation runs and chat batches on a shared engine."""

    def __init__(self, engine: WorkflowEngine) -> None:
        self.engine = engine

    @property
    def executor(self) -> WorkflowExecutor:
        return self.engine.executor

    @property
    def deps(self) -> LookGenerationDeps:
        return self.engine.executor.deps

    @classmethod
    def build(
        cls,
        deps: LookGenerationDeps,
        config: Optional[AtelierConfig] = None,
        store: Optional[RunStore] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> "LookGenerationService":
        config = config or load_config()
        store = store or get_run_store(config=config)

        policy = RetryPolicy(
            max_attempts=config.retry.max_attempts,
            base_delay=config.retry.base_delay,
            max_delay=config.retry.max_delay,
            jitter=config.retry.jitter,
        )
        steps = StepRegistry(default_policy=policy)
        register_steps(steps)
        workflows = WorkflowRegistry()
        register_workflow(workflows)

        executor = WorkflowExecutor(
            store=store,
            steps=steps,
            workflows=workflows,
            limiter=ConcurrencyLimiter(config.limiter.capacity),
            deps=deps,
            step_timeout=config.steps.timeout,
            acquire_timeout=config.limiter.acquire_timeout,
            sleep=sleep,
            lease_timeout=config.steps.lease_timeout,
        )
        return cls(WorkflowEngine(executor))

    async def start_look_generation_run(self, user_id: str) -> str:
        """Start a run for ``user_id`` and return its id without waiting.

        Raises:
            FatalInputError: If the user id is blank, the user is unknown,
                already has looks, or has no reference photo to render with.
        """
        if not user_id or not user_id.strip():
            raise FatalInputError("user_id must not be blank")
        reason = await self.start_refusal(user_id)
        if reason is not None:
            logger.info(f"Not starting look generation for user {user_id}: {reason}")
            raise FatalInputError(f"Cannot start look generation for user {user_id}: {reason}")
        return await self.engine.start_run(WorkflowType.LOOK_GENERATION, {"user_id": user_id})

    async def start_refusal(self, user_id: str) -> Optional[str]:
        """Return why a run must not start for ``user_id``, or ``None`` if it may."""
        profile = await self.deps.profiles.get_user_profile(user_id)
        if profile is None:
            return "user not found"

        existing = await self.deps.looks.list_looks(user_id)
        if existing:
            statuses = {look.status for look in existing}
            if LookStatus.GENERATING.value in statuses:
                return "workflow in progress"
            if LookStatus.READY.value in statuses:
                return "looks already generated"
            return "looks pending"

        if not profile.body_photo_ref:
            return "no photos uploaded"
        return None

    async def generate_images_for_looks(self, look_ids: Sequence[str]) -> BatchResult:
        return await generate_images_for_looks(self.executor, list(look_ids))

    async def resume(self) -> List[str]:
        """Pick up runs left ``running`` by a previous process."""
        return await self.engine.resume_incomplete()

    async def look_progress(self, user_id: str) -> Dict[str, int]:
        looks = await self.deps.looks.list_looks(user_id)
        return looks_by_status(looks)
