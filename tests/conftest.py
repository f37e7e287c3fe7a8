import asyncio
from typing import Dict, List, Optional

import pytest

from atelier.clients import CatalogItem, InMemoryCatalog, InMemoryProfileStore, UserProfile
from atelier.config import AtelierConfig, RetryConfig, StepsConfig
from atelier.looks import InMemoryLookStore, LookComposition
from atelier.persistence import InMemoryRunStore
from atelier.workflows.look_generation import LookGenerationDeps
from atelier.workflows.service import LookGenerationService

DEFAULT_OUTFITS = [
    {"item_ids": ["i1", "i2"], "name": "Office", "occasion": "work", "style_tags": ["smart"]},
    {"item_ids": ["i3", "i4"], "name": "Weekend", "occasion": "casual"},
    {"item_ids": ["i5", "i6"], "name": "Dinner", "occasion": "evening"},
]


def make_item(item_id: str, active: bool = True, images: Optional[List[str]] = None) -> CatalogItem:
    return CatalogItem(
        id=item_id,
        name=f"Item {item_id}",
        category="top",
        active=active,
        price=49.0,
        images=[f"img://{item_id}"] if images is None else images,
    )


class FakeComposer:
    """Returns canned outfits; queued ``errors`` are raised first, one per call."""

    def __init__(self, outfits=None, errors=None) -> None:
        self.outfits = DEFAULT_OUTFITS if outfits is None else outfits
        self.errors = list(errors or [])
        self.calls = 0

    async def compose_outfits(self, profile: UserProfile) -> List[LookComposition]:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return [LookComposition(**outfit) for outfit in self.outfits]


class FakeRenderer:
    """Records calls and tracks how many renders overlap.

    ``failures`` maps a garment image ref to an exception raised on every
    call, or to a list of exceptions consumed one per call.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: List[List[str]] = []
        self.descriptions: List[Optional[str]] = []
        self.failures: Dict[str, object] = {}
        self.active = 0
        self.max_active = 0

    async def render_try_on(
        self,
        user_photo_ref: str,
        item_image_refs: List[str],
        outfit_description: Optional[str] = None,
    ) -> str:
        self.calls.append(list(item_image_refs))
        self.descriptions.append(outfit_description)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            for ref in item_image_refs:
                failure = self.failures.get(ref)
                if isinstance(failure, list):
                    if failure:
                        raise failure.pop(0)
                elif failure is not None:
                    raise failure
            return "asset://" + "+".join(ref.split("://")[1] for ref in item_image_refs)
        finally:
            self.active -= 1


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def catalog():
    items = [make_item(f"i{n}") for n in range(1, 7)]
    items.append(make_item("i7", active=False))
    items.append(make_item("i8", images=[]))
    return InMemoryCatalog(items)


@pytest.fixture
def profiles():
    return InMemoryProfileStore(
        [
            UserProfile(
                user_id="u1",
                gender="female",
                body_photo_ref="photo://u1",
                style_preferences=["minimal"],
                first_name="Ada",
            ),
            UserProfile(user_id="u2", body_photo_ref="photo://u2"),
            UserProfile(user_id="u3", body_photo_ref="photo://u3"),
            UserProfile(user_id="no-photo"),
        ]
    )


@pytest.fixture
def composer():
    return FakeComposer()


@pytest.fixture
def renderer():
    return FakeRenderer()


@pytest.fixture
def looks():
    return InMemoryLookStore()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def config():
    return AtelierConfig(
        retry=RetryConfig(max_attempts=3, base_delay=0.01, max_delay=0.05, jitter=0.5),
        steps=StepsConfig(timeout=5.0),
    )


@pytest.fixture
def deps(catalog, profiles, composer, renderer, looks, config):
    return LookGenerationDeps(
        catalog=catalog,
        profiles=profiles,
        composer=composer,
        renderer=renderer,
        looks=looks,
        curation=config.curation,
        renderer_settings=config.renderer,
    )


@pytest.fixture
def run_store():
    return InMemoryRunStore()


@pytest.fixture
def service(deps, config, run_store, sleeper):
    return LookGenerationService.build(deps, config=config, store=run_store, sleep=sleeper)


@pytest.fixture
def make_renderer():
    return FakeRenderer
