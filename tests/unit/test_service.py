import pytest

from atelier.clients import HttpTryOnRenderer, PydanticAIOutfitComposer
from atelier.config import AtelierConfig, RendererConfig
from atelier.errors import RunNotFoundError, UnknownWorkflowError
from atelier.looks import InMemoryLookStore, SQLLookStore
from atelier.persistence import RunStatus
from atelier.workflows.service import build_deps


def test_build_deps_from_config(catalog, profiles):
    config = AtelierConfig(
        renderer=RendererConfig(endpoint="https://render.test", api_key="k", timeout=30.0)
    )
    deps = build_deps(catalog, profiles, config=config)

    assert isinstance(deps.composer, PydanticAIOutfitComposer)
    assert isinstance(deps.renderer, HttpTryOnRenderer)
    assert deps.renderer.endpoint == "https://render.test"
    assert isinstance(deps.looks, InMemoryLookStore)
    assert deps.curation is config.curation


def test_build_deps_uses_looks_database(catalog, profiles, tmp_path):
    config = AtelierConfig(
        looks_database_url=f"sqlite+aiosqlite:///{tmp_path / 'looks.db'}",
        renderer=RendererConfig(endpoint="https://render.test"),
    )
    assert isinstance(build_deps(catalog, profiles, config=config).looks, SQLLookStore)


def test_build_deps_requires_renderer_endpoint(catalog, profiles):
    with pytest.raises(ValueError):
        build_deps(catalog, profiles, config=AtelierConfig())


def test_build_wires_config(service, config):
    executor = service.executor
    assert executor.limiter.capacity == config.limiter.capacity
    assert executor.steps.names() == ["curate_looks", "generate_image"]
    assert executor.steps.get("generate_image").expensive is True
    assert executor.steps.get("curate_looks").fatal is True
    assert executor.steps.default_policy.max_attempts == config.retry.max_attempts
    assert "look_generation" in executor.workflows


@pytest.mark.asyncio
async def test_engine_rejects_unknown_workflow(service, run_store):
    with pytest.raises(UnknownWorkflowError):
        await service.engine.start_run("unknown", {})
    assert await run_store.list_runs() == []

    with pytest.raises(RunNotFoundError):
        await service.engine.wait("missing")


@pytest.mark.asyncio
async def test_engine_tracks_active_runs(service):
    run_id = await service.start_look_generation_run("u1")
    assert service.engine.active_runs == [run_id]

    await service.engine.drain()
    assert service.engine.active_runs == []
    assert await service.engine.wait(run_id) is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_engine_forgets_finished_runs(service, run_store):
    run_ids = [await service.start_look_generation_run(user) for user in ("u1", "u2", "u3")]
    assert sorted(service.engine._tasks) == sorted(run_ids)

    await service.engine.drain()

    assert service.engine._tasks == {}
    for run_id in run_ids:
        assert await service.engine.wait(run_id) is RunStatus.COMPLETED
    # finished runs are answered from the store and nothing is left to resume
    assert await service.resume() == []
