"""Crash and resume of look generation runs."""

import asyncio
import dataclasses

import pytest

from atelier.config import StepsConfig
from atelier.looks import InMemoryLookStore, LookStatus
from atelier.persistence import RunStatus, StepStatus
from atelier.workflows.service import LookGenerationService


@pytest.mark.asyncio
async def test_resume_after_crash_mid_run(
    deps, config, run_store, looks, composer, make_renderer, sleeper
):
    blocked = asyncio.Event()

    class HangingRenderer(make_renderer):
        async def render_try_on(self, user_photo_ref, item_image_refs, outfit_description=None):
            if "img://i3" in item_image_refs:
                blocked.set()
                await asyncio.Event().wait()
            return await super().render_try_on(
                user_photo_ref, item_image_refs, outfit_description
            )

    # a short lease lets the restarted process take over the interrupted claim quickly
    config = config.model_copy(update={"steps": StepsConfig(timeout=5.0, lease_timeout=0.05)})
    first_renderer = HangingRenderer()
    crashed = LookGenerationService.build(
        dataclasses.replace(deps, renderer=first_renderer),
        config=config,
        store=run_store,
        sleep=sleeper,
    )
    run_id = await crashed.start_look_generation_run("u1")
    await asyncio.wait_for(blocked.wait(), timeout=2)

    # the process dies while the second image is rendering
    task = crashed.engine._tasks[run_id]
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)

    assert (await run_store.get_run(run_id)).status is RunStatus.RUNNING
    interrupted = [s for s in await run_store.list_steps(run_id) if s.status is StepStatus.PENDING]
    assert len(interrupted) == 1
    assert interrupted[0].attempt == 1
    assert interrupted[0].claimed_by == crashed.executor.owner_id

    second_renderer = make_renderer()
    restarted = LookGenerationService.build(
        dataclasses.replace(deps, renderer=second_renderer),
        config=config,
        store=run_store,
        sleep=sleeper,
    )
    assert await restarted.resume() == [run_id]
    assert await restarted.engine.wait(run_id) is RunStatus.COMPLETED

    user_looks = await looks.list_looks("u1")
    assert len(user_looks) == 3
    assert all(look.status == LookStatus.READY.value for look in user_looks)
    # curation and the first image are replayed, not repeated
    assert composer.calls == 1
    assert first_renderer.calls == [["img://i1", "img://i2"]]
    assert second_renderer.calls == [["img://i3", "img://i4"], ["img://i5", "img://i6"]]

    resumed_step = await run_store.get_step(run_id, "generate_image", interrupted[0].step_key)
    assert resumed_step.attempt == 2
    assert resumed_step.status is StepStatus.SUCCEEDED
    assert resumed_step.claimed_by == restarted.executor.owner_id

    # nothing left to resume
    assert await restarted.resume() == []


class CrashingLookStore(InMemoryLookStore):
    """Fails the first ``set_look_ready`` call as if the process died there."""

    def __init__(self):
        super().__init__()
        self.crashed = False

    async def set_look_ready(self, look_id, image_ref):
        if not self.crashed:
            self.crashed = True
            raise RuntimeError("process died")
        await super().set_look_ready(look_id, image_ref)


@pytest.mark.asyncio
async def test_resume_reapplies_look_status(deps, config, run_store, renderer, sleeper):
    look_store = CrashingLookStore()
    deps = dataclasses.replace(deps, looks=look_store)
    service = LookGenerationService.build(deps, config=config, store=run_store, sleep=sleeper)

    run_id = await service.start_look_generation_run("u1")
    with pytest.raises(RuntimeError):
        await service.engine.wait(run_id)

    first_look = (await look_store.list_looks("u1"))[0]
    assert first_look.status == LookStatus.GENERATING.value
    assert (await run_store.get_run(run_id)).status is RunStatus.RUNNING
    step = await run_store.get_step(run_id, "generate_image", first_look.id)
    assert step.status is StepStatus.SUCCEEDED

    restarted = LookGenerationService.build(deps, config=config, store=run_store, sleep=sleeper)
    assert await restarted.resume() == [run_id]
    assert await restarted.engine.wait(run_id) is RunStatus.COMPLETED

    user_looks = await look_store.list_looks("u1")
    assert [look.status for look in user_looks] == [LookStatus.READY.value] * 3
    assert user_looks[0].image_ref == "asset://i1+i2"
    assert len(renderer.calls) == 3
