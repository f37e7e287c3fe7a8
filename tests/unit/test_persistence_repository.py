import pytest

from atelier.errors import InvalidRunTransition, RunNotFoundError, StoreConsistencyError
from atelier.persistence import (
    InMemoryRunStore,
    RunStatus,
    SQLiteRunStore,
    StepError,
    StepOutcome,
    StepStatus,
)


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        yield InMemoryRunStore()
        return
    store = SQLiteRunStore(tmp_path / "runs.db")
    yield store
    store.close()


@pytest.mark.asyncio
async def test_run_lifecycle(store):
    run_id = await store.create_run("look_generation", {"user_id": "u1"})

    run = await store.get_run(run_id)
    assert run is not None
    assert run.status is RunStatus.RUNNING
    assert run.args == {"user_id": "u1"}
    assert run.completed_at is None

    await store.advance_cursor(run_id, "curate_looks:u1")
    await store.mark_run_status(run_id, RunStatus.COMPLETED)

    run = await store.get_run(run_id)
    assert run.cursor == "curate_looks:u1"
    assert run.status is RunStatus.COMPLETED
    assert run.completed_at is not None
    assert [r.id for r in await store.list_runs(RunStatus.COMPLETED)] == [run_id]
    assert await store.list_runs(RunStatus.RUNNING) == []
    assert await store.get_run("missing") is None


@pytest.mark.asyncio
async def test_run_status_only_moves_forward(store):
    run_id = await store.create_run("look_generation", {})
    await store.mark_run_status(run_id, RunStatus.FAILED)
    # same status again is a no-op
    await store.mark_run_status(run_id, RunStatus.FAILED)

    with pytest.raises(InvalidRunTransition):
        await store.mark_run_status(run_id, RunStatus.RUNNING)
    with pytest.raises(InvalidRunTransition):
        await store.mark_run_status(run_id, RunStatus.COMPLETED)
    assert (await store.get_run(run_id)).status is RunStatus.FAILED

    with pytest.raises(RunNotFoundError):
        await store.mark_run_status("missing", RunStatus.COMPLETED)


@pytest.mark.asyncio
async def test_append_or_get_step_is_idempotent(store):
    run_id = await store.create_run("look_generation", {})
    first = await store.append_or_get_step(run_id, "generate_image", "look_1")
    second = await store.append_or_get_step(run_id, "generate_image", "look_1")

    assert first.is_placeholder
    assert first.attempt == second.attempt == 0
    assert first.status is StepStatus.PENDING
    assert len(await store.list_steps(run_id)) == 1
    assert await store.step_history(run_id) == []


@pytest.mark.asyncio
async def test_claim_and_record_are_compare_and_set(store):
    run_id = await store.create_run("look_generation", {})
    await store.append_or_get_step(run_id, "generate_image", "look_1")

    claimed = await store.claim_attempt(run_id, "generate_image", "look_1", 1)
    assert claimed.attempt == 1
    assert claimed.started_at is not None

    # a second executor holding a stale view loses
    with pytest.raises(StoreConsistencyError):
        await store.claim_attempt(run_id, "generate_image", "look_1", 1)
    with pytest.raises(StoreConsistencyError):
        await store.record_step_outcome(
            run_id, "generate_image", "look_1", 2, StepOutcome.success({"image_ref": "x"})
        )

    error = StepError(type="RetryableExternalError", message="429", retryable=True)
    failed = await store.record_step_outcome(
        run_id, "generate_image", "look_1", 1, StepOutcome.failure(error, terminal=False)
    )
    assert failed.status is StepStatus.FAILED_RETRYABLE
    assert failed.error == error

    # a recorded attempt cannot be recorded twice
    with pytest.raises(StoreConsistencyError):
        await store.record_step_outcome(
            run_id, "generate_image", "look_1", 1, StepOutcome.success({})
        )

    await store.claim_attempt(run_id, "generate_image", "look_1", 2)
    done = await store.record_step_outcome(
        run_id, "generate_image", "look_1", 2, StepOutcome.success({"image_ref": "asset://1"})
    )
    assert done.status is StepStatus.SUCCEEDED
    assert done.result == {"image_ref": "asset://1"}
    assert done.error is None

    # terminal steps cannot be claimed again
    with pytest.raises(StoreConsistencyError):
        await store.claim_attempt(run_id, "generate_image", "look_1", 3)

    stored = await store.get_step(run_id, "generate_image", "look_1")
    assert stored.attempt == 2
    assert stored.status is StepStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_history_is_append_only(store):
    run_id = await store.create_run("look_generation", {})
    error = StepError(type="TimeoutError", message="slow", retryable=True)

    await store.claim_attempt(run_id, "curate_looks", "u1", 1)
    await store.record_step_outcome(
        run_id, "curate_looks", "u1", 1, StepOutcome.failure(error, terminal=False)
    )
    await store.claim_attempt(run_id, "curate_looks", "u1", 2)
    await store.record_step_outcome(
        run_id, "curate_looks", "u1", 2, StepOutcome.success({"compositions": []})
    )

    history = await store.step_history(run_id)
    assert [(e.attempt, e.status) for e in history] == [
        (1, StepStatus.PENDING),
        (1, StepStatus.FAILED_RETRYABLE),
        (2, StepStatus.PENDING),
        (2, StepStatus.SUCCEEDED),
    ]
    assert history[1].error.message == "slow"
    assert history[3].result == {"compositions": []}

    steps = await store.list_steps(run_id)
    assert len(steps) == 1
    assert steps[0].status is StepStatus.SUCCEEDED


@pytest.mark.asyncio
async def test_claim_lease_is_exclusive_until_it_expires(store):
    run_id = await store.create_run("look_generation", {})
    claimed = await store.claim_attempt(
        run_id, "generate_image", "look_1", 1, owner="worker-a", lease_seconds=60
    )
    assert claimed.claimed_by == "worker-a"
    assert claimed.lease_expires_at > claimed.started_at

    # another owner can neither take over nor finish the leased attempt
    with pytest.raises(StoreConsistencyError):
        await store.claim_attempt(
            run_id, "generate_image", "look_1", 2, owner="worker-b", lease_seconds=60
        )
    with pytest.raises(StoreConsistencyError):
        await store.record_step_outcome(
            run_id, "generate_image", "look_1", 1, StepOutcome.success({}), owner="worker-b"
        )

    done = await store.record_step_outcome(
        run_id,
        "generate_image",
        "look_1",
        1,
        StepOutcome.success({"image_ref": "x"}),
        owner="worker-a",
    )
    assert done.status is StepStatus.SUCCEEDED
    assert done.claimed_by == "worker-a"
    assert done.lease_expires_at is None


@pytest.mark.asyncio
async def test_expired_lease_can_be_reclaimed(store):
    run_id = await store.create_run("look_generation", {})
    await store.claim_attempt(
        run_id, "generate_image", "look_1", 1, owner="worker-a", lease_seconds=-1
    )
    step = await store.get_step(run_id, "generate_image", "look_1")
    assert not step.lease_held_by_other("worker-b")

    reclaimed = await store.claim_attempt(
        run_id, "generate_image", "look_1", 2, owner="worker-b", lease_seconds=60
    )
    assert reclaimed.attempt == 2
    assert reclaimed.claimed_by == "worker-b"
    # the original owner lost the attempt
    with pytest.raises(StoreConsistencyError):
        await store.record_step_outcome(
            run_id, "generate_image", "look_1", 1, StepOutcome.success({}), owner="worker-a"
        )


@pytest.mark.asyncio
async def test_sqlite_state_survives_reopen(tmp_path):
    path = tmp_path / "runs.db"
    store = SQLiteRunStore(path)
    run_id = await store.create_run("look_generation", {"user_id": "u1"})
    await store.claim_attempt(run_id, "curate_looks", "u1", 1)
    store.close()

    reopened = SQLiteRunStore(path)
    step = await reopened.get_step(run_id, "curate_looks", "u1")
    assert step.attempt == 1
    assert step.status is StepStatus.PENDING
    assert (await reopened.get_run(run_id)).status is RunStatus.RUNNING
    reopened.close()
