import asyncio

from typer.testing import CliRunner

import atelier.persistence as persistence
from atelier.cli import app
from atelier.persistence import InMemoryRunStore, RunStatus, StepError, StepOutcome


def _setup_store() -> InMemoryRunStore:
    store = InMemoryRunStore()
    persistence._store_instance = store
    return store


async def _populate(store: InMemoryRunStore):
    done = await store.create_run("look_generation", {"user_id": "u1"})
    await store.claim_attempt(done, "curate_looks", "u1", 1)
    await store.record_step_outcome(done, "curate_looks", "u1", 1, StepOutcome.success({}))
    await store.claim_attempt(done, "generate_image", "look_1", 1)
    error = StepError(type="TerminalExternalError", message="content blocked")
    await store.record_step_outcome(
        done, "generate_image", "look_1", 1, StepOutcome.failure(error, terminal=True)
    )
    await store.advance_cursor(done, "generate_image:look_1")
    await store.mark_run_status(done, RunStatus.COMPLETED)
    running = await store.create_run("look_generation", {"user_id": "u2"})
    return done, running


def test_runs_list_filters_by_status():
    store = _setup_store()
    done, running = asyncio.run(_populate(store))

    runner = CliRunner()
    result = runner.invoke(app, ["runs", "list"])
    assert result.exit_code == 0, result.stdout
    assert done in result.stdout
    assert running in result.stdout

    result = runner.invoke(app, ["runs", "list", "--status", "running"])
    assert result.exit_code == 0, result.stdout
    assert running in result.stdout
    assert done not in result.stdout

    result = runner.invoke(app, ["runs", "list", "--status", "paused"])
    assert result.exit_code == 1


def test_runs_show_and_history():
    store = _setup_store()
    done, _ = asyncio.run(_populate(store))

    runner = CliRunner()
    result = runner.invoke(app, ["runs", "show", done])
    assert result.exit_code == 0, result.stdout
    output = result.stdout
    assert f"Run {done}: completed" in output
    assert "curate_looks[u1]: succeeded (attempt 1)" in output
    assert "generate_image[look_1]: failed_terminal" in output
    assert "content blocked" in output

    result = runner.invoke(app, ["runs", "history", done])
    assert result.exit_code == 0, result.stdout
    lines = result.stdout.strip().splitlines()
    assert len(lines) == 4
    assert lines[-1].endswith("failed_terminal")

    missing = runner.invoke(app, ["runs", "show", "missing-id"])
    assert missing.exit_code == 1
    assert "Run not found" in missing.stdout
