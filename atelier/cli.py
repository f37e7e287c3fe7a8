"""Command line interface for inspecting atelier workflow runs."""

from __future__ import annotations

import asyncio
import json
from typing import Optional

import typer

from atelier.persistence import RunStatus, get_run_store

app = typer.Typer(help="CLI for atelier workflow runs")

runs_app = typer.Typer(help="Commands for inspecting workflow runs")

app.add_typer(runs_app, name="runs")


@app.callback()
def main() -> None:
    """Atelier CLI entry point."""
    pass


@runs_app.command("list")
def runs_list(
    status: Optional[str] = typer.Option(
        None, help="Only show runs with this status (running, completed, failed)"
    ),
) -> None:
    """
    List workflow runs with their current status.

    Example:
        atelier runs list
        atelier runs list --status running
        # Output: 3f1c...    look_generation    running    generate_image:look_ab12
    """
    run_status = None
    if status is not None:
        try:
            run_status = RunStatus(status)
        except ValueError:
            typer.secho(f"Unknown status: {status}", fg=typer.colors.RED)
            raise typer.Exit(code=1)

    store = get_run_store()
    runs = asyncio.run(store.list_runs(run_status))
    if not runs:
        typer.echo("No runs found")
        return
    for run in runs:
        typer.echo(f"{run.id}\t{run.workflow_type}\t{run.status.value}\t{run.cursor or '-'}")


@runs_app.command("show")
def runs_show(run_id: str) -> None:
    """
    Show a run and the latest state of each of its steps.

    Example:
        atelier runs show 3f1c...
        # Output: Run 3f1c...: completed
        #         - curate_looks[u1]: succeeded (attempt 1)
        #         - generate_image[look_ab12]: failed_terminal (attempt 3) TerminalExternalError: ...
    """
    store = get_run_store()
    run = asyncio.run(store.get_run(run_id))
    if run is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)

    typer.echo(f"Run {run.id}: {run.status.value}")
    typer.echo(f"Type: {run.workflow_type}")
    if run.args:
        typer.echo(f"Args: {json.dumps(run.args)}")
    if run.cursor:
        typer.echo(f"Cursor: {run.cursor}")
    for step in asyncio.run(store.list_steps(run_id)):
        line = f"- {step.step_name}[{step.step_key}]: {step.status.value} (attempt {step.attempt})"
        if step.error is not None:
            line += f" {step.error.type}: {step.error.message}"
        typer.echo(line)


@runs_app.command("history")
def runs_history(run_id: str) -> None:
    """Print every recorded attempt claim and outcome of a run in order."""
    store = get_run_store()
    if asyncio.run(store.get_run(run_id)) is None:
        typer.echo("Run not found")
        raise typer.Exit(code=1)
    events = asyncio.run(store.step_history(run_id))
    if not events:
        typer.echo("No step history")
        return
    for event in events:
        typer.echo(
            f"{event.recorded_at.isoformat()}\t{event.step_name}[{event.step_key}]"
            f"\tattempt={event.attempt}\t{event.status.value}"
        )


if __name__ == "__main__":
    app()
