"""Runs workflows as independent asyncio tasks."""

from __future__ import annotations

import asyncio
import functools
import logging
from typing import Any, Dict, List

from .errors import RunNotFoundError
from .executor import WorkflowExecutor
from .persistence.models import RunStatus

logger = logging.getLogger(__name__)


class WorkflowEngine:
    """Starts, resumes and tracks one asyncio task per workflow run.

    Steps inside a run execute sequentially; separate runs proceed
    concurrently and only contend on the executor's concurrency limiter.
    """

    def __init__(self, executor: WorkflowExecutor) -> None:
        self.executor = executor
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def store(self):
        return self.executor.store

    @property
    def active_runs(self) -> List[str]:
        return [run_id for run_id, task in self._tasks.items() if not task.done()]

    async def start_run(self, workflow_type: str, args: Dict[str, Any]) -> str:
        """Create a run and schedule it. Returns without waiting for it."""
        workflow_type = str(getattr(workflow_type, "value", workflow_type))
        # fail fast on unknown types before a run row exists
        self.executor.workflows.get(workflow_type)
        run_id = await self.store.create_run(workflow_type, args)
        logger.info(f"Started {workflow_type} run_id={run_id}")
        self._schedule(run_id)
        return run_id

    async def resume_incomplete(self) -> List[str]:
        """Schedule every ``running`` run that has no live task in this process."""
        resumed = []
        for run in await self.store.list_runs(RunStatus.RUNNING):
            task = self._tasks.get(run.id)
            if task is not None and not task.done():
                continue
            logger.info(f"Resuming {run.workflow_type} run_id={run.id}")
            self._schedule(run.id)
            resumed.append(run.id)
        return resumed

    async def wait(self, run_id: str) -> RunStatus:
        """Wait for the run's task and return its final status.

        Finished tasks are not kept, so a run that is not in flight in this
        process is answered from the store.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            return await asyncio.shield(task)
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        return run.status

    async def drain(self) -> None:
        """Wait until every scheduled run task has finished."""
        while True:
            pending = [task for task in self._tasks.values() if not task.done()]
            if not pending:
                return
            await asyncio.gather(*pending, return_exceptions=True)

    def _schedule(self, run_id: str) -> asyncio.Task:
        task = asyncio.create_task(self.executor.drive(run_id), name=f"run-{run_id}")
        task.add_done_callback(functools.partial(self._on_done, run_id))
        self._tasks[run_id] = task
        return task

    def _on_done(self, run_id: str, task: asyncio.Task) -> None:
        if self._tasks.get(run_id) is task:
            del self._tasks[run_id]
        if task.cancelled():
            logger.warning(f"Task {task.get_name()} was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Task {task.get_name()} crashed; run stays resumable", exc_info=exc)
