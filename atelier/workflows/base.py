"""Workflow definitions and the context handed to a workflow body."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List

from ..errors import StepFailedError, UnknownWorkflowError
from ..persistence.models import WorkflowRun

if TYPE_CHECKING:
    from ..executor import WorkflowExecutor


class WorkflowContext:
    """Gives a workflow body durable step calls for one run."""

    def __init__(self, run: WorkflowRun, executor: "WorkflowExecutor", deps: Any = None) -> None:
        self.run = run
        self.executor = executor
        self.deps = deps

    @property
    def run_id(self) -> str:
        return self.run.id

    async def step(self, step_name: str, step_key: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Execute ``step_name`` for ``step_key`` and advance the run cursor.

        Completed steps are replayed from the store. A terminal failure
        raises :class:`~atelier.errors.StepFailedError`.
        """
        cursor = f"{step_name}:{step_key}"
        try:
            result = await self.executor.run_step(self.run.id, step_name, step_key, payload)
        except StepFailedError:
            await self.executor.store.advance_cursor(self.run.id, cursor)
            raise
        await self.executor.store.advance_cursor(self.run.id, cursor)
        return result


WorkflowBody = Callable[[WorkflowContext, Dict[str, Any]], Awaitable[None]]


class WorkflowRegistry:
    """Maps workflow types to workflow bodies."""

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowBody] = {}

    def register(self, workflow_type: str, body: WorkflowBody) -> WorkflowBody:
        workflow_type = str(getattr(workflow_type, "value", workflow_type))
        if workflow_type in self._workflows:
            raise ValueError(f"Workflow {workflow_type} is already registered")
        self._workflows[workflow_type] = body
        return body

    def get(self, workflow_type: str) -> WorkflowBody:
        workflow_type = str(getattr(workflow_type, "value", workflow_type))
        try:
            return self._workflows[workflow_type]
        except KeyError:
            raise UnknownWorkflowError(f"Workflow {workflow_type} is not registered") from None

    def types(self) -> List[str]:
        return list(self._workflows)

    def __contains__(self, workflow_type: object) -> bool:
        return str(getattr(workflow_type, "value", workflow_type)) in self._workflows
