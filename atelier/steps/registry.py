"""Registry of named step handlers and their retry policies."""

from __future__ import annotations

from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import UnknownStepError
from ..retry import RetryPolicy


class StepContext(BaseModel):
    """Information handed to a step handler for one attempt."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    run_id: str
    step_name: str
    step_key: str
    attempt: int
    deps: Any = None


StepHandler = Callable[[StepContext, Dict[str, Any]], Awaitable[Dict[str, Any]]]


class StepDefinition(BaseModel):
    """A registered step: handler plus execution options."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    name: str
    handler: StepHandler
    policy: RetryPolicy = Field(default_factory=RetryPolicy)
    expensive: bool = False
    fatal: bool = False
    timeout: Optional[float] = None


class StepRegistry:
    """Maps step names to handlers.

    ``expensive`` steps call a rate-limited external model and must hold a
    concurrency slot while running. ``fatal`` marks steps whose terminal
    failure ends the whole run.
    """

    def __init__(self, default_policy: Optional[RetryPolicy] = None) -> None:
        self._steps: Dict[str, StepDefinition] = {}
        self._default_policy = default_policy or RetryPolicy()

    @property
    def default_policy(self) -> RetryPolicy:
        return self._default_policy

    def register(
        self,
        name: str,
        handler: StepHandler,
        policy: Optional[RetryPolicy] = None,
        *,
        expensive: bool = False,
        fatal: bool = False,
        timeout: Optional[float] = None,
    ) -> StepDefinition:
        if name in self._steps:
            raise ValueError(f"Step {name} is already registered")
        definition = StepDefinition(
            name=name,
            handler=handler,
            policy=policy or self._default_policy,
            expensive=expensive,
            fatal=fatal,
            timeout=timeout,
        )
        self._steps[name] = definition
        return definition

    def step(
        self,
        name: str,
        policy: Optional[RetryPolicy] = None,
        *,
        expensive: bool = False,
        fatal: bool = False,
        timeout: Optional[float] = None,
    ) -> Callable[[StepHandler], StepHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: StepHandler) -> StepHandler:
            self.register(
                name,
                handler,
                policy,
                expensive=expensive,
                fatal=fatal,
                timeout=timeout,
            )
            return handler

        return decorator

    def get(self, name: str) -> StepDefinition:
        try:
            return self._steps[name]
        except KeyError:
            raise UnknownStepError(f"Step {name} is not registered") from None

    def names(self) -> List[str]:
        return list(self._steps)

    def __contains__(self, name: object) -> bool:
        return name in self._steps

    def __len__(self) -> int:
        return len(self._steps)
