"""Durable step execution engine for atelier workflows."""

from __future__ import annotations

import asyncio
import logging
import uuid
import weakref
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from .constants import DEFAULT_LEASE_GRACE, DEFAULT_LEASE_POLL, DEFAULT_STEP_TIMEOUT
from .errors import (
    FatalInputError,
    RunNotFoundError,
    StepFailedError,
    StoreConsistencyError,
)
from .limiter import ConcurrencyLimiter, LimiterToken
from .persistence.models import (
    RunStatus,
    StepError,
    StepExecution,
    StepOutcome,
    StepStatus,
    utcnow,
)
from .persistence.repository import RunStore
from .steps import StepContext, StepDefinition, StepRegistry
from .workflows.base import WorkflowContext, WorkflowRegistry

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class WorkflowExecutor:
    """Executes workflow steps with checkpointing, retries and backpressure.

    A step whose record is ``succeeded`` is never invoked again; its stored
    result is returned instead. This is what makes re-driving a run after a
    crash safe.

    Every claim carries this executor's ``owner_id`` and a lease. While the
    lease of another owner is live the step is left alone and re-read; once
    it lapses the attempt counts as interrupted and may be reclaimed.
    """

    def __init__(
        self,
        store: RunStore,
        steps: StepRegistry,
        workflows: WorkflowRegistry,
        limiter: ConcurrencyLimiter,
        deps: Any = None,
        step_timeout: Optional[float] = None,
        acquire_timeout: Optional[float] = None,
        sleep: Sleep = asyncio.sleep,
        lease_timeout: Optional[float] = None,
        lease_poll: float = DEFAULT_LEASE_POLL,
        owner_id: Optional[str] = None,
    ) -> None:
        self.store = store
        self.steps = steps
        self.workflows = workflows
        self.limiter = limiter
        self.deps = deps
        self.owner_id = owner_id or uuid.uuid4().hex
        self._step_timeout = step_timeout
        self._acquire_timeout = acquire_timeout
        self._sleep = sleep
        self._lease_timeout = lease_timeout
        self._lease_poll = lease_poll
        self._key_locks: "weakref.WeakValueDictionary[Tuple[str, str, str], asyncio.Lock]" = (
            weakref.WeakValueDictionary()
        )

    def _lock_for(self, run_id: str, step_name: str, step_key: str) -> asyncio.Lock:
        key = (run_id, step_name, step_key)
        lock = self._key_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[key] = lock
        return lock

    # ------------------------------------------------------------------
    # Step execution
    async def run_step(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Execute one step invocation to a terminal outcome.

        Returns:
            The handler result, either fresh or replayed from the store.

        Raises:
            StepFailedError: If the step is or becomes ``failed_terminal``.
            StoreConsistencyError: If another executor keeps winning the
                compare-and-set on this step record.
        """
        definition = self.steps.get(step_name)
        step_key = str(step_key)
        async with self._lock_for(run_id, step_name, step_key):
            conflicts = 0
            while True:
                try:
                    outcome = await self._advance_step(definition, run_id, step_key, payload or {})
                except StoreConsistencyError:
                    conflicts += 1
                    if conflicts > 1:
                        raise
                    logger.warning(
                        f"Store conflict on step {step_name}[{step_key}] for run_id={run_id}, retrying"
                    )
                    continue
                conflicts = 0
                if outcome is None:
                    continue
                return outcome

    def _lease_for(self, definition: StepDefinition) -> float:
        """Seconds a claim stays exclusive to this executor."""
        if self._lease_timeout is not None:
            return self._lease_timeout
        timeout = definition.timeout if definition.timeout is not None else self._step_timeout
        lease = (timeout if timeout is not None else DEFAULT_STEP_TIMEOUT) + DEFAULT_LEASE_GRACE
        if definition.expensive and self._acquire_timeout is not None:
            lease += self._acquire_timeout
        return lease

    async def _advance_step(
        self,
        definition: StepDefinition,
        run_id: str,
        step_key: str,
        payload: Dict[str, Any],
    ) -> Optional[Dict[str, Any]]:
        """Move the step forward by one attempt.

        Returns the result once succeeded, ``None`` when another attempt is
        due or another executor holds the step, and raises
        ``StepFailedError`` once terminally failed.
        """
        step_name = definition.name
        policy = definition.policy
        step = await self.store.append_or_get_step(run_id, step_name, step_key)

        if step.status is StepStatus.SUCCEEDED:
            logger.info(
                f"Replaying step {step_name}[{step_key}] for run_id={run_id} "
                f"from attempt {step.attempt}"
            )
            return step.result or {}

        if step.status is StepStatus.FAILED_TERMINAL:
            raise self._failed(definition, step)

        now = utcnow()
        if step.lease_held_by_other(self.owner_id, now):
            remaining = (step.lease_expires_at - now).total_seconds()
            logger.debug(
                f"Step {step_name}[{step_key}] for run_id={run_id} attempt {step.attempt} "
                f"is held by {step.claimed_by}, waiting up to {remaining:.2f}s"
            )
            # lease polling is wall-clock time, not retry backoff
            await asyncio.sleep(max(0.0, min(self._lease_poll, remaining)))
            return None

        if step.status is StepStatus.PENDING and step.attempt >= policy.max_attempts:
            # the last allowed attempt was interrupted before its outcome was recorded
            error = StepError(
                type="AttemptInterrupted",
                message=f"Attempt {step.attempt} was interrupted before completing",
                retryable=False,
            )
            step = await self.store.record_step_outcome(
                run_id, step_name, step_key, step.attempt, StepOutcome.failure(error, terminal=True)
            )
            raise self._failed(definition, step)

        attempt = step.attempt + 1
        await self.store.claim_attempt(
            run_id,
            step_name,
            step_key,
            attempt,
            owner=self.owner_id,
            lease_seconds=self._lease_for(definition),
        )
        logger.info(
            f"Invoking step {step_name}[{step_key}] for run_id={run_id} "
            f"attempt={attempt}/{policy.max_attempts}"
        )

        try:
            result = await self._invoke(definition, run_id, step_key, attempt, payload)
        except Exception as exc:
            retry = policy.should_retry(attempt, exc)
            error = StepError.from_exception(exc, retryable=policy.is_retryable(exc))
            step = await self._record(
                definition,
                run_id,
                step_key,
                attempt,
                StepOutcome.failure(error, terminal=not retry),
            )
            if step.status is StepStatus.SUCCEEDED:
                return step.result or {}
            if step.status is StepStatus.FAILED_TERMINAL:
                logger.error(
                    f"Step {step_name}[{step_key}] failed terminally for run_id={run_id} "
                    f"attempt={step.attempt}: {step.error.type}: {step.error.message}"
                )
                raise self._failed(definition, step) from exc
            delay = policy.delay_for(attempt)
            logger.warning(
                f"Step {step_name}[{step_key}] failed for run_id={run_id} "
                f"attempt={attempt}: {error.type}: {error.message}. Retrying in {delay:.2f}s"
            )
            await self._sleep(delay)
            return None

        step = await self._record(
            definition, run_id, step_key, attempt, StepOutcome.success(result)
        )
        if step.status is StepStatus.FAILED_TERMINAL:
            raise self._failed(definition, step)
        logger.info(
            f"Step {step_name}[{step_key}] succeeded for run_id={run_id} attempt={step.attempt}"
        )
        return step.result or {}

    async def _record(
        self,
        definition: StepDefinition,
        run_id: str,
        step_key: str,
        attempt: int,
        outcome: StepOutcome,
    ) -> StepExecution:
        """Write this executor's outcome, or return the terminal record that beat it."""
        try:
            return await self.store.record_step_outcome(
                run_id, definition.name, step_key, attempt, outcome, owner=self.owner_id
            )
        except StoreConsistencyError:
            step = await self.store.get_step(run_id, definition.name, step_key)
            if step is None or not step.status.is_terminal:
                raise
            logger.warning(
                f"Attempt {attempt} of step {definition.name}[{step_key}] for run_id={run_id} "
                f"lost its claim; keeping stored {step.status.value} from attempt {step.attempt}"
            )
            return step

    async def _invoke(
        self,
        definition: StepDefinition,
        run_id: str,
        step_key: str,
        attempt: int,
        payload: Dict[str, Any],
    ) -> Dict[str, Any]:
        ctx = StepContext(
            run_id=run_id,
            step_name=definition.name,
            step_key=step_key,
            attempt=attempt,
            deps=self.deps,
        )
        timeout = definition.timeout if definition.timeout is not None else self._step_timeout
        token: Optional[LimiterToken] = None
        if definition.expensive:
            token = await self.limiter.acquire(self._acquire_timeout)
        try:
            if timeout is None:
                return await definition.handler(ctx, payload)
            return await asyncio.wait_for(definition.handler(ctx, payload), timeout)
        finally:
            if token is not None:
                self.limiter.release(token)

    @staticmethod
    def _failed(definition: StepDefinition, step: StepExecution) -> StepFailedError:
        error = step.error
        return StepFailedError(
            run_id=step.run_id,
            step_name=step.step_name,
            step_key=step.step_key,
            message=error.message if error else "unknown error",
            error_type=error.type if error else None,
            fatal=definition.fatal,
        )

    # ------------------------------------------------------------------
    # Run driving
    async def drive(self, run_id: str) -> RunStatus:
        """Drive a run from its current position to a terminal status.

        Completed steps replay from the store, so calling this again for an
        interrupted run resumes it. Unexpected exceptions propagate and leave
        the run ``running`` for a later resume.
        """
        run = await self.store.get_run(run_id)
        if run is None:
            raise RunNotFoundError(f"Run {run_id} not found")
        if run.status.is_terminal:
            logger.debug(f"Run {run_id} already {run.status.value}")
            return run.status

        body = self.workflows.get(run.workflow_type)
        ctx = WorkflowContext(run=run, executor=self, deps=self.deps)
        logger.info(f"Driving {run.workflow_type} run_id={run_id}")

        try:
            await body(ctx, dict(run.args))
        except StepFailedError as exc:
            logger.error(
                f"Run {run_id} failed at step {exc.step_name}[{exc.step_key}]"
                f"{' (fatal step)' if exc.fatal else ''}: {exc.message}"
            )
            status = RunStatus.FAILED
        except FatalInputError as exc:
            logger.error(f"Run {run_id} failed on invalid input: {exc}")
            status = RunStatus.FAILED
        except StoreConsistencyError as exc:
            logger.warning(f"Run {run_id} left running after store conflict: {exc}")
            return RunStatus.RUNNING
        else:
            status = RunStatus.COMPLETED

        await self.store.mark_run_status(run_id, status)
        logger.info(f"Run {run_id} {status.value}")
        return status
