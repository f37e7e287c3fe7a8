"""PostgreSQL implementation of the run store."""

from __future__ import annotations

import json
import uuid
from typing import Any, Optional

import asyncpg

from ..errors import RunNotFoundError, StoreConsistencyError
from .models import (
    RunStatus,
    StepError,
    StepEvent,
    StepExecution,
    StepOutcome,
    StepStatus,
    WorkflowRun,
    utcnow,
)
from .repository import RunStore, check_transition, lease_expiry

_TERMINAL_STEP_STATUSES = [StepStatus.SUCCEEDED.value, StepStatus.FAILED_TERMINAL.value]


def _json(value: Any) -> Any:
    if isinstance(value, str):
        return json.loads(value)
    return value


class PostgresRunStore(RunStore):
    """Persist workflow runs using PostgreSQL.

    Step writes are conditional ``UPDATE ... RETURNING`` statements, so the
    compare-and-set holds across processes sharing the database.
    """

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_runs (
                id TEXT PRIMARY KEY,
                workflow_type TEXT NOT NULL,
                args JSONB NOT NULL,
                status TEXT NOT NULL,
                cursor TEXT,
                created_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_executions (
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                step_key TEXT NOT NULL,
                attempt INTEGER NOT NULL DEFAULT 0,
                status TEXT NOT NULL,
                result JSONB,
                error JSONB,
                started_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                claimed_by TEXT,
                lease_expires_at TIMESTAMPTZ,
                PRIMARY KEY (run_id, step_name, step_key)
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS step_history (
                id SERIAL PRIMARY KEY,
                run_id TEXT NOT NULL,
                step_name TEXT NOT NULL,
                step_key TEXT NOT NULL,
                attempt INTEGER NOT NULL,
                status TEXT NOT NULL,
                result JSONB,
                error JSONB,
                recorded_at TIMESTAMPTZ NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _to_run(row: asyncpg.Record) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_type=row["workflow_type"],
            args=_json(row["args"]),
            status=RunStatus(row["status"]),
            cursor=row["cursor"],
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _to_step(row: asyncpg.Record) -> StepExecution:
        error = _json(row["error"])
        return StepExecution(
            run_id=row["run_id"],
            step_name=row["step_name"],
            step_key=row["step_key"],
            attempt=row["attempt"],
            status=StepStatus(row["status"]),
            result=_json(row["result"]),
            error=StepError(**error) if error else None,
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            claimed_by=row["claimed_by"],
            lease_expires_at=row["lease_expires_at"],
        )

    async def _append_event(self, conn: asyncpg.Connection, step: StepExecution) -> None:
        await conn.execute(
            """
            INSERT INTO step_history
                (run_id, step_name, step_key, attempt, status, result, error, recorded_at)
            VALUES ($1, $2, $3, $4, $5, $6::jsonb, $7::jsonb, $8)
            """,
            step.run_id,
            step.step_name,
            step.step_key,
            step.attempt,
            step.status.value,
            json.dumps(step.result) if step.result is not None else None,
            json.dumps(step.error.model_dump()) if step.error else None,
            utcnow(),
        )

    # ------------------------------------------------------------------
    async def create_run(self, workflow_type: str, args: dict[str, Any]) -> str:
        run = WorkflowRun(id=str(uuid.uuid4()), workflow_type=str(workflow_type), args=dict(args))
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO workflow_runs (id, workflow_type, args, status, created_at) "
                "VALUES ($1, $2, $3::jsonb, $4, $5)",
                run.id,
                run.workflow_type,
                json.dumps(run.args),
                run.status.value,
                run.created_at,
            )
        finally:
            await conn.close()
        return run.id

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM workflow_runs WHERE id = $1", run_id)
        finally:
            await conn.close()
        return self._to_run(row) if row else None

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        conn = await self._connect()
        try:
            if status is None:
                rows = await conn.fetch("SELECT * FROM workflow_runs ORDER BY created_at")
            else:
                rows = await conn.fetch(
                    "SELECT * FROM workflow_runs WHERE status = $1 ORDER BY created_at",
                    RunStatus(status).value,
                )
        finally:
            await conn.close()
        return [self._to_run(r) for r in rows]

    async def mark_run_status(self, run_id: str, status: RunStatus) -> None:
        status = RunStatus(status)
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT status FROM workflow_runs WHERE id = $1 FOR UPDATE", run_id
                )
                if row is None:
                    raise RunNotFoundError(f"Run {run_id} not found")
                if not check_transition(run_id, RunStatus(row["status"]), status):
                    return
                await conn.execute(
                    "UPDATE workflow_runs SET status = $1, completed_at = $2 WHERE id = $3",
                    status.value,
                    utcnow() if status.is_terminal else None,
                    run_id,
                )
        finally:
            await conn.close()

    async def advance_cursor(self, run_id: str, cursor: str) -> None:
        conn = await self._connect()
        try:
            result = await conn.execute(
                "UPDATE workflow_runs SET cursor = $1 WHERE id = $2", cursor, run_id
            )
        finally:
            await conn.close()
        if result.endswith(" 0"):
            raise RunNotFoundError(f"Run {run_id} not found")

    async def append_or_get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO step_executions (run_id, step_name, step_key, attempt, status)
                VALUES ($1, $2, $3, 0, $4)
                ON CONFLICT (run_id, step_name, step_key) DO NOTHING
                """,
                run_id,
                step_name,
                step_key,
                StepStatus.PENDING.value,
            )
            row = await conn.fetchrow(
                "SELECT * FROM step_executions WHERE run_id = $1 AND step_name = $2 AND step_key = $3",
                run_id,
                step_name,
                step_key,
            )
        finally:
            await conn.close()
        return self._to_step(row)

    async def get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM step_executions WHERE run_id = $1 AND step_name = $2 AND step_key = $3",
                run_id,
                step_name,
                step_key,
            )
        finally:
            await conn.close()
        return self._to_step(row) if row else None

    async def claim_attempt(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ) -> StepExecution:
        now = utcnow()
        conn = await self._connect()
        try:
            async with conn.transaction():
                await conn.execute(
                    """
                    INSERT INTO step_executions (run_id, step_name, step_key, attempt, status)
                    VALUES ($1, $2, $3, 0, $4)
                    ON CONFLICT (run_id, step_name, step_key) DO NOTHING
                    """,
                    run_id,
                    step_name,
                    step_key,
                    StepStatus.PENDING.value,
                )
                row = await conn.fetchrow(
                    """
                    UPDATE step_executions
                    SET attempt = $4, status = $5, error = NULL, started_at = $6, finished_at = NULL,
                        claimed_by = $8, lease_expires_at = $9
                    WHERE run_id = $1 AND step_name = $2 AND step_key = $3
                      AND attempt = $4 - 1 AND NOT (status = ANY($7::text[]))
                      AND NOT (
                        status = $5 AND attempt > 0
                        AND claimed_by IS NOT NULL AND claimed_by IS DISTINCT FROM $8
                        AND lease_expires_at > $6
                      )
                    RETURNING *
                    """,
                    run_id,
                    step_name,
                    step_key,
                    attempt,
                    StepStatus.PENDING.value,
                    now,
                    _TERMINAL_STEP_STATUSES,
                    owner,
                    lease_expiry(lease_seconds, now),
                )
                if row is None:
                    raise StoreConsistencyError(
                        f"Cannot claim attempt {attempt} of step {step_name}[{step_key}] for run {run_id}"
                    )
                step = self._to_step(row)
                await self._append_event(conn, step)
        finally:
            await conn.close()
        return step

    async def record_step_outcome(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        outcome: StepOutcome,
        owner: Optional[str] = None,
    ) -> StepExecution:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    UPDATE step_executions
                    SET status = $5, result = $6::jsonb, error = $7::jsonb, finished_at = $8,
                        lease_expires_at = NULL
                    WHERE run_id = $1 AND step_name = $2 AND step_key = $3
                      AND attempt = $4 AND status = $9
                      AND ($10::text IS NULL OR claimed_by IS NULL OR claimed_by = $10)
                    RETURNING *
                    """,
                    run_id,
                    step_name,
                    step_key,
                    attempt,
                    outcome.status.value,
                    json.dumps(outcome.result) if outcome.result is not None else None,
                    json.dumps(outcome.error.model_dump()) if outcome.error else None,
                    utcnow(),
                    StepStatus.PENDING.value,
                    owner,
                )
                if row is None:
                    raise StoreConsistencyError(
                        f"Cannot record attempt {attempt} of step {step_name}[{step_key}] for run {run_id}"
                    )
                step = self._to_step(row)
                await self._append_event(conn, step)
        finally:
            await conn.close()
        return step

    async def list_steps(self, run_id: str) -> list[StepExecution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_executions WHERE run_id = $1 ORDER BY started_at NULLS LAST",
                run_id,
            )
        finally:
            await conn.close()
        return [self._to_step(r) for r in rows]

    async def step_history(self, run_id: str) -> list[StepEvent]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM step_history WHERE run_id = $1 ORDER BY id", run_id
            )
        finally:
            await conn.close()
        events = []
        for r in rows:
            error = _json(r["error"])
            events.append(
                StepEvent(
                    id=r["id"],
                    run_id=r["run_id"],
                    step_name=r["step_name"],
                    step_key=r["step_key"],
                    attempt=r["attempt"],
                    status=StepStatus(r["status"]),
                    result=_json(r["result"]),
                    error=StepError(**error) if error else None,
                    recorded_at=r["recorded_at"],
                )
            )
        return events
