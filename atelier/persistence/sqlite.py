"""SQLite implementation of the run store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from ..errors import RunNotFoundError
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
from .repository import (
    RunStore,
    check_transition,
    ensure_claimable,
    ensure_recordable,
    lease_expiry,
)

_STEP_COLUMNS = (
    "run_id, step_name, step_key, attempt, status, result, error, started_at, finished_at, "
    "claimed_by, lease_expires_at"
)


def _dump(value: Any) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _load(value: Optional[str]) -> Any:
    return json.loads(value) if value else None


def _ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SQLiteRunStore(RunStore):
    """Persist workflow runs using SQLite.

    Blocking sqlite calls run in worker threads; a thread lock serializes
    them on the shared connection and every write is one transaction.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS workflow_runs (
                    id TEXT PRIMARY KEY,
                    workflow_type TEXT NOT NULL,
                    args TEXT NOT NULL,
                    status TEXT NOT NULL,
                    cursor TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS step_executions (
                    run_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    step_key TEXT NOT NULL,
                    attempt INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL,
                    result TEXT,
                    error TEXT,
                    started_at TEXT,
                    finished_at TEXT,
                    claimed_by TEXT,
                    lease_expires_at TEXT,
                    PRIMARY KEY (run_id, step_name, step_key)
                )
                """
            )
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS step_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT NOT NULL,
                    step_name TEXT NOT NULL,
                    step_key TEXT NOT NULL,
                    attempt INTEGER NOT NULL,
                    status TEXT NOT NULL,
                    result TEXT,
                    error TEXT,
                    recorded_at TEXT NOT NULL
                )
                """
            )

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Row mapping
    @staticmethod
    def _to_run(row: sqlite3.Row) -> WorkflowRun:
        return WorkflowRun(
            id=row["id"],
            workflow_type=row["workflow_type"],
            args=json.loads(row["args"]),
            status=RunStatus(row["status"]),
            cursor=row["cursor"],
            created_at=_ts(row["created_at"]),
            completed_at=_ts(row["completed_at"]),
        )

    @staticmethod
    def _to_step(row: sqlite3.Row) -> StepExecution:
        error = _load(row["error"])
        return StepExecution(
            run_id=row["run_id"],
            step_name=row["step_name"],
            step_key=row["step_key"],
            attempt=row["attempt"],
            status=StepStatus(row["status"]),
            result=_load(row["result"]),
            error=StepError(**error) if error else None,
            started_at=_ts(row["started_at"]),
            finished_at=_ts(row["finished_at"]),
            claimed_by=row["claimed_by"],
            lease_expires_at=_ts(row["lease_expires_at"]),
        )

    # ------------------------------------------------------------------
    # Blocking helpers, always called with the lock held
    def _select_run(self, run_id: str) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            "SELECT * FROM workflow_runs WHERE id = ?", (run_id,)
        ).fetchone()

    def _select_step(self, run_id: str, step_name: str, step_key: str) -> Optional[sqlite3.Row]:
        return self._conn.execute(
            f"SELECT {_STEP_COLUMNS} FROM step_executions "
            "WHERE run_id = ? AND step_name = ? AND step_key = ?",
            (run_id, step_name, step_key),
        ).fetchone()

    def _get_or_create_step(self, run_id: str, step_name: str, step_key: str) -> StepExecution:
        self._conn.execute(
            "INSERT OR IGNORE INTO step_executions (run_id, step_name, step_key, attempt, status) "
            "VALUES (?, ?, ?, 0, ?)",
            (run_id, step_name, step_key, StepStatus.PENDING.value),
        )
        return self._to_step(self._select_step(run_id, step_name, step_key))

    def _write_step(self, step: StepExecution) -> None:
        self._conn.execute(
            """
            UPDATE step_executions
            SET attempt = ?, status = ?, result = ?, error = ?, started_at = ?, finished_at = ?,
                claimed_by = ?, lease_expires_at = ?
            WHERE run_id = ? AND step_name = ? AND step_key = ?
            """,
            (
                step.attempt,
                step.status.value,
                _dump(step.result),
                _dump(step.error.model_dump()) if step.error else None,
                step.started_at.isoformat() if step.started_at else None,
                step.finished_at.isoformat() if step.finished_at else None,
                step.claimed_by,
                step.lease_expires_at.isoformat() if step.lease_expires_at else None,
                step.run_id,
                step.step_name,
                step.step_key,
            ),
        )
        self._conn.execute(
            """
            INSERT INTO step_history
                (run_id, step_name, step_key, attempt, status, result, error, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                step.run_id,
                step.step_name,
                step.step_key,
                step.attempt,
                step.status.value,
                _dump(step.result),
                _dump(step.error.model_dump()) if step.error else None,
                utcnow().isoformat(),
            ),
        )

    def _create_run(self, run: WorkflowRun) -> None:
        with self._lock, self._conn:
            self._conn.execute(
                "INSERT INTO workflow_runs (id, workflow_type, args, status, cursor, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    run.id,
                    run.workflow_type,
                    json.dumps(run.args),
                    run.status.value,
                    run.cursor,
                    run.created_at.isoformat(),
                ),
            )

    def _get_run(self, run_id: str) -> Optional[WorkflowRun]:
        with self._lock:
            row = self._select_run(run_id)
        return self._to_run(row) if row else None

    def _list_runs(self, status: Optional[RunStatus]) -> list[WorkflowRun]:
        with self._lock:
            if status is None:
                rows = self._conn.execute(
                    "SELECT * FROM workflow_runs ORDER BY created_at"
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT * FROM workflow_runs WHERE status = ? ORDER BY created_at",
                    (status.value,),
                ).fetchall()
        return [self._to_run(r) for r in rows]

    def _mark_run_status(self, run_id: str, status: RunStatus) -> None:
        with self._lock, self._conn:
            self._conn.execute("BEGIN IMMEDIATE")
            row = self._select_run(run_id)
            if row is None:
                raise RunNotFoundError(f"Run {run_id} not found")
            if not check_transition(run_id, RunStatus(row["status"]), status):
                return
            self._conn.execute(
                "UPDATE workflow_runs SET status = ?, completed_at = ? WHERE id = ?",
                (
                    status.value,
                    utcnow().isoformat() if status.is_terminal else None,
                    run_id,
                ),
            )

    def _advance_cursor(self, run_id: str, cursor: str) -> None:
        with self._lock, self._conn:
            updated = self._conn.execute(
                "UPDATE workflow_runs SET cursor = ? WHERE id = ?", (cursor, run_id)
            ).rowcount
        if not updated:
            raise RunNotFoundError(f"Run {run_id} not found")

    def _append_or_get_step(self, run_id: str, step_name: str, step_key: str) -> StepExecution:
        with self._lock, self._conn:
            return self._get_or_create_step(run_id, step_name, step_key)

    def _get_step(self, run_id: str, step_name: str, step_key: str) -> Optional[StepExecution]:
        with self._lock:
            row = self._select_step(run_id, step_name, step_key)
        return self._to_step(row) if row else None

    def _claim_attempt(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        owner: Optional[str],
        lease_seconds: Optional[float],
    ) -> StepExecution:
        with self._lock, self._conn:
            self._conn.execute("BEGIN IMMEDIATE")
            step = self._get_or_create_step(run_id, step_name, step_key)
            now = utcnow()
            ensure_claimable(step, attempt, owner, now)
            step.attempt = attempt
            step.status = StepStatus.PENDING
            step.error = None
            step.started_at = now
            step.finished_at = None
            step.claimed_by = owner
            step.lease_expires_at = lease_expiry(lease_seconds, now)
            self._write_step(step)
            return step

    def _record_step_outcome(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        outcome: StepOutcome,
        owner: Optional[str],
    ) -> StepExecution:
        with self._lock, self._conn:
            self._conn.execute("BEGIN IMMEDIATE")
            step = self._get_or_create_step(run_id, step_name, step_key)
            ensure_recordable(step, attempt, owner)
            step.status = outcome.status
            step.result = outcome.result
            step.error = outcome.error
            step.finished_at = utcnow()
            step.lease_expires_at = None
            self._write_step(step)
            return step

    def _list_steps(self, run_id: str) -> list[StepExecution]:
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_STEP_COLUMNS} FROM step_executions WHERE run_id = ? ORDER BY rowid",
                (run_id,),
            ).fetchall()
        return [self._to_step(r) for r in rows]

    def _step_history(self, run_id: str) -> list[StepEvent]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM step_history WHERE run_id = ? ORDER BY id", (run_id,)
            ).fetchall()
        events = []
        for r in rows:
            error = _load(r["error"])
            events.append(
                StepEvent(
                    id=r["id"],
                    run_id=r["run_id"],
                    step_name=r["step_name"],
                    step_key=r["step_key"],
                    attempt=r["attempt"],
                    status=StepStatus(r["status"]),
                    result=_load(r["result"]),
                    error=StepError(**error) if error else None,
                    recorded_at=_ts(r["recorded_at"]),
                )
            )
        return events

    # ------------------------------------------------------------------
    # Store API
    async def create_run(self, workflow_type: str, args: dict[str, Any]) -> str:
        run = WorkflowRun(id=str(uuid.uuid4()), workflow_type=str(workflow_type), args=dict(args))
        await asyncio.to_thread(self._create_run, run)
        return run.id

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await asyncio.to_thread(self._get_run, run_id)

    async def list_runs(self, status: Optional[RunStatus] = None) -> list[WorkflowRun]:
        status = RunStatus(status) if status is not None else None
        return await asyncio.to_thread(self._list_runs, status)

    async def mark_run_status(self, run_id: str, status: RunStatus) -> None:
        await asyncio.to_thread(self._mark_run_status, run_id, RunStatus(status))

    async def advance_cursor(self, run_id: str, cursor: str) -> None:
        await asyncio.to_thread(self._advance_cursor, run_id, cursor)

    async def append_or_get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution:
        return await asyncio.to_thread(self._append_or_get_step, run_id, step_name, step_key)

    async def get_step(
        self, run_id: str, step_name: str, step_key: str
    ) -> StepExecution | None:
        return await asyncio.to_thread(self._get_step, run_id, step_name, step_key)

    async def claim_attempt(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        owner: Optional[str] = None,
        lease_seconds: Optional[float] = None,
    ) -> StepExecution:
        return await asyncio.to_thread(
            self._claim_attempt, run_id, step_name, step_key, attempt, owner, lease_seconds
        )

    async def record_step_outcome(
        self,
        run_id: str,
        step_name: str,
        step_key: str,
        attempt: int,
        outcome: StepOutcome,
        owner: Optional[str] = None,
    ) -> StepExecution:
        return await asyncio.to_thread(
            self._record_step_outcome, run_id, step_name, step_key, attempt, outcome, owner
        )

    async def list_steps(self, run_id: str) -> list[StepExecution]:
        return await asyncio.to_thread(self._list_steps, run_id)

    async def step_history(self, run_id: str) -> list[StepEvent]:
        return await asyncio.to_thread(self._step_history, run_id)
