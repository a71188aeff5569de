"""SQLite-backed execution store for pytaxis.

Design Pattern: Adapter Pattern
SqliteExecutionStore adapts a SQLite database to the ExecutionStore
interface.

Implementation details:
- aiosqlite for async operations
- WAL mode for concurrent reads
- One shared connection, serialized with an asyncio.Lock
- Outputs and inputs pickled into BLOB columns
- INTEGER timestamps (milliseconds since epoch)
"""

from __future__ import annotations

import asyncio
import pickle
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite

from pytaxis.errors import StorageError
from pytaxis.models import QualityScore, UnitStatus, WorkflowExecutionState, WorkflowStatus
from pytaxis.storage.base import ExecutionStore, StoredExecution, StoredWorkflow


def _to_ms(value: datetime | None) -> int | None:
    return int(value.timestamp() * 1000) if value is not None else None


def _from_ms(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value / 1000, tz=UTC) if value is not None else None


def _dump(value: Any) -> bytes | None:
    return pickle.dumps(value) if value is not None else None


def _load(blob: bytes | None) -> Any:
    return pickle.loads(blob) if blob is not None else None


class SqliteExecutionStore(ExecutionStore):
    """SQLite-backed durable store.

    After __init__, the instance is not yet usable. Call connect() first.

    Usage:
        store = SqliteExecutionStore("pytaxis.db")
        await store.connect()
        try:
            await store.create_execution_record("A", "unit_1", "workflow_1")
        finally:
            await store.close()
    """

    def __init__(self, db_path: str):
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @classmethod
    async def in_memory(cls) -> SqliteExecutionStore:
        """Create and connect an in-memory store (for tests)."""
        instance = cls(":memory:")
        await instance.connect()
        return instance

    def __repr__(self) -> str:
        if self.db_path == ":memory:":
            return "SqliteExecutionStore(in-memory)"
        return f"SqliteExecutionStore({self.db_path})"

    async def connect(self) -> None:
        """Open the database connection and initialize the schema."""
        if self._connection is not None:
            return

        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path, timeout=5.0, isolation_level=None)

        # In-memory databases report "memory" and don't support WAL
        cursor = await self._connection.execute("PRAGMA journal_mode=WAL")
        result = await cursor.fetchone()
        await cursor.close()
        if result and result[0].upper() not in ("WAL", "MEMORY"):
            raise StorageError(f"Failed to enable WAL mode, got: {result[0]}")

        await self._connection.execute("PRAGMA synchronous=NORMAL")
        await self._connection.execute("PRAGMA busy_timeout=5000")
        await self._create_schema()
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    def _conn(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise StorageError("Not connected. Call connect() first.")
        return self._connection

    async def _create_schema(self) -> None:
        """Create tables and indexes.

        Schema design:
        - workflows: one row per workflow run
        - unit_executions: one row per unit attempt, keyed by execution id
        - quality_evaluations: scores written by the evaluation subsystem
        """
        conn = self._conn()
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                project_id TEXT NOT NULL,
                trace_id TEXT NOT NULL DEFAULT '',
                status TEXT CHECK( status IN (
                    'queued','running','paused','completed','failed','cancelled'
                ) ) NOT NULL,
                iteration INTEGER NOT NULL DEFAULT 0,
                input BLOB,
                output BLOB,
                error TEXT,
                created_at INTEGER NOT NULL,
                completed_at INTEGER
            )
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS unit_executions (
                execution_id TEXT PRIMARY KEY,
                unit_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                status TEXT CHECK( status IN (
                    'pending','running','retrying','completed','failed','skipped'
                ) ) NOT NULL,
                output BLOB,
                error TEXT,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                cost REAL NOT NULL DEFAULT 0,
                duration_ms REAL NOT NULL DEFAULT 0,
                seq INTEGER NOT NULL,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_unit_executions_workflow
            ON unit_executions(workflow_id, seq)
        """)

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS quality_evaluations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                workflow_id TEXT NOT NULL,
                unit_id TEXT NOT NULL,
                execution_id TEXT,
                dimension TEXT NOT NULL,
                score REAL NOT NULL,
                max_score REAL NOT NULL,
                feedback TEXT
            )
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_quality_evaluations_workflow
            ON quality_evaluations(workflow_id)
        """)

    # ========================================================================
    # Unit executions
    # ========================================================================

    async def create_execution_record(
        self, unit_id: str, execution_id: str, workflow_id: str
    ) -> None:
        conn = self._conn()
        now = _to_ms(datetime.now(UTC))
        async with self._lock:
            cursor = await conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM unit_executions")
            (seq,) = await cursor.fetchone()
            await cursor.close()
            try:
                await conn.execute(
                    """
                    INSERT INTO unit_executions
                        (execution_id, unit_id, workflow_id, status, seq, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (execution_id, unit_id, workflow_id, UnitStatus.RUNNING.value, seq, now, now),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"Execution record already exists: {execution_id}") from e
            await conn.commit()

    async def update_execution_record(
        self,
        execution_id: str,
        *,
        status: UnitStatus,
        output: Any = None,
        error: str | None = None,
        tokens_used: int | None = None,
        cost: float | None = None,
        duration_ms: float | None = None,
    ) -> None:
        conn = self._conn()
        async with self._lock:
            cursor = await conn.execute(
                """
                UPDATE unit_executions
                SET status = ?, output = ?, error = ?,
                    tokens_used = COALESCE(?, tokens_used),
                    cost = COALESCE(?, cost),
                    duration_ms = COALESCE(?, duration_ms),
                    updated_at = ?
                WHERE execution_id = ?
                """,
                (
                    status.value,
                    _dump(output),
                    error,
                    tokens_used,
                    cost,
                    duration_ms,
                    _to_ms(datetime.now(UTC)),
                    execution_id,
                ),
            )
            updated = cursor.rowcount
            await cursor.close()
            await conn.commit()

        if updated == 0:
            raise StorageError(f"Execution record not found: {execution_id}")

    @staticmethod
    def _row_to_execution(row: aiosqlite.Row | tuple) -> StoredExecution:
        return StoredExecution(
            execution_id=row[0],
            unit_id=row[1],
            workflow_id=row[2],
            status=UnitStatus(row[3]),
            output=_load(row[4]),
            error=row[5],
            tokens_used=row[6],
            cost=row[7],
            duration_ms=row[8],
            created_at=_from_ms(row[9]),
            updated_at=_from_ms(row[10]),
        )

    _EXECUTION_COLUMNS = (
        "execution_id, unit_id, workflow_id, status, output, error, "
        "tokens_used, cost, duration_ms, created_at, updated_at"
    )

    async def get_execution_record(self, execution_id: str) -> StoredExecution | None:
        conn = self._conn()
        async with self._lock:
            cursor = await conn.execute(
                f"SELECT {self._EXECUTION_COLUMNS} FROM unit_executions WHERE execution_id = ?",
                (execution_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()
        return self._row_to_execution(row) if row else None

    async def list_execution_records(self, workflow_id: str) -> list[StoredExecution]:
        conn = self._conn()
        async with self._lock:
            cursor = await conn.execute(
                f"SELECT {self._EXECUTION_COLUMNS} FROM unit_executions "
                "WHERE workflow_id = ? ORDER BY seq",
                (workflow_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [self._row_to_execution(row) for row in rows]

    # ========================================================================
    # Quality evaluations
    # ========================================================================

    async def record_quality_evaluation(self, workflow_id: str, score: QualityScore) -> None:
        conn = self._conn()
        async with self._lock:
            await conn.execute(
                """
                INSERT INTO quality_evaluations
                    (workflow_id, unit_id, execution_id, dimension, score, max_score, feedback)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    workflow_id,
                    score.unit_id,
                    score.execution_id,
                    score.dimension,
                    score.score,
                    score.max_score,
                    score.feedback,
                ),
            )
            await conn.commit()

    async def query_quality_evaluations(self, workflow_id: str) -> list[QualityScore]:
        conn = self._conn()
        async with self._lock:
            cursor = await conn.execute(
                """
                SELECT unit_id, dimension, score, max_score, execution_id, feedback
                FROM quality_evaluations WHERE workflow_id = ? ORDER BY id
                """,
                (workflow_id,),
            )
            rows = await cursor.fetchall()
            await cursor.close()
        return [
            QualityScore(
                unit_id=row[0],
                dimension=row[1],
                score=row[2],
                max_score=row[3],
                execution_id=row[4],
                feedback=row[5],
            )
            for row in rows
        ]

    # ========================================================================
    # Workflows
    # ========================================================================

    async def create_workflow(self, state: WorkflowExecutionState) -> None:
        conn = self._conn()
        async with self._lock:
            try:
                await conn.execute(
                    """
                    INSERT INTO workflows
                        (id, tenant_id, project_id, trace_id, status, iteration, input, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        state.id,
                        state.tenant_id,
                        state.project_id,
                        state.trace_id,
                        state.status.value,
                        state.iteration,
                        _dump(state.input),
                        _to_ms(state.created_at),
                    ),
                )
            except aiosqlite.IntegrityError as e:
                raise StorageError(f"Workflow already exists: {state.id}") from e
            await conn.commit()

    async def get_workflow(self, workflow_id: str) -> StoredWorkflow | None:
        conn = self._conn()
        async with self._lock:
            cursor = await conn.execute(
                """
                SELECT id, tenant_id, project_id, status, trace_id, iteration,
                       input, output, error, created_at, completed_at
                FROM workflows WHERE id = ?
                """,
                (workflow_id,),
            )
            row = await cursor.fetchone()
            await cursor.close()

        if row is None:
            return None
        return StoredWorkflow(
            id=row[0],
            tenant_id=row[1],
            project_id=row[2],
            status=WorkflowStatus(row[3]),
            trace_id=row[4],
            iteration=row[5],
            input=_load(row[6]),
            output=_load(row[7]),
            error=row[8],
            created_at=_from_ms(row[9]),
            completed_at=_from_ms(row[10]),
        )

    async def update_workflow_status(
        self,
        workflow_id: str,
        *,
        status: WorkflowStatus,
        output: Any = None,
        error: str | None = None,
        completed_at: datetime | None = None,
        iteration: int | None = None,
    ) -> None:
        conn = self._conn()
        async with self._lock:
            cursor = await conn.execute(
                """
                UPDATE workflows
                SET status = ?,
                    output = COALESCE(?, output),
                    error = COALESCE(?, error),
                    completed_at = COALESCE(?, completed_at),
                    iteration = COALESCE(?, iteration)
                WHERE id = ?
                """,
                (
                    status.value,
                    _dump(output),
                    error,
                    _to_ms(completed_at),
                    iteration,
                    workflow_id,
                ),
            )
            updated = cursor.rowcount
            await cursor.close()
            await conn.commit()

        if updated == 0:
            raise StorageError(f"Workflow not found: {workflow_id}")
