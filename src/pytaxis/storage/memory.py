"""In-memory backends for pytaxis.

Design Pattern: Adapter Pattern
InMemoryExecutionStore, InMemoryLockProvider and InMemoryEventTransport
adapt plain dictionaries to the storage interfaces.

Instances are immediately usable after __init__. They are meant for tests
and single-process deployments; state is lost with the process.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from uuid_extensions import uuid7

from pytaxis.errors import StorageError
from pytaxis.models import QualityScore, UnitStatus, WorkflowExecutionState, WorkflowStatus
from pytaxis.storage.base import (
    EventHandler,
    EventTransport,
    ExecutionStore,
    LockProvider,
    StoredExecution,
    StoredWorkflow,
)

logger = logging.getLogger(__name__)


class InMemoryExecutionStore(ExecutionStore):
    """In-memory execution store.

    Can be substituted for SqliteExecutionStore without changing client code.

    Usage:
        store = InMemoryExecutionStore()
        await store.create_execution_record("A", "unit_1", "workflow_1")
    """

    def __init__(self) -> None:
        # {execution_id: StoredExecution}, insertion ordered
        self._executions: dict[str, StoredExecution] = {}

        # {workflow_id: StoredWorkflow}
        self._workflows: dict[str, StoredWorkflow] = {}

        # {workflow_id: [QualityScore]}
        self._evaluations: dict[str, list[QualityScore]] = {}

        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return "InMemoryExecutionStore"

    async def create_execution_record(
        self, unit_id: str, execution_id: str, workflow_id: str
    ) -> None:
        async with self._lock:
            if execution_id in self._executions:
                raise StorageError(f"Execution record already exists: {execution_id}")
            now = datetime.now(UTC)
            self._executions[execution_id] = StoredExecution(
                unit_id=unit_id,
                execution_id=execution_id,
                workflow_id=workflow_id,
                status=UnitStatus.RUNNING,
                created_at=now,
                updated_at=now,
            )

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
        async with self._lock:
            record = self._executions.get(execution_id)
            if record is None:
                raise StorageError(f"Execution record not found: {execution_id}")

            record.status = status
            record.output = output
            record.error = error
            if tokens_used is not None:
                record.tokens_used = tokens_used
            if cost is not None:
                record.cost = cost
            if duration_ms is not None:
                record.duration_ms = duration_ms
            record.updated_at = datetime.now(UTC)

    async def get_execution_record(self, execution_id: str) -> StoredExecution | None:
        async with self._lock:
            return self._executions.get(execution_id)

    async def list_execution_records(self, workflow_id: str) -> list[StoredExecution]:
        async with self._lock:
            return [r for r in self._executions.values() if r.workflow_id == workflow_id]

    async def record_quality_evaluation(self, workflow_id: str, score: QualityScore) -> None:
        async with self._lock:
            self._evaluations.setdefault(workflow_id, []).append(score)

    async def query_quality_evaluations(self, workflow_id: str) -> list[QualityScore]:
        async with self._lock:
            return list(self._evaluations.get(workflow_id, []))

    async def create_workflow(self, state: WorkflowExecutionState) -> None:
        async with self._lock:
            if state.id in self._workflows:
                raise StorageError(f"Workflow already exists: {state.id}")
            self._workflows[state.id] = StoredWorkflow(
                id=state.id,
                tenant_id=state.tenant_id,
                project_id=state.project_id,
                status=state.status,
                trace_id=state.trace_id,
                iteration=state.iteration,
                input=state.input,
                created_at=state.created_at,
            )

    async def get_workflow(self, workflow_id: str) -> StoredWorkflow | None:
        async with self._lock:
            return self._workflows.get(workflow_id)

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
        async with self._lock:
            workflow = self._workflows.get(workflow_id)
            if workflow is None:
                raise StorageError(f"Workflow not found: {workflow_id}")

            workflow.status = status
            if output is not None:
                workflow.output = output
            if error is not None:
                workflow.error = error
            if completed_at is not None:
                workflow.completed_at = completed_at
            if iteration is not None:
                workflow.iteration = iteration

    async def reset(self) -> None:
        """Drop all stored state."""
        async with self._lock:
            self._executions.clear()
            self._workflows.clear()
            self._evaluations.clear()


class InMemoryLockProvider(LockProvider):
    """Process-local leased locks with TTL expiry and compare-and-delete release."""

    def __init__(self) -> None:
        # {resource_id: (token, expires_at monotonic seconds)}
        self._leases: dict[str, tuple[str, float]] = {}
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"InMemoryLockProvider({len(self._leases)} leases)"

    async def _try_acquire(self, resource_id: str, ttl_ms: int) -> str | None:
        async with self._lock:
            now = time.monotonic()
            lease = self._leases.get(resource_id)
            if lease is not None and lease[1] > now:
                return None
            token = str(uuid7())
            self._leases[resource_id] = (token, now + ttl_ms / 1000)
            return token

    async def acquire(
        self, resource_id: str, ttl_ms: int, max_retries: int = 0, retry_delay_ms: int = 100
    ) -> str | None:
        for attempt in range(max_retries + 1):
            token = await self._try_acquire(resource_id, ttl_ms)
            if token is not None:
                return token
            if attempt < max_retries:
                await asyncio.sleep(retry_delay_ms / 1000)
        return None

    async def release(self, resource_id: str, token: str) -> bool:
        async with self._lock:
            lease = self._leases.get(resource_id)
            if lease is None or lease[0] != token:
                return False
            del self._leases[resource_id]
            return lease[1] > time.monotonic()

    async def is_locked(self, resource_id: str) -> bool:
        async with self._lock:
            lease = self._leases.get(resource_id)
            return lease is not None and lease[1] > time.monotonic()


class InMemoryEventTransport(EventTransport):
    """Append-only in-process streams with ``"<seq>-0"`` message ids."""

    def __init__(self) -> None:
        self._streams: dict[str, list[tuple[str, dict[str, str]]]] = {}
        self._seq = 0
        self._changed = asyncio.Condition()

    def __repr__(self) -> str:
        return f"InMemoryEventTransport({len(self._streams)} streams)"

    async def publish(self, stream_key: str, payload: dict[str, str]) -> str:
        async with self._changed:
            self._seq += 1
            message_id = f"{self._seq}-0"
            self._streams.setdefault(stream_key, []).append((message_id, dict(payload)))
            self._changed.notify_all()
            return message_id

    def entries(self, stream_key: str) -> list[tuple[str, dict[str, str]]]:
        """Snapshot of a stream's entries."""
        return list(self._streams.get(stream_key, []))

    def _start_position(self, stream_key: str, from_id: str) -> int:
        entries = self._streams.get(stream_key, [])
        if from_id == "$":
            return len(entries)
        if from_id in ("0", "0-0"):
            return 0
        for index, (message_id, _) in enumerate(entries):
            if message_id == from_id:
                return index + 1
        return len(entries)

    async def subscribe(
        self, stream_key: str, from_id: str, handler: EventHandler
    ) -> Callable[[], Awaitable[None]]:
        async with self._changed:
            position = self._start_position(stream_key, from_id)

        async def deliver() -> None:
            nonlocal position
            while True:
                async with self._changed:
                    await self._changed.wait_for(
                        lambda: len(self._streams.get(stream_key, [])) > position
                    )
                    batch = self._streams[stream_key][position:]
                    position += len(batch)
                for message_id, fields in batch:
                    try:
                        await handler(message_id, fields)
                    except Exception as e:
                        logger.error(f"Stream handler error on {stream_key} ({message_id}): {e}")

        task = asyncio.create_task(deliver())

        async def unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        return unsubscribe
