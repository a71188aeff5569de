"""
Abstract interfaces for the external collaborators of the engine.

Design Pattern: Adapter Pattern
ExecutionStore, LockProvider and EventTransport define the target
interfaces; in-memory, SQLite and Redis backends adapt to them.

Design Principle: Dependency Inversion (SOLID)
The execution engine and orchestrator depend on these abstractions, not on
concrete backends, so tests run entirely in memory.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pytaxis.models import (
    QualityScore,
    UnitStatus,
    WorkflowExecutionState,
    WorkflowStatus,
)


def tenant_key(tenant_id: str, key: str) -> str:
    """Scope a key to a tenant: ``tenant:{tenant_id}:{key}``."""
    return f"tenant:{tenant_id}:{key}"


def unit_lock_key(tenant_id: str, execution_id: str) -> str:
    """Lock key guarding one unit execution."""
    return tenant_key(tenant_id, f"lock:unit:{execution_id}")


def workflow_stream_key(tenant_id: str, workflow_id: str) -> str:
    """Durable event stream of one workflow run."""
    return tenant_key(tenant_id, f"stream:workflow:{workflow_id}")


@dataclass
class StoredExecution:
    """A unit execution record as held by a store."""

    unit_id: str
    execution_id: str
    workflow_id: str
    status: UnitStatus = UnitStatus.RUNNING
    output: Any = None
    error: str | None = None
    tokens_used: int = 0
    cost: float = 0.0
    duration_ms: float = 0.0
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass
class StoredWorkflow:
    """A workflow run as held by a store."""

    id: str
    tenant_id: str
    project_id: str
    status: WorkflowStatus
    trace_id: str = ""
    iteration: int = 0
    input: Any = None
    output: Any = None
    error: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class ExecutionStore(ABC):
    """
    Persistence interface for workflow runs, unit executions and quality scores.

    Methods either succeed or raise StorageError; they never log and raise.
    """

    # ========================================================================
    # Unit executions
    # ========================================================================

    @abstractmethod
    async def create_execution_record(
        self, unit_id: str, execution_id: str, workflow_id: str
    ) -> None:
        """Record that a unit execution has started (status RUNNING)."""

    @abstractmethod
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
        """
        Finalize a unit execution.

        Raises:
            StorageError: If the execution record does not exist
        """

    @abstractmethod
    async def get_execution_record(self, execution_id: str) -> StoredExecution | None:
        """Return the record, or None if it does not exist."""

    @abstractmethod
    async def list_execution_records(self, workflow_id: str) -> list[StoredExecution]:
        """All unit executions of a workflow, in creation order."""

    # ========================================================================
    # Quality evaluations
    # ========================================================================

    @abstractmethod
    async def record_quality_evaluation(self, workflow_id: str, score: QualityScore) -> None:
        """Store one quality score produced by the evaluation subsystem."""

    @abstractmethod
    async def query_quality_evaluations(self, workflow_id: str) -> list[QualityScore]:
        """All quality scores recorded for a workflow."""

    # ========================================================================
    # Workflows
    # ========================================================================

    @abstractmethod
    async def create_workflow(self, state: WorkflowExecutionState) -> None:
        """
        Persist a new workflow run.

        Raises:
            StorageError: If a workflow with the same id exists
        """

    @abstractmethod
    async def get_workflow(self, workflow_id: str) -> StoredWorkflow | None:
        """Return the workflow, or None if it does not exist."""

    @abstractmethod
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
        """
        Update a workflow's status and, optionally, its outcome fields.

        Raises:
            StorageError: If the workflow does not exist
        """


class LockProvider(ABC):
    """
    Leased mutual exclusion keyed by resource id.

    ``release`` must be an atomic compare-and-delete: a holder whose lease
    expired and was re-acquired by someone else must not free the new lock.
    """

    @abstractmethod
    async def acquire(
        self, resource_id: str, ttl_ms: int, max_retries: int = 0, retry_delay_ms: int = 100
    ) -> str | None:
        """
        Try to take the lock, retrying up to ``max_retries`` extra times.

        Returns:
            Lock token if acquired, None otherwise
        """

    @abstractmethod
    async def release(self, resource_id: str, token: str) -> bool:
        """
        Release the lock if ``token`` still holds it.

        Returns:
            True if released, False if not held or already expired
        """


EventHandler = Callable[[str, dict[str, str]], Awaitable[None]]
"""Handler for stream entries: ``(message_id, fields) -> None``."""


class EventTransport(ABC):
    """Durable, append-only event streams for observers outside the process."""

    @abstractmethod
    async def publish(self, stream_key: str, payload: dict[str, str]) -> str:
        """Append an entry, returning its message id."""

    @abstractmethod
    async def subscribe(
        self, stream_key: str, from_id: str, handler: EventHandler
    ) -> Callable[[], Awaitable[None]]:
        """
        Deliver entries after ``from_id`` (``"$"`` = only new ones) to ``handler``.

        Returns:
            Coroutine function that stops the subscription
        """
