"""
Execution records for work units and workflow runs.

Design principles:
- Records are value objects describing a snapshot of execution state
- A unit record is created when the unit starts and finalized exactly once
- A workflow state owns its status machine; terminal states are final

WorkUnitExecutionRecord: one attempt of one unit
WorkflowExecutionResult: aggregate of one pass over an execution plan
WorkflowExecutionState: the whole run, across refinement iterations
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pytaxis.errors import WorkflowStateError
from pytaxis.models.status import UnitStatus, WorkflowStatus


@dataclass
class UnitResult:
    """
    Value returned by a unit executor.

    Executors may return a UnitResult to report usage, or any plain value,
    which the engine wraps as ``UnitResult(output=value)``.
    """

    output: Any = None
    tokens_used: int = 0
    cost: float = 0.0


@dataclass
class WorkUnitExecutionRecord:
    """
    Record of a single work-unit execution attempt.

    Created at unit start in PENDING/RUNNING and finalized once via
    ``mark_completed``, ``mark_failed`` or ``mark_skipped``.
    """

    unit_id: str
    execution_id: str
    status: UnitStatus = UnitStatus.PENDING
    started_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    ended_at: datetime | None = None
    duration_ms: float = 0.0

    output: Any = None
    error: str | None = None
    error_type: str | None = None
    """Exception class name of the failure (e.g. ``LockContentionError``)."""

    tokens_used: int = 0
    cost: float = 0.0
    attempts: int = 1
    input_hash: int | None = None
    """xxhash fingerprint of the unit input, for spotting identical re-runs."""

    @property
    def succeeded(self) -> bool:
        return self.status == UnitStatus.COMPLETED

    def _finish(self, status: UnitStatus, ended_at: datetime | None) -> None:
        if self.status.is_terminal:
            raise WorkflowStateError(
                f"Execution record {self.execution_id} already finalized as {self.status}"
            )
        self.status = status
        self.ended_at = ended_at or datetime.now(UTC)
        self.duration_ms = (self.ended_at - self.started_at).total_seconds() * 1000

    def mark_completed(self, result: UnitResult, ended_at: datetime | None = None) -> None:
        """Finalize the record as completed with the executor's result."""
        self._finish(UnitStatus.COMPLETED, ended_at)
        self.output = result.output
        self.tokens_used = result.tokens_used
        self.cost = result.cost

    def mark_failed(self, error: BaseException, ended_at: datetime | None = None) -> None:
        """Finalize the record as failed, capturing the error message and type."""
        self._finish(UnitStatus.FAILED, ended_at)
        self.error = str(error) or type(error).__name__
        self.error_type = type(error).__name__

    def mark_skipped(self, reason: str) -> None:
        """Finalize the record as skipped without having run."""
        self._finish(UnitStatus.SKIPPED, self.started_at)
        self.error = reason


@dataclass
class WorkflowExecutionResult:
    """
    Aggregate result of executing one plan (one iteration).

    ``success`` is True iff no unit failed. Skipped units are listed
    separately; they only occur downstream of a failure.
    """

    success: bool
    completed: list[WorkUnitExecutionRecord] = field(default_factory=list)
    failed: list[WorkUnitExecutionRecord] = field(default_factory=list)
    skipped: list[WorkUnitExecutionRecord] = field(default_factory=list)
    total_units: int = 0
    total_duration_ms: float = 0.0
    outputs_by_unit: dict[str, Any] = field(default_factory=dict)
    errors_by_unit: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    """True if the run stopped at a stage boundary because it was cancelled."""

    @property
    def completed_unit_ids(self) -> list[str]:
        return [r.unit_id for r in self.completed]

    @property
    def failed_unit_ids(self) -> list[str]:
        return [r.unit_id for r in self.failed]

    @property
    def skipped_unit_ids(self) -> list[str]:
        return [r.unit_id for r in self.skipped]

    @property
    def tokens_used(self) -> int:
        return sum(r.tokens_used for r in self.completed + self.failed)

    @property
    def cost(self) -> float:
        return sum(r.cost for r in self.completed + self.failed)

    def error_summary(self) -> str | None:
        """Concatenate per-unit error messages, or None if nothing failed."""
        if not self.errors_by_unit:
            return None
        return "; ".join(f"{unit_id}: {msg}" for unit_id, msg in self.errors_by_unit.items())


@dataclass
class WorkflowExecutionState:
    """
    State of one workflow run.

    Mutated only by the Orchestrator (status, iteration) and by merging
    execution results. ``completed_at`` is set exactly when a terminal
    status is entered.
    """

    id: str
    tenant_id: str
    project_id: str = ""
    trace_id: str = ""
    status: WorkflowStatus = WorkflowStatus.QUEUED
    iteration: int = 0
    max_iterations: int = 0
    input: Any = None
    outputs_by_unit: dict[str, Any] = field(default_factory=dict)
    errors_by_unit: dict[str, str] = field(default_factory=dict)
    error: str | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def transition(self, target: WorkflowStatus) -> None:
        """
        Move to ``target``, enforcing the workflow state machine.

        Raises:
            WorkflowStateError: If the transition is not allowed
        """
        if not self.status.can_transition_to(target):
            raise WorkflowStateError(
                f"Workflow {self.id}: illegal transition {self.status} -> {target}"
            )
        self.status = target
        now = datetime.now(UTC)
        if target == WorkflowStatus.RUNNING and self.started_at is None:
            self.started_at = now
        if target.is_terminal:
            self.completed_at = now

    def advance_iteration(self) -> int:
        """Increment the iteration counter within ``max_iterations``."""
        if self.iteration >= self.max_iterations:
            raise WorkflowStateError(
                f"Workflow {self.id}: iteration budget {self.max_iterations} exhausted"
            )
        self.iteration += 1
        return self.iteration

    def merge_result(self, result: WorkflowExecutionResult) -> None:
        """Fold one iteration's outputs and errors into the run state.

        Units re-run in this iteration replace their earlier output or
        error; units not re-run keep what they had.
        """
        for unit_id, output in result.outputs_by_unit.items():
            self.outputs_by_unit[unit_id] = output
            self.errors_by_unit.pop(unit_id, None)
        for unit_id, message in result.errors_by_unit.items():
            self.errors_by_unit[unit_id] = message
            self.outputs_by_unit.pop(unit_id, None)
