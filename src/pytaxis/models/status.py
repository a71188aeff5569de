"""Status enumerations for work-unit and workflow execution tracking.

Defines lifecycle states for individual work-unit executions and for
whole workflow runs, including the legal workflow transitions.
"""

from enum import Enum


class UnitStatus(Enum):
    """Status of a single work-unit execution.

    Lifecycle:
        PENDING → RUNNING → COMPLETED/FAILED
        PENDING → RUNNING → FAILED, RETRYING → RUNNING → ... → COMPLETED/FAILED
        PENDING → SKIPPED

    A unit is SKIPPED when one of its dependencies failed in the same
    iteration and the engine is configured not to run dependents of
    failed units.
    """

    PENDING = "pending"
    """Unit is scheduled but has not started."""

    RUNNING = "running"
    """Unit executor is being awaited."""

    RETRYING = "retrying"
    """An attempt failed and the unit is waiting out its backoff delay.

    Reported by ``unit.retrying`` events; each attempt's own record stays FAILED.
    """

    COMPLETED = "completed"
    """Unit executor returned successfully."""

    FAILED = "failed"
    """Unit executor raised, timed out, or the lock was contended."""

    SKIPPED = "skipped"
    """Unit was never started because a dependency failed."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal for the current iteration."""
        return self in (UnitStatus.COMPLETED, UnitStatus.FAILED, UnitStatus.SKIPPED)

    def __str__(self) -> str:
        return self.value


class WorkflowStatus(Enum):
    """Status of a workflow run.

    Lifecycle:
        QUEUED → RUNNING ⇄ PAUSED → COMPLETED/FAILED/CANCELLED

    QUEUED and PAUSED may also move straight to CANCELLED or FAILED
    (a catastrophic error before the first stage, or a cancel while
    paused). Terminal states never transition again.
    """

    QUEUED = "queued"
    """Workflow record exists, no stage has started."""

    RUNNING = "running"
    """Stages are being executed."""

    PAUSED = "paused"
    """Execution is held at the next stage boundary."""

    COMPLETED = "completed"
    """Final iteration finished with zero failed units."""

    FAILED = "failed"
    """Final iteration had failures, or the run aborted."""

    CANCELLED = "cancelled"
    """Run was cancelled; in-flight units were left to finish."""

    @property
    def is_terminal(self) -> bool:
        """Check if this status is terminal (no more work will run)."""
        return self in (
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        )

    def can_transition_to(self, target: "WorkflowStatus") -> bool:
        """Check if moving from this status to ``target`` is legal."""
        return target in _WORKFLOW_TRANSITIONS[self]

    def __str__(self) -> str:
        return self.value


_WORKFLOW_TRANSITIONS: dict[WorkflowStatus, frozenset[WorkflowStatus]] = {
    WorkflowStatus.QUEUED: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.RUNNING: frozenset(
        {
            WorkflowStatus.PAUSED,
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAILED,
            WorkflowStatus.CANCELLED,
        }
    ),
    WorkflowStatus.PAUSED: frozenset(
        {WorkflowStatus.RUNNING, WorkflowStatus.FAILED, WorkflowStatus.CANCELLED}
    ),
    WorkflowStatus.COMPLETED: frozenset(),
    WorkflowStatus.FAILED: frozenset(),
    WorkflowStatus.CANCELLED: frozenset(),
}
