"""Data models for work-unit scheduling and workflow tracking."""

from pytaxis.models.quality import (
    DimensionResult,
    QualityMetrics,
    QualityScore,
    RefinementDecision,
)
from pytaxis.models.records import (
    UnitResult,
    WorkflowExecutionResult,
    WorkflowExecutionState,
    WorkUnitExecutionRecord,
)
from pytaxis.models.retry import RetryableError, RetryPolicy, is_retryable_error
from pytaxis.models.status import UnitStatus, WorkflowStatus

__all__ = [
    "DimensionResult",
    "QualityMetrics",
    "QualityScore",
    "RefinementDecision",
    "RetryPolicy",
    "RetryableError",
    "UnitResult",
    "UnitStatus",
    "WorkUnitExecutionRecord",
    "WorkflowExecutionResult",
    "WorkflowExecutionState",
    "WorkflowStatus",
    "is_retryable_error",
]
