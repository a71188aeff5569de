"""
Taxis: Workflow Orchestration for Work-Unit Graphs

Schedules a set of interdependent work units in dependency-respecting
stages, runs each stage with bounded concurrency under per-unit locks, and
re-runs the quality-deficient part of the graph until a quality threshold
or an iteration budget is reached.

Design Pattern: Façade Pattern
This module re-exports the public API so callers import from ``pytaxis``
rather than from the subpackages.

Package "taxis" (Greek: arrangement, order) describes what it provides.

Example:
    ```python
    import asyncio
    from pytaxis import (
        InMemoryExecutionStore, InMemoryLockProvider, Orchestrator,
        Registry, WorkflowRunConfig, WorkUnitManifest,
    )

    async def hero_copy(input):
        return {"headline": "Fresh bread daily"}

    async def main():
        registry = Registry()
        registry.register(WorkUnitManifest("HERO_COPY", "content", "Hero copy"), hero_copy)

        orchestrator = Orchestrator(registry, InMemoryExecutionStore(), InMemoryLockProvider())
        state = await orchestrator.execute_workflow(
            WorkflowRunConfig(tenant_id="t1", project_id="p1", unit_ids=["HERO_COPY"])
        )
        print(state.status, state.outputs_by_unit)

    asyncio.run(main())
    ```
"""

from pytaxis.core import (
    CURRENT_CONTEXT,
    DEFAULT_DIMENSION_TARGETS,
    BaseContextConfig,
    ContextBuilder,
    OrchestratorConfig,
    RefinementConfig,
    UnitContext,
    WorkUnitManifest,
    build_standalone_context,
    clone_context,
    current_context,
    new_id,
    validate_context,
)
from pytaxis.errors import (
    CircularDependencyError,
    ExecutionError,
    LockContentionError,
    RetryExhaustedError,
    StorageError,
    TaxisError,
    UnitTimeoutError,
    ValidationError,
    WorkflowStateError,
)
from pytaxis.events import BatchEventEmitter, EventBus, EventKind, EventLogger, WorkflowEvent
from pytaxis.executor import (
    DAG,
    DAGNode,
    DagSummary,
    EngineStats,
    ExecutionEngine,
    ExecutionPlan,
    Orchestrator,
    RefinementEngine,
    StagePlan,
    UnitExecutor,
    WorkflowProgress,
    WorkflowRunConfig,
    build_dag,
    build_dag_from_units,
    execute_with_retry,
    execute_with_timeout,
    format_quality_metrics,
    hold_lock,
    optimize_execution_plan,
    quality_feedback,
    should_refine_unit,
)
from pytaxis.models import (
    DimensionResult,
    QualityMetrics,
    QualityScore,
    RefinementDecision,
    RetryableError,
    RetryPolicy,
    UnitResult,
    UnitStatus,
    WorkflowExecutionResult,
    WorkflowExecutionState,
    WorkflowStatus,
    WorkUnitExecutionRecord,
)
from pytaxis.registry import Registry, RegistryEntry, RegistryStats
from pytaxis.storage import (
    EventTransport,
    ExecutionStore,
    InMemoryEventTransport,
    InMemoryExecutionStore,
    InMemoryLockProvider,
    LockProvider,
)

__version__ = "0.1.0"

__all__ = [
    # Registry and manifests
    "Registry",
    "RegistryEntry",
    "RegistryStats",
    "WorkUnitManifest",
    # DAG
    "DAG",
    "DAGNode",
    "DagSummary",
    "ExecutionPlan",
    "StagePlan",
    "build_dag",
    "build_dag_from_units",
    "optimize_execution_plan",
    # Execution
    "EngineStats",
    "ExecutionEngine",
    "UnitExecutor",
    "UnitResult",
    "execute_with_retry",
    "execute_with_timeout",
    "hold_lock",
    "RetryPolicy",
    "RetryableError",
    # Context
    "CURRENT_CONTEXT",
    "BaseContextConfig",
    "ContextBuilder",
    "UnitContext",
    "build_standalone_context",
    "clone_context",
    "current_context",
    "new_id",
    "validate_context",
    # Refinement
    "DEFAULT_DIMENSION_TARGETS",
    "DimensionResult",
    "QualityMetrics",
    "QualityScore",
    "RefinementConfig",
    "RefinementDecision",
    "RefinementEngine",
    "format_quality_metrics",
    "quality_feedback",
    "should_refine_unit",
    # Events
    "BatchEventEmitter",
    "EventBus",
    "EventKind",
    "EventLogger",
    "WorkflowEvent",
    # Orchestrator
    "Orchestrator",
    "OrchestratorConfig",
    "WorkflowProgress",
    "WorkflowRunConfig",
    # Records and status
    "UnitStatus",
    "WorkUnitExecutionRecord",
    "WorkflowExecutionResult",
    "WorkflowExecutionState",
    "WorkflowStatus",
    # Storage
    "EventTransport",
    "ExecutionStore",
    "InMemoryEventTransport",
    "InMemoryExecutionStore",
    "InMemoryLockProvider",
    "LockProvider",
    # Errors
    "CircularDependencyError",
    "ExecutionError",
    "LockContentionError",
    "RetryExhaustedError",
    "StorageError",
    "TaxisError",
    "UnitTimeoutError",
    "ValidationError",
    "WorkflowStateError",
]
