"""
Executor module - scheduling and running work units.

This module contains the execution components:
- dag: dependency graph, stage assignment and execution plans
- engine: stage-by-stage execution with locking, retries and timeouts
- locking: scoped unit locks
- refinement: quality-driven re-run decisions
- orchestrator: the workflow driver tying the above together
"""

from pytaxis.executor.dag import (
    DAG,
    DAGNode,
    DagSummary,
    ExecutionPlan,
    StagePlan,
    build_dag,
    build_dag_from_units,
    optimize_execution_plan,
)
from pytaxis.executor.engine import (
    EngineStats,
    ExecutionEngine,
    UnitExecutor,
    execute_with_retry,
    execute_with_timeout,
    input_fingerprint,
)
from pytaxis.executor.locking import hold_lock
from pytaxis.executor.orchestrator import Orchestrator, WorkflowProgress, WorkflowRunConfig
from pytaxis.executor.refinement import (
    RefinementEngine,
    format_quality_metrics,
    quality_feedback,
    should_refine_unit,
)

__all__ = [
    # DAG
    "DAG",
    "DAGNode",
    "DagSummary",
    "ExecutionPlan",
    "StagePlan",
    "build_dag",
    "build_dag_from_units",
    "optimize_execution_plan",
    # Engine
    "EngineStats",
    "ExecutionEngine",
    "UnitExecutor",
    "execute_with_retry",
    "execute_with_timeout",
    "hold_lock",
    "input_fingerprint",
    # Refinement
    "RefinementEngine",
    "format_quality_metrics",
    "quality_feedback",
    "should_refine_unit",
    # Orchestrator
    "Orchestrator",
    "WorkflowProgress",
    "WorkflowRunConfig",
]
