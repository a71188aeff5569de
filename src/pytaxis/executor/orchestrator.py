"""Workflow orchestrator: the top-level driver.

Drives one workflow run through:

    queued -> running -> (paused <-> running) -> completed | failed | cancelled

1. Persist the workflow record, emit ``workflow.started``
2. Build the DAG and an execution plan capped at ``max_concurrency`` per stage
3. Loop: execute the plan, ask the RefinementEngine whether to refine,
   narrow the plan to the target units and go again
4. Persist the terminal status and emit the terminal event exactly once

Pause and cancel are cooperative. They take effect at checkpoints (before
each stage and each iteration); units already running finish on their own.

Catastrophic failures (invalid DAG, initial record not persisted) end the
run as ``failed`` with the causing error. They are reported through the
returned state and the ``workflow.failed`` event, not raised.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pytaxis.core.config import OrchestratorConfig
from pytaxis.core.context import BaseContextConfig, ContextBuilder, new_id
from pytaxis.errors import WorkflowStateError
from pytaxis.events.bus import EventBus, EventKind
from pytaxis.executor.dag import (
    ExecutionPlan,
    build_dag,
    build_dag_from_units,
    optimize_execution_plan,
)
from pytaxis.executor.engine import ConfigProvider, ExecutionEngine, InputProvider
from pytaxis.executor.refinement import RefinementEngine, quality_feedback
from pytaxis.models import (
    UnitStatus,
    WorkflowExecutionResult,
    WorkflowExecutionState,
    WorkflowStatus,
)
from pytaxis.registry import Registry
from pytaxis.storage.base import EventTransport, ExecutionStore, LockProvider

logger = logging.getLogger(__name__)

_TERMINAL_EVENTS = {
    WorkflowStatus.COMPLETED: EventKind.WORKFLOW_COMPLETED,
    WorkflowStatus.FAILED: EventKind.WORKFLOW_FAILED,
    WorkflowStatus.CANCELLED: EventKind.WORKFLOW_CANCELLED,
}


@dataclass
class WorkflowRunConfig:
    """What to run and on whose behalf."""

    tenant_id: str
    project_id: str
    unit_ids: list[str]
    input: dict[str, Any] = field(default_factory=dict)
    user_id: str | None = None
    workflow_id: str | None = None
    """Explicit id; generated as ``workflow_<uuid7>`` when omitted."""

    input_provider: InputProvider | None = None
    """Overrides the default ``{**input, previous_outputs, iteration}`` input."""

    config_provider: ConfigProvider | None = None


@dataclass
class WorkflowProgress:
    """Snapshot returned by ``Orchestrator.get_workflow_status``."""

    workflow_id: str
    status: WorkflowStatus
    iteration: int
    progress: float
    completed_units: int
    total_units: int


@dataclass
class _WorkflowRun:
    config: WorkflowRunConfig
    state: WorkflowExecutionState
    bus: EventBus
    resumed: asyncio.Event = field(default_factory=asyncio.Event)
    cancel_requested: bool = False
    status_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    task: asyncio.Task | None = None
    last_result: WorkflowExecutionResult | None = None


class Orchestrator:
    """
    Coordinates workflow runs over a registry of work units.

    Collaborators are injected once and shared by every run; nothing is
    looked up through globals.

    Usage:
        orchestrator = Orchestrator(registry, InMemoryExecutionStore(), InMemoryLockProvider())
        state = await orchestrator.execute_workflow(
            WorkflowRunConfig(tenant_id="t1", project_id="p1", unit_ids=["A", "B", "C"])
        )
    """

    def __init__(
        self,
        registry: Registry,
        store: ExecutionStore,
        lock_provider: LockProvider,
        *,
        executor: Any = None,
        transport: EventTransport | None = None,
        config: OrchestratorConfig | None = None,
    ):
        self._registry = registry
        self._store = store
        self._locks = lock_provider
        self._executor = executor if executor is not None else registry
        self._transport = transport
        self._config = config or OrchestratorConfig()
        self._runs: dict[str, _WorkflowRun] = {}
        self._buses: dict[str, EventBus] = {}

    def __repr__(self) -> str:
        return f"Orchestrator(units={len(self._registry)}, runs={len(self._runs)})"

    @property
    def config(self) -> OrchestratorConfig:
        return self._config

    def get_event_bus(self, tenant_id: str, workflow_id: str) -> EventBus:
        """Event bus of a workflow; created on first use.

        Register listeners here before ``start_workflow`` to see every event
        of a run whose id you chose up front.
        """
        bus = self._buses.get(workflow_id)
        if bus is None:
            bus = EventBus(tenant_id, workflow_id, self._transport)
            self._buses[workflow_id] = bus
        return bus

    def get_state(self, workflow_id: str) -> WorkflowExecutionState | None:
        run = self._runs.get(workflow_id)
        return run.state if run is not None else None

    # ========================================================================
    # Running workflows
    # ========================================================================

    async def execute_workflow(self, run_config: WorkflowRunConfig) -> WorkflowExecutionState:
        """Run a workflow to a terminal state and return it."""
        run = await self._prepare(run_config)
        await self._drive(run)
        return run.state

    async def start_workflow(self, run_config: WorkflowRunConfig) -> str:
        """Start a workflow in the background and return its id."""
        run = await self._prepare(run_config)
        run.task = asyncio.create_task(self._drive(run), name=f"pytaxis-{run.state.id}")
        return run.state.id

    async def wait_for_workflow(
        self, workflow_id: str, timeout: float | None = None
    ) -> WorkflowExecutionState:
        """
        Wait for a background run to reach a terminal state.

        Raises:
            WorkflowStateError: If the workflow is unknown to this orchestrator
            TimeoutError: If ``timeout`` seconds pass first
        """
        run = self._require_run(workflow_id)
        if run.task is not None:
            await asyncio.wait_for(asyncio.shield(run.task), timeout)
        return run.state

    async def _prepare(self, run_config: WorkflowRunConfig) -> _WorkflowRun:
        workflow_id = run_config.workflow_id or new_id("workflow")
        if workflow_id in self._runs:
            raise WorkflowStateError(f"Workflow already started: {workflow_id}")

        state = WorkflowExecutionState(
            id=workflow_id,
            tenant_id=run_config.tenant_id,
            project_id=run_config.project_id,
            trace_id=new_id("trace"),
            max_iterations=self._config.max_refinement_iterations,
            input=run_config.input,
        )
        run = _WorkflowRun(
            config=run_config,
            state=state,
            bus=self.get_event_bus(run_config.tenant_id, workflow_id),
        )
        run.resumed.set()
        self._runs[workflow_id] = run

        try:
            await self._store.create_workflow(state)
        except Exception as e:
            logger.error(f"Failed to persist workflow {workflow_id}: {e}")
            await self._finish(run, WorkflowStatus.FAILED, error=str(e))
        return run

    async def _drive(self, run: _WorkflowRun) -> None:
        state = run.state
        if state.is_terminal:
            return

        try:
            async with run.status_lock:
                state.transition(WorkflowStatus.RUNNING)
            await self._persist_status(state)
            await run.bus.emit(
                EventKind.WORKFLOW_STARTED,
                {"project_id": state.project_id, "units": list(run.config.unit_ids)},
            )

            dag = build_dag(self._registry, run.config.unit_ids)
            plan = optimize_execution_plan(dag.get_execution_plan(), self._config.max_concurrency)
            logger.info(
                f"Executing workflow {state.id}: "
                f"{plan.total_units} units in {len(plan.stages)} stages"
            )

            result = await self._refinement_loop(run, plan)

            # A pause that arrived during the last stage holds completion
            if not await self._checkpoint(run) or result is None:
                return

            if result.success:
                await self._finish(run, WorkflowStatus.COMPLETED, result=result)
            else:
                error = result.error_summary() or "Workflow did not complete"
                await self._finish(run, WorkflowStatus.FAILED, error=error, result=result)
        except Exception as e:
            logger.exception(f"Workflow execution error: {state.id}")
            await self._finish(run, WorkflowStatus.FAILED, error=str(e))

    async def _refinement_loop(
        self, run: _WorkflowRun, plan: ExecutionPlan
    ) -> WorkflowExecutionResult | None:
        state = run.state
        refinement = RefinementEngine(
            self._store,
            dataclasses.replace(self._config.refinement, max_iterations=state.max_iterations),
        )
        builder = ContextBuilder(
            BaseContextConfig(
                tenant_id=state.tenant_id,
                project_id=state.project_id,
                workflow_id=state.id,
                trace_id=state.trace_id,
                user_id=run.config.user_id,
            )
        )

        current_plan = plan
        feedback: str | None = None
        result: WorkflowExecutionResult | None = None

        while await self._checkpoint(run):
            builder.update_base_config(iteration=state.iteration)
            if state.iteration > 0:
                await run.bus.emit(
                    EventKind.REFINEMENT_STARTED,
                    {"iteration": state.iteration, "units": current_plan.unit_ids()},
                )

            engine = ExecutionEngine.from_config(
                self._executor, self._locks, self._config, store=self._store, event_bus=run.bus
            )
            input_provider = run.config.input_provider or _default_input_provider(
                run.config.input, plan, state.iteration, feedback
            )
            result = await engine.execute_workflow(
                current_plan,
                builder,
                input_provider,
                initial_outputs=state.outputs_by_unit,
                config_provider=run.config.config_provider,
                checkpoint=lambda: self._checkpoint(run),
            )
            state.merge_result(result)
            run.last_result = result

            if state.iteration > 0:
                await run.bus.emit(
                    EventKind.REFINEMENT_COMPLETED,
                    {"iteration": state.iteration, "success": result.success},
                )

            if result.cancelled or state.iteration >= state.max_iterations:
                break

            decision = await refinement.decide_refinement(
                state.id, result, available_units=plan.unit_ids()
            )
            await run.bus.emit(
                EventKind.REFINEMENT_DECISION,
                {
                    "decision": "refine" if decision.should_refine else "accept",
                    "reason": decision.reason,
                    "iteration": decision.iteration,
                    "overall_score": decision.metrics.overall_score,
                    "failed_dimensions": len(decision.metrics.failed_dimensions),
                    "targets": decision.target_unit_ids,
                },
            )
            if not decision.should_refine:
                logger.info(f"Workflow {state.id} accepted: {decision.reason}")
                break

            refinement.increment_iteration()
            state.advance_iteration()
            logger.info(
                f"Workflow {state.id} refinement {state.iteration}/{state.max_iterations}: "
                f"{decision.reason}"
            )
            await self._persist_status(state, iteration=state.iteration)

            feedback = quality_feedback(decision.metrics)
            current_plan = plan.restrict(decision.target_unit_ids)

        return result

    async def _checkpoint(self, run: _WorkflowRun) -> bool:
        """Block while paused; False once the run is cancelled or terminal."""
        await run.resumed.wait()
        return not run.cancel_requested and not run.state.is_terminal

    async def _finish(
        self,
        run: _WorkflowRun,
        status: WorkflowStatus,
        error: str | None = None,
        result: WorkflowExecutionResult | None = None,
    ) -> bool:
        """Enter a terminal status; a no-op if the run is already terminal."""
        state = run.state
        async with run.status_lock:
            if state.is_terminal:
                return False
            state.transition(status)
            state.error = error

        try:
            await self._store.update_workflow_status(
                state.id,
                status=status,
                output=dict(state.outputs_by_unit) or None,
                error=error,
                completed_at=state.completed_at,
                iteration=state.iteration,
            )
        except Exception as e:
            logger.warning(f"Failed to persist {status} for workflow {state.id}: {e}")

        data: dict[str, Any] = {"iterations": state.iteration + 1}
        if error is not None:
            data["error"] = error
        if result is not None:
            data.update(
                total_units=result.total_units,
                completed_units=len(result.completed),
                failed_units=len(result.failed),
                skipped_units=len(result.skipped),
                total_duration_ms=result.total_duration_ms,
            )
        await run.bus.emit(_TERMINAL_EVENTS[status], data)
        logger.info(f"Workflow {state.id} {status} after {state.iteration + 1} iteration(s)")
        return True

    async def _persist_status(self, state: WorkflowExecutionState, **fields: Any) -> None:
        try:
            await self._store.update_workflow_status(state.id, status=state.status, **fields)
        except Exception as e:
            logger.warning(f"Failed to persist status of workflow {state.id}: {e}")

    # ========================================================================
    # Ad-hoc runs
    # ========================================================================

    async def execute_units(
        self,
        tenant_id: str,
        project_id: str,
        unit_ids: list[str],
        input: dict[str, Any] | None = None,
        user_id: str | None = None,
    ) -> WorkflowExecutionResult:
        """
        Run a few units once, without refinement or a workflow record.

        Dependencies outside ``unit_ids`` are ignored; supply their outputs
        in ``input`` if the units need them.

        Raises:
            ValidationError: On an invalid DAG
        """
        adhoc_id = new_id("adhoc")
        plan = build_dag_from_units(self._registry, unit_ids).get_execution_plan()
        builder = ContextBuilder(
            BaseContextConfig(
                tenant_id=tenant_id,
                project_id=project_id,
                workflow_id=adhoc_id,
                trace_id=new_id("trace"),
                user_id=user_id,
            )
        )
        engine = ExecutionEngine.from_config(
            self._executor,
            self._locks,
            self._config,
            event_bus=self.get_event_bus(tenant_id, adhoc_id),
        )
        try:
            return await engine.execute_workflow(
                plan, builder, _default_input_provider(input or {}, plan, 0, None)
            )
        finally:
            await self._close_bus(adhoc_id)

    # ========================================================================
    # Control
    # ========================================================================

    async def pause_workflow(self, workflow_id: str) -> None:
        """
        Pause a running workflow at its next checkpoint.

        Raises:
            WorkflowStateError: If unknown or not running
        """
        run = self._runs.get(workflow_id)
        if run is None:
            await self._transition_stored(workflow_id, WorkflowStatus.PAUSED)
            return

        async with run.status_lock:
            run.state.transition(WorkflowStatus.PAUSED)
            run.resumed.clear()
        await self._persist_status(run.state)
        await run.bus.emit(EventKind.WORKFLOW_PAUSED, {})
        logger.info(f"Workflow {workflow_id} paused")

    async def resume_workflow(self, workflow_id: str) -> None:
        """
        Resume a paused workflow.

        Raises:
            WorkflowStateError: If unknown or not paused
        """
        run = self._runs.get(workflow_id)
        if run is None:
            await self._transition_stored(workflow_id, WorkflowStatus.RUNNING)
            return

        async with run.status_lock:
            if run.state.status != WorkflowStatus.PAUSED:
                raise WorkflowStateError(
                    f"Workflow {workflow_id} is {run.state.status}, not paused"
                )
            run.state.transition(WorkflowStatus.RUNNING)
            run.resumed.set()
        await self._persist_status(run.state)
        await run.bus.emit(EventKind.WORKFLOW_RESUMED, {})
        logger.info(f"Workflow {workflow_id} resumed")

    async def cancel_workflow(self, workflow_id: str) -> None:
        """
        Cancel a workflow. No further stage or iteration starts; units
        already running are not interrupted.

        Raises:
            WorkflowStateError: If unknown or already terminal
        """
        run = self._runs.get(workflow_id)
        if run is None:
            await self._transition_stored(workflow_id, WorkflowStatus.CANCELLED)
            return

        if run.state.is_terminal:
            raise WorkflowStateError(f"Workflow {workflow_id} already {run.state.status}")
        run.cancel_requested = True
        await self._finish(run, WorkflowStatus.CANCELLED)
        # Wake a paused driver so it can observe the cancellation
        run.resumed.set()

    async def _transition_stored(self, workflow_id: str, target: WorkflowStatus) -> None:
        """Control a workflow owned by another process, through the store only."""
        stored = await self._store.get_workflow(workflow_id)
        if stored is None:
            raise WorkflowStateError(f"Workflow not found: {workflow_id}")
        if not stored.status.can_transition_to(target):
            raise WorkflowStateError(
                f"Workflow {workflow_id}: illegal transition {stored.status} -> {target}"
            )

        completed_at = datetime.now(UTC) if target.is_terminal else None
        await self._store.update_workflow_status(
            workflow_id, status=target, completed_at=completed_at
        )

        kind = {
            WorkflowStatus.PAUSED: EventKind.WORKFLOW_PAUSED,
            WorkflowStatus.RUNNING: EventKind.WORKFLOW_RESUMED,
            WorkflowStatus.CANCELLED: EventKind.WORKFLOW_CANCELLED,
        }[target]
        await self.get_event_bus(stored.tenant_id, workflow_id).emit(kind, {})

    # ========================================================================
    # Status
    # ========================================================================

    async def get_workflow_status(self, workflow_id: str) -> WorkflowProgress:
        """
        Status and unit progress of a workflow, read from the store.

        Raises:
            WorkflowStateError: If the workflow does not exist
        """
        stored = await self._store.get_workflow(workflow_id)
        if stored is None:
            raise WorkflowStateError(f"Workflow not found: {workflow_id}")

        # Latest record per unit wins
        latest: dict[str, UnitStatus] = {}
        for record in await self._store.list_execution_records(workflow_id):
            latest[record.unit_id] = record.status

        run = self._runs.get(workflow_id)
        total = len(run.config.unit_ids) if run is not None else len(latest)
        completed = sum(1 for status in latest.values() if status == UnitStatus.COMPLETED)
        return WorkflowProgress(
            workflow_id=workflow_id,
            status=stored.status,
            iteration=stored.iteration,
            progress=completed / total if total else 0.0,
            completed_units=completed,
            total_units=total,
        )

    # ========================================================================
    # Cleanup
    # ========================================================================

    async def remove_workflow(self, workflow_id: str) -> None:
        """
        Forget a finished run: drop its in-memory state and close its bus.

        Runs stay in memory until removed here or by ``close()``; the stored
        workflow record is kept, so ``get_workflow_status`` still answers.

        Raises:
            WorkflowStateError: If the workflow is unknown or not terminal
        """
        run = self._require_run(workflow_id)
        self._require_terminal(run)
        # The terminal event may still be in flight on the run's task
        if run.task is not None and run.task is not asyncio.current_task():
            await run.task
        del self._runs[workflow_id]
        await self._close_bus(workflow_id)
        logger.debug(f"Removed workflow {workflow_id}")

    async def remove_event_bus(self, workflow_id: str) -> bool:
        """
        Close a workflow's event bus and drop its listeners.

        Returns:
            False if the workflow had no bus

        Raises:
            WorkflowStateError: If the workflow is still running here
        """
        run = self._runs.get(workflow_id)
        if run is not None:
            self._require_terminal(run)
        return await self._close_bus(workflow_id)

    async def _close_bus(self, workflow_id: str) -> bool:
        bus = self._buses.pop(workflow_id, None)
        if bus is None:
            return False
        await bus.close()
        return True

    @staticmethod
    def _require_terminal(run: _WorkflowRun) -> None:
        if not run.state.is_terminal:
            raise WorkflowStateError(
                f"Workflow {run.state.id} is {run.state.status}; only finished runs can be removed"
            )

    async def close(self) -> None:
        """Wait for background runs and close every event bus."""
        tasks = [run.task for run in self._runs.values() if run.task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for workflow_id in list(self._buses):
            await self._close_bus(workflow_id)

    def _require_run(self, workflow_id: str) -> _WorkflowRun:
        run = self._runs.get(workflow_id)
        if run is None:
            raise WorkflowStateError(f"Workflow not found: {workflow_id}")
        return run


def _default_input_provider(
    base_input: Mapping[str, Any],
    plan: ExecutionPlan,
    iteration: int,
    feedback: str | None,
) -> Callable[[str, Mapping[str, Any]], dict[str, Any]]:
    """Input = workflow input + outputs of the unit's transitive dependencies."""

    def provide(unit_id: str, outputs: Mapping[str, Any]) -> dict[str, Any]:
        payload = dict(base_input)
        payload["previous_outputs"] = {
            dep: outputs[dep] for dep in plan.transitive_dependencies(unit_id) if dep in outputs
        }
        payload["iteration"] = iteration
        if feedback is not None:
            payload["feedback"] = feedback
            if unit_id in outputs:
                payload["previous_output"] = outputs[unit_id]
        return payload

    return provide
