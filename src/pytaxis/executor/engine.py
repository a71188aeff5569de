"""Execution engine: runs an execution plan stage by stage.

Each unit execution:
1. Acquires the unit lock keyed by its execution id (bounded retries)
2. Invokes the unit executor with the context published in CURRENT_CONTEXT
3. Releases the lock on every exit path
4. Finalizes a WorkUnitExecutionRecord; executor errors become a failed
   record and are never re-raised past the engine

Stages are barriers: every unit of stage N reaches a terminal state before
stage N+1 starts. Within a parallel stage, at most ``max_concurrency`` units
run at once (asyncio.Semaphore + asyncio.gather).

Dependents of a failed unit are skipped unless ``skip_dependents_of_failed``
is False, in which case they run with whatever outputs exist.

Concurrency vs Parallelism:
Units run as coroutines on one event loop. Executors doing blocking work
must offload it themselves (``asyncio.to_thread``). A unit timeout cancels
the awaiting coroutine but cannot interrupt work running in a thread.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import pickle
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Protocol

import xxhash

from pytaxis.core.config import OrchestratorConfig
from pytaxis.core.context import CURRENT_CONTEXT, UnitContext, clone_context, new_id
from pytaxis.errors import (
    ExecutionError,
    LockContentionError,
    RetryExhaustedError,
    UnitTimeoutError,
)
from pytaxis.events.bus import EventBus, EventKind
from pytaxis.executor.dag import ExecutionPlan
from pytaxis.executor.locking import hold_lock
from pytaxis.models import (
    RetryPolicy,
    UnitResult,
    UnitStatus,
    WorkflowExecutionResult,
    WorkUnitExecutionRecord,
    is_retryable_error,
)
from pytaxis.storage.base import ExecutionStore, LockProvider, unit_lock_key

logger = logging.getLogger(__name__)

__all__ = [
    "EngineStats",
    "ExecutionEngine",
    "UnitExecutor",
    "execute_with_retry",
    "execute_with_timeout",
    "input_fingerprint",
]


class UnitExecutor(Protocol):
    """Opaque work-unit executor.

    Returns a UnitResult, or any value which is wrapped as its output.
    """

    async def execute(self, unit_id: str, input: Any) -> Any: ...


InputProvider = Callable[[str, Mapping[str, Any]], Any]
"""Builds a unit's input from the outputs gathered so far."""

ContextFactory = Callable[[str], UnitContext]
ConfigProvider = Callable[[str], Mapping[str, Any] | None]
Checkpoint = Callable[[], Awaitable[bool]]
"""Awaited before each stage; returning False stops the run (cancellation)."""


def input_fingerprint(input: Any) -> int | None:
    """xxhash of the pickled input, or None if it cannot be pickled."""
    try:
        data = pickle.dumps(input)
    except (pickle.PicklingError, TypeError, AttributeError):
        return None
    # Masked to 63 bits to fit a signed SQLite INTEGER
    return xxhash.xxh64(data).intdigest() & 0x7FFFFFFFFFFFFFFF


@dataclass
class EngineStats:
    """Totals over every record an engine has produced."""

    total_units: int = 0
    completed_units: int = 0
    failed_units: int = 0
    skipped_units: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    average_duration_ms: float = 0.0


class ExecutionEngine:
    """
    Executes units and plans with locking, retries and timeouts.

    Usage:
        engine = ExecutionEngine(registry, InMemoryLockProvider(), max_concurrency=5)
        result = await engine.execute_workflow(plan, context_builder, input_provider)
    """

    def __init__(
        self,
        executor: UnitExecutor | Callable[[str, Any], Awaitable[Any]],
        lock_provider: LockProvider,
        *,
        store: ExecutionStore | None = None,
        event_bus: EventBus | None = None,
        max_concurrency: int = 5,
        lock_ttl_ms: int = 300_000,
        lock_retries: int = 0,
        lock_retry_delay_ms: int = 100,
        unit_timeout_ms: int | None = None,
        retry_policy: RetryPolicy = RetryPolicy.NONE,
        skip_dependents_of_failed: bool = True,
    ):
        if max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {max_concurrency}")

        execute = getattr(executor, "execute", None)
        self._execute = execute if callable(execute) else executor
        self._locks = lock_provider
        self._store = store
        self._bus = event_bus
        self._max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._lock_ttl_ms = lock_ttl_ms
        self._lock_retries = lock_retries
        self._lock_retry_delay_ms = lock_retry_delay_ms
        self._unit_timeout_ms = unit_timeout_ms
        self._retry_policy = retry_policy
        self._skip_dependents_of_failed = skip_dependents_of_failed
        self._records: list[WorkUnitExecutionRecord] = []

    @classmethod
    def from_config(
        cls,
        executor: UnitExecutor | Callable[[str, Any], Awaitable[Any]],
        lock_provider: LockProvider,
        config: OrchestratorConfig,
        store: ExecutionStore | None = None,
        event_bus: EventBus | None = None,
    ) -> ExecutionEngine:
        return cls(
            executor,
            lock_provider,
            store=store,
            event_bus=event_bus,
            max_concurrency=config.max_concurrency,
            lock_ttl_ms=config.lock_ttl_ms,
            lock_retries=config.lock_retries,
            lock_retry_delay_ms=config.lock_retry_delay_ms,
            unit_timeout_ms=config.unit_timeout_ms,
            retry_policy=config.retry_policy,
            skip_dependents_of_failed=config.skip_dependents_of_failed,
        )

    def __repr__(self) -> str:
        return f"ExecutionEngine(max_concurrency={self._max_concurrency})"

    # ========================================================================
    # Single unit
    # ========================================================================

    async def execute_unit(
        self, unit_id: str, input: Any, ctx: UnitContext
    ) -> WorkUnitExecutionRecord:
        """
        Execute one unit once, under the lock of ``ctx.execution_id``.

        Never raises for unit failures: lock contention, executor errors and
        timeouts all come back as a FAILED record.
        """
        record, _ = await self._run_attempt(unit_id, input, ctx)
        return record

    async def execute_with_policy(
        self, unit_id: str, input: Any, ctx: UnitContext, policy: RetryPolicy | None = None
    ) -> WorkUnitExecutionRecord:
        """
        Execute one unit, retrying per ``policy`` (the engine's by default).

        A unit that still fails after more than one attempt is recorded
        with a RetryExhaustedError.
        """
        record, error = await self._run_with_policy(
            unit_id, input, ctx, policy or self._retry_policy
        )
        if error is not None and record.attempts > 1:
            exhausted = RetryExhaustedError(unit_id, record.attempts, record.error or "")
            record.error = str(exhausted)
            record.error_type = type(exhausted).__name__
        return record

    async def _run_attempt(
        self,
        unit_id: str,
        input: Any,
        ctx: UnitContext,
        attempt: int = 1,
        timeout_ms: int | None = None,
    ) -> tuple[WorkUnitExecutionRecord, Exception | None]:
        record = WorkUnitExecutionRecord(
            unit_id=unit_id,
            execution_id=ctx.execution_id,
            attempts=attempt,
            input_hash=input_fingerprint(input),
        )
        self._records.append(record)
        timeout_ms = timeout_ms if timeout_ms is not None else self._unit_timeout_ms

        persisted = False
        error: Exception | None = None
        logger.debug(f"Starting unit {unit_id} ({ctx.execution_id}), attempt {attempt}")
        try:
            async with hold_lock(
                self._locks,
                unit_lock_key(ctx.tenant_id, ctx.execution_id),
                self._lock_ttl_ms,
                self._lock_retries,
                self._lock_retry_delay_ms,
            ):
                record.status = UnitStatus.RUNNING
                record.started_at = datetime.now(UTC)
                persisted = await self._persist_start(record, ctx)
                await self._emit(
                    EventKind.UNIT_STARTED,
                    unit_id,
                    {"execution_id": ctx.execution_id, "attempt": attempt},
                )
                result = await self._invoke(unit_id, input, ctx, timeout_ms)
        except Exception as e:
            error = e
            record.mark_failed(e)
            logger.warning(
                f"Unit {unit_id} failed after {record.duration_ms:.0f}ms "
                f"({record.error_type}): {record.error}"
            )
        else:
            record.mark_completed(result)
            logger.info(f"Unit {unit_id} completed in {record.duration_ms:.0f}ms")

        if persisted:
            await self._persist_finish(record)

        if record.succeeded:
            await self._emit(
                EventKind.UNIT_COMPLETED,
                unit_id,
                {
                    "execution_id": ctx.execution_id,
                    "duration_ms": record.duration_ms,
                    "tokens_used": record.tokens_used,
                    "cost": record.cost,
                },
            )
        else:
            await self._emit(
                EventKind.UNIT_FAILED,
                unit_id,
                {
                    "execution_id": ctx.execution_id,
                    "error": record.error,
                    "error_type": record.error_type,
                    "attempt": attempt,
                },
            )
        return record, error

    async def _run_with_policy(
        self,
        unit_id: str,
        input: Any,
        ctx: UnitContext,
        policy: RetryPolicy,
        timeout_ms: int | None = None,
    ) -> tuple[WorkUnitExecutionRecord, Exception | None]:
        attempt = 1
        while True:
            record, error = await self._run_attempt(unit_id, input, ctx, attempt, timeout_ms)
            if error is None:
                return record, None

            # Another holder owns this execution id; retrying would not help
            if isinstance(error, LockContentionError) or not is_retryable_error(error):
                return record, error

            delay_ms = policy.delay_for_attempt(attempt)
            if delay_ms is None:
                return record, error

            logger.info(
                f"Retrying unit {unit_id} in {delay_ms}ms "
                f"(attempt {attempt + 1}/{policy.max_attempts})"
            )
            # The failed attempt stays finalized; the retry is announced by event only
            await self._emit(
                EventKind.UNIT_RETRYING,
                unit_id,
                {
                    "status": UnitStatus.RETRYING.value,
                    "attempt": attempt,
                    "delay_ms": delay_ms,
                    "error": record.error,
                },
            )
            await asyncio.sleep(delay_ms / 1000)

            attempt += 1
            # Each attempt is a separate execution with its own lock
            ctx = clone_context(ctx)

    async def _invoke(
        self, unit_id: str, input: Any, ctx: UnitContext, timeout_ms: int | None
    ) -> UnitResult:
        token = CURRENT_CONTEXT.set(ctx)
        try:
            call = self._execute(unit_id, input)
            if timeout_ms is None:
                value = await call
            else:
                deadline = asyncio.timeout(timeout_ms / 1000)
                try:
                    async with deadline:
                        value = await call
                except TimeoutError as e:
                    # A TimeoutError raised by the executor itself is its own failure
                    if not deadline.expired():
                        raise
                    raise UnitTimeoutError(unit_id, timeout_ms) from e
        finally:
            CURRENT_CONTEXT.reset(token)

        if isinstance(value, UnitResult):
            return value
        return UnitResult(output=value)

    # ========================================================================
    # Stages and plans
    # ========================================================================

    async def execute_stage(
        self,
        unit_ids: list[str],
        inputs: Mapping[str, Any],
        contexts: Mapping[str, UnitContext],
        parallelizable: bool = True,
    ) -> list[WorkUnitExecutionRecord]:
        """
        Execute the units of one stage and wait for all of them.

        Parallel stages run under the concurrency limit; otherwise units run
        one after another in list order. Records come back in ``unit_ids`` order.
        """
        if parallelizable and len(unit_ids) > 1:
            logger.debug(f"Executing {len(unit_ids)} units in parallel")

            async def run(unit_id: str) -> WorkUnitExecutionRecord:
                async with self._semaphore:
                    return await self.execute_with_policy(
                        unit_id, inputs[unit_id], contexts[unit_id]
                    )

            return list(await asyncio.gather(*(run(unit_id) for unit_id in unit_ids)))

        records = []
        for unit_id in unit_ids:
            records.append(
                await self.execute_with_policy(unit_id, inputs[unit_id], contexts[unit_id])
            )
        return records

    async def execute_workflow(
        self,
        plan: ExecutionPlan,
        context_builder: ContextFactory,
        input_provider: InputProvider,
        *,
        initial_outputs: Mapping[str, Any] | None = None,
        config_provider: ConfigProvider | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> WorkflowExecutionResult:
        """
        Execute every stage of ``plan`` in order.

        Args:
            plan: Stages to run
            context_builder: Builds a fresh UnitContext per unit
            input_provider: ``(unit_id, outputs_so_far) -> input``
            initial_outputs: Outputs of units not in ``plan`` (earlier iterations)
            config_provider: Extra per-unit config merged into the context
            checkpoint: Awaited before each stage; False stops the run

        Returns:
            Aggregate result; ``success`` is False if any unit failed or the
            run was stopped before its last stage
        """
        started = time.monotonic()
        outputs: dict[str, Any] = dict(initial_outputs or {})
        result = WorkflowExecutionResult(success=False)
        # Failed or skipped units of this run
        blocked: set[str] = set()

        logger.info(
            f"Starting plan execution: {plan.total_units} units in {len(plan.stages)} stages"
        )

        for stage in plan.stages:
            if checkpoint is not None and not await checkpoint():
                logger.info(f"Plan execution stopped before stage {stage.stage}")
                result.cancelled = True
                break

            runnable: list[str] = []
            for unit_id in stage.unit_ids:
                failed_deps = [d for d in plan.dependencies.get(unit_id, ()) if d in blocked]
                if failed_deps and self._skip_dependents_of_failed:
                    result.skipped.append(await self._skip(unit_id, failed_deps))
                    blocked.add(unit_id)
                else:
                    runnable.append(unit_id)

            await self._emit(
                EventKind.STAGE_STARTED,
                None,
                {"stage": stage.stage, "sub_stage": stage.sub_stage, "units": runnable},
            )
            logger.info(
                f"Stage {stage.stage}: {len(runnable)} units (parallel: {stage.parallelizable})"
            )

            inputs: dict[str, Any] = {}
            contexts: dict[str, UnitContext] = {}
            records: list[WorkUnitExecutionRecord] = []
            for unit_id in runnable:
                try:
                    inputs[unit_id] = input_provider(unit_id, outputs)
                    contexts[unit_id] = self._context_for(
                        unit_id, context_builder, config_provider
                    )
                except Exception as e:
                    records.append(self._unprepared(unit_id, e))
                    continue
                await self._emit(EventKind.UNIT_QUEUED, unit_id, {"stage": stage.stage})

            prepared = [unit_id for unit_id in runnable if unit_id in contexts]
            records.extend(
                await self.execute_stage(prepared, inputs, contexts, stage.parallelizable)
            )

            stage_failures = []
            for record in records:
                if record.succeeded:
                    outputs[record.unit_id] = record.output
                    result.outputs_by_unit[record.unit_id] = record.output
                    result.completed.append(record)
                else:
                    result.errors_by_unit[record.unit_id] = record.error or "Unknown error"
                    result.failed.append(record)
                    blocked.add(record.unit_id)
                    stage_failures.append(record.unit_id)

            if stage_failures:
                logger.warning(
                    f"Stage {stage.stage} had {len(stage_failures)} failure(s): {stage_failures}"
                )

            await self._emit(
                EventKind.STAGE_COMPLETED,
                None,
                {
                    "stage": stage.stage,
                    "sub_stage": stage.sub_stage,
                    "completed": [r.unit_id for r in records if r.succeeded],
                    "failed": stage_failures,
                },
            )

        result.total_units = len(result.completed) + len(result.failed) + len(result.skipped)
        result.total_duration_ms = (time.monotonic() - started) * 1000
        result.success = not result.failed and not result.cancelled

        logger.info(
            f"Plan execution {'completed' if result.success else 'failed'}: "
            f"{len(result.completed)}/{result.total_units} units succeeded "
            f"in {result.total_duration_ms:.0f}ms"
        )
        return result

    def _context_for(
        self,
        unit_id: str,
        context_builder: ContextFactory,
        config_provider: ConfigProvider | None,
    ) -> UnitContext:
        ctx = context_builder(unit_id)
        if config_provider is not None:
            extra = config_provider(unit_id)
            if extra:
                ctx = dataclasses.replace(ctx, config={**ctx.config, **extra})
        return ctx

    def _unprepared(self, unit_id: str, error: Exception) -> WorkUnitExecutionRecord:
        record = WorkUnitExecutionRecord(unit_id=unit_id, execution_id=new_id("unit"))
        self._records.append(record)
        record.mark_failed(ExecutionError(f"Input preparation failed: {error}", unit_id))
        logger.warning(f"Unit {unit_id} not started: {record.error}")
        return record

    async def _skip(self, unit_id: str, failed_deps: list[str]) -> WorkUnitExecutionRecord:
        record = WorkUnitExecutionRecord(unit_id=unit_id, execution_id=new_id("unit"))
        self._records.append(record)
        reason = f"Dependency failed: {', '.join(failed_deps)}"
        record.mark_skipped(reason)
        logger.info(f"Skipping unit {unit_id}: {reason}")
        await self._emit(EventKind.UNIT_SKIPPED, unit_id, {"reason": reason})
        return record

    # ========================================================================
    # Side channels (best-effort)
    # ========================================================================

    async def _persist_start(self, record: WorkUnitExecutionRecord, ctx: UnitContext) -> bool:
        if self._store is None:
            return False
        try:
            await self._store.create_execution_record(
                record.unit_id, record.execution_id, ctx.workflow_id
            )
            return True
        except Exception as e:
            logger.warning(f"Failed to persist start of unit {record.unit_id}: {e}")
            return False

    async def _persist_finish(self, record: WorkUnitExecutionRecord) -> None:
        try:
            await self._store.update_execution_record(
                record.execution_id,
                status=record.status,
                output=record.output,
                error=record.error,
                tokens_used=record.tokens_used,
                cost=record.cost,
                duration_ms=record.duration_ms,
            )
        except Exception as e:
            logger.warning(f"Failed to persist result of unit {record.unit_id}: {e}")

    async def _emit(
        self, kind: EventKind, unit_id: str | None, data: dict[str, Any]
    ) -> None:
        if self._bus is not None:
            await self._bus.emit(kind, data, unit_id=unit_id)

    # ========================================================================
    # Records and statistics
    # ========================================================================

    def get_record(self, unit_id: str) -> WorkUnitExecutionRecord | None:
        """Most recent record of ``unit_id``."""
        for record in reversed(self._records):
            if record.unit_id == unit_id:
                return record
        return None

    def records(self) -> list[WorkUnitExecutionRecord]:
        return list(self._records)

    def clear_records(self) -> None:
        self._records.clear()

    def stats(self) -> EngineStats:
        records = self._records
        finished = [r for r in records if r.status in (UnitStatus.COMPLETED, UnitStatus.FAILED)]
        return EngineStats(
            total_units=len(records),
            completed_units=sum(1 for r in records if r.status == UnitStatus.COMPLETED),
            failed_units=sum(1 for r in records if r.status == UnitStatus.FAILED),
            skipped_units=sum(1 for r in records if r.status == UnitStatus.SKIPPED),
            total_tokens=sum(r.tokens_used for r in records),
            total_cost=sum(r.cost for r in records),
            average_duration_ms=(
                sum(r.duration_ms for r in finished) / len(finished) if finished else 0.0
            ),
        )


async def execute_with_retry(
    engine: ExecutionEngine,
    unit_id: str,
    input: Any,
    ctx: UnitContext,
    max_retries: int = 3,
    policy: RetryPolicy | None = None,
) -> WorkUnitExecutionRecord:
    """
    Execute a unit with exponential backoff between attempts.

    ``max_retries`` is the total number of attempts; pass ``policy`` to
    control delays as well. Non-retryable errors stop immediately.

    Raises:
        RetryExhaustedError: If the unit never succeeded; ``__cause__`` is
            the last error
    """
    policy = policy or RetryPolicy.with_max_attempts(max_retries)
    record, error = await engine._run_with_policy(unit_id, input, ctx, policy)
    if error is not None:
        raise RetryExhaustedError(unit_id, record.attempts, record.error or "") from error
    return record


async def execute_with_timeout(
    engine: ExecutionEngine,
    unit_id: str,
    input: Any,
    ctx: UnitContext,
    timeout_ms: int = 300_000,
) -> WorkUnitExecutionRecord:
    """
    Execute a unit, giving up after ``timeout_ms``.

    The awaiting coroutine is cancelled and the lock released; work the
    executor offloaded to a thread keeps running.

    Raises:
        UnitTimeoutError: If the unit did not finish in time
    """
    record, error = await engine._run_attempt(unit_id, input, ctx, timeout_ms=timeout_ms)
    if isinstance(error, UnitTimeoutError):
        raise error
    return record
