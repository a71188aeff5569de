"""Contract tests run against every ExecutionStore backend."""

from datetime import UTC, datetime

import pytest

from pytaxis.errors import StorageError
from pytaxis.models import QualityScore, UnitStatus, WorkflowExecutionState, WorkflowStatus
from pytaxis.storage import InMemoryExecutionStore, SqliteExecutionStore


@pytest.fixture(params=["memory", "sqlite"])
async def store(request):
    if request.param == "memory":
        yield InMemoryExecutionStore()
    else:
        sqlite = await SqliteExecutionStore.in_memory()
        yield sqlite
        await sqlite.close()


def _state(workflow_id: str = "wf_1", **fields) -> WorkflowExecutionState:
    return WorkflowExecutionState(
        id=workflow_id,
        tenant_id="tenant_1",
        project_id="project_1",
        trace_id="trace_1",
        input={"brief": "bakery"},
        **fields,
    )


# ==============================================================================
# Unit executions
# ==============================================================================


@pytest.mark.asyncio
async def test_execution_record_lifecycle(store):
    """A record starts RUNNING and is finalized with its outcome."""
    await store.create_execution_record("HERO_COPY", "unit_1", "wf_1")

    started = await store.get_execution_record("unit_1")
    assert started.status == UnitStatus.RUNNING
    assert started.workflow_id == "wf_1"
    assert started.created_at is not None

    await store.update_execution_record(
        "unit_1",
        status=UnitStatus.COMPLETED,
        output={"headline": "Fresh bread"},
        tokens_used=120,
        cost=0.25,
        duration_ms=42.0,
    )

    finished = await store.get_execution_record("unit_1")
    assert finished.status == UnitStatus.COMPLETED
    assert finished.output == {"headline": "Fresh bread"}
    assert finished.tokens_used == 120
    assert finished.cost == 0.25
    assert finished.duration_ms == 42.0
    assert finished.error is None


@pytest.mark.asyncio
async def test_failed_execution_keeps_usage_when_omitted(store):
    await store.create_execution_record("A", "unit_1", "wf_1")
    await store.update_execution_record("unit_1", status=UnitStatus.FAILED, error="boom")

    record = await store.get_execution_record("unit_1")
    assert record.status == UnitStatus.FAILED
    assert record.error == "boom"
    assert record.tokens_used == 0
    assert record.output is None


@pytest.mark.asyncio
async def test_list_execution_records_in_creation_order(store):
    await store.create_execution_record("A", "unit_3", "wf_1")
    await store.create_execution_record("B", "unit_1", "wf_1")
    await store.create_execution_record("A", "unit_2", "wf_1")
    await store.create_execution_record("A", "unit_9", "wf_other")

    records = await store.list_execution_records("wf_1")

    assert [r.execution_id for r in records] == ["unit_3", "unit_1", "unit_2"]
    assert await store.list_execution_records("wf_none") == []


@pytest.mark.asyncio
async def test_execution_record_errors(store):
    await store.create_execution_record("A", "unit_1", "wf_1")

    with pytest.raises(StorageError):
        await store.create_execution_record("A", "unit_1", "wf_1")
    with pytest.raises(StorageError):
        await store.update_execution_record("unit_missing", status=UnitStatus.COMPLETED)
    assert await store.get_execution_record("unit_missing") is None


# ==============================================================================
# Quality evaluations
# ==============================================================================


@pytest.mark.asyncio
async def test_quality_evaluations_per_workflow(store):
    first = QualityScore("HERO_COPY", "content", 55, execution_id="unit_1", feedback="Too long")
    second = QualityScore("TYPOGRAPHY", "design", 8, max_score=10)
    await store.record_quality_evaluation("wf_1", first)
    await store.record_quality_evaluation("wf_1", second)
    await store.record_quality_evaluation("wf_2", QualityScore("SEO_METADATA", "seo", 90))

    assert await store.query_quality_evaluations("wf_1") == [first, second]
    assert await store.query_quality_evaluations("wf_none") == []


# ==============================================================================
# Workflows
# ==============================================================================


@pytest.mark.asyncio
async def test_workflow_round_trip(store):
    state = _state()
    await store.create_workflow(state)

    stored = await store.get_workflow("wf_1")
    assert stored.status == WorkflowStatus.QUEUED
    assert stored.tenant_id == "tenant_1"
    assert stored.trace_id == "trace_1"
    assert stored.input == {"brief": "bakery"}
    assert stored.output is None
    assert abs((stored.created_at - state.created_at).total_seconds()) < 0.01
    assert await store.get_workflow("wf_missing") is None


@pytest.mark.asyncio
async def test_workflow_status_updates_keep_omitted_fields(store):
    await store.create_workflow(_state())
    await store.update_workflow_status("wf_1", status=WorkflowStatus.RUNNING)
    await store.update_workflow_status("wf_1", status=WorkflowStatus.RUNNING, iteration=2)

    completed_at = datetime.now(UTC)
    await store.update_workflow_status(
        "wf_1",
        status=WorkflowStatus.FAILED,
        output={"A": "a"},
        error="B: boom",
        completed_at=completed_at,
    )

    stored = await store.get_workflow("wf_1")
    assert stored.status == WorkflowStatus.FAILED
    assert stored.iteration == 2
    assert stored.output == {"A": "a"}
    assert stored.error == "B: boom"
    assert abs((stored.completed_at - completed_at).total_seconds()) < 0.01


@pytest.mark.asyncio
async def test_workflow_errors(store):
    await store.create_workflow(_state())

    with pytest.raises(StorageError):
        await store.create_workflow(_state())
    with pytest.raises(StorageError):
        await store.update_workflow_status("wf_missing", status=WorkflowStatus.RUNNING)
