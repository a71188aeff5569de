"""
Pytest configuration and fixtures for pytaxis tests.

Provides reusable fixtures for storage backends, registries, a scripted
unit executor, and hypothesis strategies for random dependency graphs.
"""

import asyncio
import shutil
import tempfile
import time
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import pytest
from hypothesis import strategies as st

from pytaxis.core import (
    BaseContextConfig,
    ContextBuilder,
    UnitContext,
    WorkUnitManifest,
    current_context,
)
from pytaxis.models import UnitResult
from pytaxis.registry import Registry
from pytaxis.storage import (
    InMemoryEventTransport,
    InMemoryExecutionStore,
    InMemoryLockProvider,
    SqliteExecutionStore,
)

# ==============================================================================
# Storage fixtures
# ==============================================================================


@pytest.fixture
async def memory_store() -> AsyncGenerator[InMemoryExecutionStore, None]:
    """Async in-memory store fixture with automatic cleanup."""
    store = InMemoryExecutionStore()
    yield store
    await store.reset()


@pytest.fixture
async def sqlite_memory_store() -> AsyncGenerator[SqliteExecutionStore, None]:
    """Async SQLite in-memory store fixture with automatic cleanup."""
    store = SqliteExecutionStore(":memory:")
    await store.connect()
    yield store
    await store.close()


@pytest.fixture
def temp_db_path():
    """Temporary database file path with automatic cleanup."""
    tmpdir = Path(tempfile.mkdtemp())
    db_path = tmpdir / "test.db"
    yield db_path
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def lock_provider() -> InMemoryLockProvider:
    return InMemoryLockProvider()


@pytest.fixture
def transport() -> InMemoryEventTransport:
    return InMemoryEventTransport()


# ==============================================================================
# Registries and contexts
# ==============================================================================


@pytest.fixture
def registry_abc() -> Registry:
    """A and B are independent; C depends on both."""
    registry = Registry()
    registry.register(WorkUnitManifest("A", "core", "Alpha"))
    registry.register(WorkUnitManifest("B", "core", "Beta"))
    registry.register(WorkUnitManifest("C", "core", "Gamma", ("A", "B")))
    return registry


@pytest.fixture
def content_registry() -> Registry:
    """Units named after the default dimension->unit table."""
    registry = Registry()
    registry.register(WorkUnitManifest("BRAND", "strategy", "Brand strategy"))
    registry.register(WorkUnitManifest("HERO_COPY", "content", "Hero copy", ("BRAND",)))
    registry.register(WorkUnitManifest("CTA_COPY", "content", "CTA copy", ("BRAND",)))
    registry.register(WorkUnitManifest("SEO_METADATA", "seo", "SEO", ("HERO_COPY",)))
    return registry


def make_builder(workflow_id: str = "workflow_test", tenant_id: str = "tenant_1") -> ContextBuilder:
    return ContextBuilder(
        BaseContextConfig(
            tenant_id=tenant_id,
            project_id="project_1",
            workflow_id=workflow_id,
            trace_id="trace_test",
        )
    )


@pytest.fixture
def context_builder() -> ContextBuilder:
    return make_builder()


@pytest.fixture
def unit_context(context_builder: ContextBuilder) -> UnitContext:
    return context_builder.build("A")


# ==============================================================================
# Scripted unit executor
# ==============================================================================


@dataclass
class UnitCall:
    """One invocation seen by the ScriptedExecutor."""

    unit_id: str
    input: Any
    started: float
    ended: float | None = None
    context: UnitContext | None = None


class ScriptedExecutor:
    """
    Unit executor whose behavior is scripted per unit.

    Units succeed with ``"<unit>-output"`` unless told otherwise. Every call
    is recorded with monotonic start/end timestamps and the context the
    engine published for it.
    """

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.calls: list[UnitCall] = []
        self.active = 0
        self.max_active = 0
        self._outputs: dict[str, Any] = {}
        self._delays: dict[str, float] = {}
        # {unit_id: [error, remaining failures or None for always]}
        self._failures: dict[str, list[Any]] = {}
        self._gates: dict[str, asyncio.Event] = {}

    def succeed(self, unit_id: str, output: Any = None, delay: float | None = None) -> None:
        self._outputs[unit_id] = output
        if delay is not None:
            self._delays[unit_id] = delay

    def fail(self, unit_id: str, error: Exception, times: int | None = None) -> None:
        """Raise ``error`` for the next ``times`` calls (all calls if None)."""
        self._failures[unit_id] = [error, times]

    def gate(self, unit_id: str) -> asyncio.Event:
        """Block ``unit_id`` until the returned event is set."""
        event = asyncio.Event()
        self._gates[unit_id] = event
        return event

    def calls_for(self, unit_id: str) -> list[UnitCall]:
        return [call for call in self.calls if call.unit_id == unit_id]

    def call_count(self, unit_id: str) -> int:
        return len(self.calls_for(unit_id))

    async def execute(self, unit_id: str, input: Any) -> Any:
        call = UnitCall(unit_id, input, time.monotonic(), context=current_context())
        self.calls.append(call)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            delay = self._delays.get(unit_id, self.delay)
            if delay:
                await asyncio.sleep(delay)
            gate = self._gates.get(unit_id)
            if gate is not None:
                await gate.wait()

            failure = self._failures.get(unit_id)
            if failure is not None and (failure[1] is None or failure[1] > 0):
                if failure[1] is not None:
                    failure[1] -= 1
                raise failure[0]

            output = self._outputs.get(unit_id)
            if isinstance(output, UnitResult):
                return output
            return output if output is not None else f"{unit_id}-output"
        finally:
            self.active -= 1
            call.ended = time.monotonic()


@pytest.fixture
def scripted_executor() -> ScriptedExecutor:
    return ScriptedExecutor()


# ==============================================================================
# Hypothesis strategies
# ==============================================================================


@st.composite
def acyclic_graphs(draw, min_nodes: int = 1, max_nodes: int = 12):
    """Dependency maps ``{unit: [deps]}`` where units only depend on earlier ones."""
    count = draw(st.integers(min_value=min_nodes, max_value=max_nodes))
    ids = [f"U{i}" for i in range(count)]
    graph: dict[str, list[str]] = {}
    for index, unit_id in enumerate(ids):
        earlier = ids[:index]
        graph[unit_id] = (
            draw(st.lists(st.sampled_from(earlier), unique=True, max_size=4)) if earlier else []
        )
    return graph


@st.composite
def cyclic_graphs(draw, max_nodes: int = 12):
    """An acyclic graph plus one back edge that closes a cycle."""
    graph = draw(acyclic_graphs(min_nodes=2, max_nodes=max_nodes))
    # U1 -> U0 guarantees at least one edge to reverse
    if "U0" not in graph["U1"]:
        graph["U1"].append("U0")
    edges = [(unit_id, dep) for unit_id, deps in graph.items() for dep in deps]
    dependent, dependency = draw(st.sampled_from(edges))
    graph[dependency].append(dependent)
    return graph
