"""
DAG (Directed Acyclic Graph) builder and execution planning.

This module turns a set of work units and their declared dependencies into
an execution plan: a list of stages, where every unit in a stage depends
only on units in earlier stages.

**Design Decision Hidden** (Parnas's Information Hiding):
- **"How units are grouped into stages"**

Callers only see ``ExecutionPlan``; the in-degree bookkeeping and cycle
search stay inside ``DAG``.

**How It Works**:
1. ``add_node`` records each unit with its dependencies
2. ``validate`` reports cycles and dangling dependencies
3. ``calculate_stages`` runs Kahn's algorithm, one batch per stage
4. ``get_execution_plan`` groups units by stage in ascending order
5. ``optimize_execution_plan`` splits stages wider than the concurrency cap

**Example**:
```
        A   B        stage 0 (parallel)
         \\ /
          C          stage 1
```

**Ordering**: within a stage, units keep the order in which they were
added to the DAG. Nothing downstream relies on intra-stage order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from pytaxis.errors import CircularDependencyError, ValidationError
from pytaxis.registry import Registry

logger = logging.getLogger(__name__)


@dataclass
class DAGNode:
    """
    A work unit inside one DAG build.

    **Attributes**:
        id: Unit identifier
        dependencies: Units this one waits for
        dependents: Units waiting for this one (filled in as nodes are added)
        stage: Execution stage, -1 until ``calculate_stages`` runs
        siblings_at_stage: Other units in the same stage
    """

    id: str
    dependencies: list[str]
    dependents: list[str] = field(default_factory=list)
    stage: int = -1
    siblings_at_stage: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class StagePlan:
    """
    One stage of an execution plan.

    ``sub_stage`` is non-zero only for chunks produced by
    ``optimize_execution_plan`` splitting a wide stage.
    """

    stage: int
    unit_ids: tuple[str, ...]
    parallelizable: bool
    sub_stage: int = 0


@dataclass(frozen=True)
class ExecutionPlan:
    """
    Ordered stages plus the dependency map they were derived from.

    Read-only; regenerate it from the DAG rather than mutating it.
    """

    stages: tuple[StagePlan, ...]
    dependencies: dict[str, tuple[str, ...]]

    @property
    def total_units(self) -> int:
        return sum(len(s.unit_ids) for s in self.stages)

    def unit_ids(self) -> list[str]:
        return [unit_id for stage in self.stages for unit_id in stage.unit_ids]

    def transitive_dependencies(self, unit_id: str) -> list[str]:
        """All units ``unit_id`` depends on, directly or indirectly, nearest first."""
        seen: list[str] = []
        frontier = list(self.dependencies.get(unit_id, ()))
        while frontier:
            dep = frontier.pop(0)
            if dep in seen:
                continue
            seen.append(dep)
            frontier.extend(self.dependencies.get(dep, ()))
        return seen

    def restrict(self, unit_ids: list[str]) -> ExecutionPlan:
        """
        Keep only ``unit_ids``, preserving stage order.

        Used to re-run a subset of the graph during refinement; stages left
        empty are dropped. Dependencies outside the subset are treated as
        already satisfied by earlier iterations.
        """
        keep = set(unit_ids)
        stages = []
        for stage in self.stages:
            members = tuple(u for u in stage.unit_ids if u in keep)
            if members:
                stages.append(
                    StagePlan(
                        stage=stage.stage,
                        unit_ids=members,
                        parallelizable=len(members) > 1,
                        sub_stage=stage.sub_stage,
                    )
                )
        return ExecutionPlan(stages=tuple(stages), dependencies=self.dependencies)

    def level_graph(self) -> str:
        """
        Render the plan level by level, showing which units run together.

        **Example output**:
        ```
        Stage 0: [A] [B] (2 parallel units)
                 ↓
        Stage 1: [C]
        ```
        """
        output = f"Execution Plan ({self.total_units} units):\n\n"
        for index, stage in enumerate(self.stages):
            label = f"{stage.stage}" if stage.sub_stage == 0 else f"{stage.stage}.{stage.sub_stage}"
            parallel_note = (
                f" ({len(stage.unit_ids)} parallel units)" if stage.parallelizable else ""
            )
            output += f"Stage {label}: [{'] ['.join(stage.unit_ids)}]{parallel_note}\n"
            if index < len(self.stages) - 1:
                output += "         ↓\n"
        return output


@dataclass
class DagSummary:
    """
    Summary information about a DAG structure.

    **Attributes**:
        total_units: Number of nodes
        root_count: Nodes with no dependencies
        leaf_count: Nodes nothing depends on
        max_depth: Highest stage number
        roots: Root unit ids
        leaves: Leaf unit ids
    """

    total_units: int
    root_count: int
    leaf_count: int
    max_depth: int
    roots: list[str]
    leaves: list[str]


class DAG:
    """
    Dependency graph over one set of work units.

    **Usage**:
    ```python
    dag = DAG()
    dag.add_node("A")
    dag.add_node("B")
    dag.add_node("C", ["A", "B"])

    errors = dag.validate()
    if not errors:
        dag.calculate_stages()
        plan = dag.get_execution_plan()
    ```
    """

    def __init__(self) -> None:
        self._nodes: dict[str, DAGNode] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._nodes

    def add_node(self, unit_id: str, dependencies: list[str] | tuple[str, ...] = ()) -> DAGNode:
        """
        Add a unit with its dependencies.

        Dependencies may be added before or after the unit that needs them.

        Raises:
            ValidationError: If ``unit_id`` is already present
        """
        if unit_id in self._nodes:
            raise ValidationError(f"Node {unit_id} already exists in DAG")

        node = DAGNode(id=unit_id, dependencies=list(dict.fromkeys(dependencies)))
        self._nodes[unit_id] = node

        for dep in node.dependencies:
            dep_node = self._nodes.get(dep)
            if dep_node is not None:
                dep_node.dependents.append(unit_id)

        # Link nodes added earlier that were waiting for this one
        for other in self._nodes.values():
            if other.id != unit_id and unit_id in other.dependencies:
                node.dependents.append(other.id)

        return node

    def get_node(self, unit_id: str) -> DAGNode | None:
        return self._nodes.get(unit_id)

    def nodes(self) -> list[DAGNode]:
        return list(self._nodes.values())

    def get_dependencies(self, unit_id: str) -> list[str]:
        node = self._nodes.get(unit_id)
        return list(node.dependencies) if node else []

    # ========================================================================
    # Validation
    # ========================================================================

    def _has_path(self, source: str, target: str) -> bool:
        """Depth-first reachability from ``source`` to ``target`` along dependency edges."""
        stack = [source]
        visited: set[str] = set()
        while stack:
            current = stack.pop()
            if current == target:
                return True
            if current in visited:
                continue
            visited.add(current)
            stack.extend(self.get_dependencies(current))
        return False

    def validate(self) -> list[str]:
        """
        Report structural errors without raising.

        Checks:
        - every dependency edge ``unit -> dep`` where ``dep`` can reach
          ``unit`` again (a cycle)
        - every dependency naming a unit not in the graph

        **Returns**:
            Error messages; empty when the graph is a valid DAG
        """
        errors: list[str] = []

        for node in self._nodes.values():
            for dep in node.dependencies:
                if dep in self._nodes and self._has_path(dep, node.id):
                    errors.append(f"Circular dependency detected: {node.id} -> {dep}")

        for node in self._nodes.values():
            for dep in node.dependencies:
                if dep not in self._nodes:
                    errors.append(
                        f"Missing dependency: {node.id} depends on {dep} which is not in the graph"
                    )

        return errors

    def ensure_valid(self) -> None:
        """
        Raise if ``validate`` reports anything.

        Raises:
            CircularDependencyError: If the graph has a cycle
            ValidationError: If a dependency is missing
        """
        errors = self.validate()
        if not errors:
            return
        cyclic = [
            node.id
            for node in self._nodes.values()
            if any(dep in self._nodes and self._has_path(dep, node.id) for dep in node.dependencies)
        ]
        if cyclic:
            raise CircularDependencyError(cyclic)
        raise ValidationError(f"Invalid DAG: {', '.join(errors)}")

    # ========================================================================
    # Staging
    # ========================================================================

    def calculate_stages(self) -> None:
        """
        Assign every node a stage with Kahn's algorithm.

        Nodes with no dependencies seed stage 0. Each pass drains the whole
        current batch, decrementing in-degrees of dependents; a dependent
        reaching zero joins the next stage. The stage counter advances only
        after a batch is fully drained.

        Raises:
            CircularDependencyError: If some nodes can never reach in-degree 0
        """
        in_degree = {
            unit_id: sum(1 for dep in node.dependencies if dep in self._nodes)
            for unit_id, node in self._nodes.items()
        }
        for node in self._nodes.values():
            node.stage = -1
            node.siblings_at_stage = []

        current_stage = 0
        batch = [unit_id for unit_id, degree in in_degree.items() if degree == 0]
        for unit_id in batch:
            self._nodes[unit_id].stage = current_stage

        while batch:
            next_batch: list[str] = []
            for unit_id in batch:
                for dependent in self._nodes[unit_id].dependents:
                    in_degree[dependent] -= 1
                    if in_degree[dependent] == 0:
                        self._nodes[dependent].stage = current_stage + 1
                        next_batch.append(dependent)

            for unit_id in batch:
                self._nodes[unit_id].siblings_at_stage = [u for u in batch if u != unit_id]

            batch = next_batch
            if batch:
                current_stage += 1

        unstaged = [unit_id for unit_id, node in self._nodes.items() if node.stage == -1]
        if unstaged:
            raise CircularDependencyError(unstaged)

        logger.debug(f"Calculated {current_stage + 1} stage(s) for {len(self._nodes)} unit(s)")

    def get_execution_plan(self) -> ExecutionPlan:
        """Group nodes by stage (ascending), computing stages first if needed."""
        if any(node.stage == -1 for node in self._nodes.values()):
            self.calculate_stages()

        by_stage: dict[int, list[str]] = {}
        for node in self._nodes.values():
            by_stage.setdefault(node.stage, []).append(node.id)

        stages = tuple(
            StagePlan(stage=stage, unit_ids=tuple(units), parallelizable=len(units) > 1)
            for stage, units in sorted(by_stage.items())
        )
        dependencies = {
            node.id: tuple(dep for dep in node.dependencies if dep in self._nodes)
            for node in self._nodes.values()
        }
        return ExecutionPlan(stages=stages, dependencies=dependencies)

    def nodes_by_stage(self, stage: int) -> list[DAGNode]:
        return [node for node in self._nodes.values() if node.stage == stage]

    def max_stage(self) -> int:
        return max((node.stage for node in self._nodes.values()), default=0)

    # ========================================================================
    # Introspection
    # ========================================================================

    def summary(self) -> DagSummary:
        roots = [n.id for n in self._nodes.values() if not n.dependencies]
        leaves = [n.id for n in self._nodes.values() if not n.dependents]
        return DagSummary(
            total_units=len(self._nodes),
            root_count=len(roots),
            leaf_count=len(leaves),
            max_depth=self.max_stage(),
            roots=roots,
            leaves=leaves,
        )

    def to_dot(self) -> str:
        """Export as Graphviz DOT, edges pointing from dependency to dependent."""
        lines = ["digraph workflow {", "  rankdir=LR;", "  node [shape=box];", ""]
        for node in self._nodes.values():
            lines.append(f'  "{node.id}" [label="{node.id}\\nStage {node.stage}"];')
        lines.append("")
        for node in self._nodes.values():
            for dep in node.dependencies:
                lines.append(f'  "{dep}" -> "{node.id}";')
        lines.append("}")
        return "\n".join(lines) + "\n"

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [
                {
                    "id": node.id,
                    "stage": node.stage,
                    "dependencies": list(node.dependencies),
                    "dependents": list(node.dependents),
                }
                for node in self._nodes.values()
            ],
            "edges": [
                {"from": dep, "to": node.id}
                for node in self._nodes.values()
                for dep in node.dependencies
            ],
        }


def build_dag(registry: Registry, unit_ids: list[str]) -> DAG:
    """
    Build a staged DAG for ``unit_ids`` using registered dependencies.

    Every declared dependency must itself be among ``unit_ids``.

    Raises:
        ValidationError: On duplicate ids or missing dependencies
        CircularDependencyError: On a cycle
    """
    dag = DAG()
    for unit_id in unit_ids:
        dag.add_node(unit_id, registry.get_dependencies(unit_id))
    dag.ensure_valid()
    dag.calculate_stages()
    return dag


def build_dag_from_units(registry: Registry, unit_ids: list[str]) -> DAG:
    """
    Build a staged DAG for ``unit_ids``, ignoring dependencies outside the set.

    Suited to ad-hoc runs of a few units whose upstream outputs are
    supplied by the caller.

    Raises:
        ValidationError: On duplicate ids
        CircularDependencyError: On a cycle
    """
    wanted = set(unit_ids)
    dag = DAG()
    for unit_id in unit_ids:
        deps = [dep for dep in registry.get_dependencies(unit_id) if dep in wanted]
        dag.add_node(unit_id, deps)
    dag.ensure_valid()
    dag.calculate_stages()
    return dag


def optimize_execution_plan(plan: ExecutionPlan, max_parallel: int = 5) -> ExecutionPlan:
    """
    Split stages wider than ``max_parallel`` into ordered sub-stages.

    Chunks keep the stage number and relative order of the original
    stage; ``sub_stage`` numbers them.

    Raises:
        ValidationError: If ``max_parallel`` < 1
    """
    if max_parallel < 1:
        raise ValidationError(f"max_parallel must be >= 1, got {max_parallel}")

    stages: list[StagePlan] = []
    for stage in plan.stages:
        if len(stage.unit_ids) <= max_parallel:
            stages.append(stage)
            continue
        for index, start in enumerate(range(0, len(stage.unit_ids), max_parallel)):
            chunk = stage.unit_ids[start : start + max_parallel]
            stages.append(
                StagePlan(
                    stage=stage.stage,
                    unit_ids=chunk,
                    parallelizable=len(chunk) > 1,
                    sub_stage=index,
                )
            )
    return ExecutionPlan(stages=tuple(stages), dependencies=plan.dependencies)
