"""
Tests for DAG construction, validation and execution planning.

ARCHITECTURE VERIFICATION:
- Cycles and dangling dependencies are reported before staging
- Stages follow Kahn's algorithm in batches
- Wide stages split into ordered sub-stages
"""

import pytest

from pytaxis.core import WorkUnitManifest
from pytaxis.errors import CircularDependencyError, ValidationError
from pytaxis.executor.dag import (
    DAG,
    build_dag,
    build_dag_from_units,
    optimize_execution_plan,
)
from pytaxis.registry import Registry


def _diamond() -> DAG:
    dag = DAG()
    dag.add_node("A")
    dag.add_node("B", ["A"])
    dag.add_node("C", ["A"])
    dag.add_node("D", ["B", "C"])
    return dag


def test_add_node_rejects_duplicates():
    dag = DAG()
    dag.add_node("A")
    with pytest.raises(ValidationError):
        dag.add_node("A")


def test_dependents_are_linked_in_any_insertion_order():
    dag = DAG()
    dag.add_node("C", ["A"])
    dag.add_node("A")

    assert dag.get_node("A").dependents == ["C"]
    assert dag.get_node("C").dependencies == ["A"]


def test_abc_plan(registry_abc):
    plan = build_dag(registry_abc, ["A", "B", "C"]).get_execution_plan()

    assert [(s.stage, s.unit_ids, s.parallelizable) for s in plan.stages] == [
        (0, ("A", "B"), True),
        (1, ("C",), False),
    ]
    assert plan.total_units == 3
    assert plan.dependencies["C"] == ("A", "B")


def test_diamond_stages():
    dag = _diamond()
    assert dag.validate() == []
    dag.calculate_stages()

    assert {n.id: n.stage for n in dag.nodes()} == {"A": 0, "B": 1, "C": 1, "D": 2}
    assert dag.get_node("B").siblings_at_stage == ["C"]
    assert dag.max_stage() == 2
    assert [n.id for n in dag.nodes_by_stage(1)] == ["B", "C"]


def test_stage_is_one_past_deepest_dependency():
    dag = DAG()
    dag.add_node("A")
    dag.add_node("B", ["A"])
    dag.add_node("C", ["B"])
    dag.add_node("D", ["A", "C"])
    dag.calculate_stages()

    assert dag.get_node("D").stage == 3


def test_validate_reports_cycle():
    dag = DAG()
    dag.add_node("A", ["C"])
    dag.add_node("B", ["A"])
    dag.add_node("C", ["B"])

    errors = dag.validate()
    assert any("Circular dependency detected" in e for e in errors)

    with pytest.raises(CircularDependencyError) as exc_info:
        dag.ensure_valid()
    assert set(exc_info.value.unit_ids) == {"A", "B", "C"}


def test_validate_reports_missing_dependency():
    dag = DAG()
    dag.add_node("A", ["GHOST"])

    assert dag.validate() == ["Missing dependency: A depends on GHOST which is not in the graph"]
    with pytest.raises(ValidationError, match="GHOST"):
        dag.ensure_valid()


def test_calculate_stages_fails_closed_on_cycle():
    dag = DAG()
    dag.add_node("A", ["B"])
    dag.add_node("B", ["A"])
    dag.add_node("C")

    with pytest.raises(CircularDependencyError):
        dag.calculate_stages()


def test_build_dag_requires_dependencies_in_set(registry_abc):
    with pytest.raises(ValidationError):
        build_dag(registry_abc, ["C"])


def test_build_dag_from_units_filters_outside_dependencies(registry_abc):
    plan = build_dag_from_units(registry_abc, ["C"]).get_execution_plan()

    assert [s.unit_ids for s in plan.stages] == [("C",)]
    assert plan.dependencies["C"] == ()


def test_build_dag_rejects_cycle():
    registry = Registry()
    registry.register(WorkUnitManifest("A", "core", "Alpha", ("B",)))
    registry.register(WorkUnitManifest("B", "core", "Beta", ("A",)))

    with pytest.raises(CircularDependencyError):
        build_dag(registry, ["A", "B"])


def test_optimize_splits_wide_stage():
    dag = DAG()
    for unit_id in "ABCDEFG":
        dag.add_node(unit_id)
    dag.add_node("Z", list("ABCDEFG"))

    plan = optimize_execution_plan(dag.get_execution_plan(), max_parallel=3)

    assert [(s.stage, s.sub_stage, s.unit_ids) for s in plan.stages] == [
        (0, 0, ("A", "B", "C")),
        (0, 1, ("D", "E", "F")),
        (0, 2, ("G",)),
        (1, 0, ("Z",)),
    ]
    assert not plan.stages[2].parallelizable
    assert plan.unit_ids() == list("ABCDEFGZ")


def test_optimize_rejects_non_positive_limit(registry_abc):
    plan = build_dag(registry_abc, ["A", "B", "C"]).get_execution_plan()
    with pytest.raises(ValidationError):
        optimize_execution_plan(plan, max_parallel=0)


def test_transitive_dependencies_and_restrict():
    plan = _diamond().get_execution_plan()

    assert plan.transitive_dependencies("D") == ["B", "C", "A"]
    assert plan.transitive_dependencies("A") == []

    narrowed = plan.restrict(["D", "B"])
    assert [(s.stage, s.unit_ids) for s in narrowed.stages] == [(1, ("B",)), (2, ("D",))]
    assert narrowed.dependencies == plan.dependencies


def test_summary_and_exports():
    dag = _diamond()
    dag.calculate_stages()
    summary = dag.summary()

    assert summary.roots == ["A"]
    assert summary.leaves == ["D"]
    assert summary.max_depth == 2

    dot = dag.to_dot()
    assert dot.startswith("digraph workflow {")
    assert '"A" -> "B";' in dot

    data = dag.to_dict()
    assert {"from": "B", "to": "D"} in data["edges"]
    assert len(data["nodes"]) == 4

    text = dag.get_execution_plan().level_graph()
    assert "Stage 1: [B] [C] (2 parallel units)" in text
