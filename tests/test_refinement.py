"""Tests for quality metrics and refinement decisions."""

import pytest

from pytaxis.core import RefinementConfig
from pytaxis.errors import ValidationError
from pytaxis.executor import (
    RefinementEngine,
    format_quality_metrics,
    quality_feedback,
    should_refine_unit,
)
from pytaxis.models import QualityScore, RefinementDecision
from pytaxis.storage import InMemoryExecutionStore

WORKFLOW = "workflow_q"


@pytest.fixture
def store():
    return InMemoryExecutionStore()


async def _record(store, *scores):
    for unit_id, dimension, score in scores:
        await store.record_quality_evaluation(WORKFLOW, QualityScore(unit_id, dimension, score))


def test_metrics_average_per_dimension_then_overall(store):
    engine = RefinementEngine(store, RefinementConfig(quality_threshold=0.8))
    metrics = engine.calculate_metrics(
        [
            QualityScore("HERO_COPY", "content", 60),
            QualityScore("CTA_COPY", "content", 80),
            QualityScore("TYPOGRAPHY", "design", 9, max_score=10),
        ]
    )

    assert metrics.dimension_scores == pytest.approx({"content": 0.7, "design": 0.9})
    assert metrics.overall_score == pytest.approx(0.8)
    assert metrics.total_evaluations == 3
    assert [d.dimension for d in metrics.failed_dimensions] == ["content"]
    assert [d.dimension for d in metrics.passed_dimensions] == ["design"]


def test_metrics_of_nothing(store):
    metrics = RefinementEngine(store).calculate_metrics([])
    assert metrics.overall_score == 0.0
    assert metrics.dimension_scores == {}


def test_per_dimension_thresholds_override_global(store):
    config = RefinementConfig(quality_threshold=0.5, dimension_thresholds={"seo": 0.95})
    metrics = RefinementEngine(store, config).calculate_metrics(
        [QualityScore("SEO_METADATA", "seo", 90), QualityScore("HERO_COPY", "content", 60)]
    )

    failed = {d.dimension: d.threshold for d in metrics.failed_dimensions}
    assert failed == {"seo": 0.95}


def test_score_must_have_positive_max():
    with pytest.raises(ValidationError):
        QualityScore("A", "content", 1, max_score=0)


def test_config_validation():
    with pytest.raises(ValidationError):
        RefinementConfig(quality_threshold=1.5)
    with pytest.raises(ValidationError):
        RefinementConfig(max_iterations=-1)


def test_targets_are_case_insensitive_and_deduplicated(store):
    config = RefinementConfig(
        dimension_targets={"Content": ("HERO_COPY", "CTA_COPY"), "tone": ("HERO_COPY",)}
    )
    engine = RefinementEngine(store, config)
    metrics = engine.calculate_metrics(
        [QualityScore("HERO_COPY", "CONTENT", 10), QualityScore("HERO_COPY", "Tone", 10)]
    )

    assert engine.identify_targets(metrics) == ["HERO_COPY", "CTA_COPY"]
    assert engine.identify_targets(metrics, available_units=["CTA_COPY"]) == ["CTA_COPY"]


# ==============================================================================
# Decision chain
# ==============================================================================


@pytest.mark.asyncio
async def test_disabled(store):
    engine = RefinementEngine(store, RefinementConfig(enabled=False))
    decision = await engine.decide_refinement(WORKFLOW)

    assert not decision.should_refine
    assert decision.reason == "Refinement is disabled"


@pytest.mark.asyncio
async def test_max_iterations_checked_before_evaluations(store):
    engine = RefinementEngine(store, RefinementConfig(max_iterations=1))
    engine.increment_iteration()

    decision = await engine.decide_refinement(WORKFLOW)

    assert not decision.should_refine
    assert decision.reason == "Max iterations (1) reached"
    assert decision.iteration == 1


@pytest.mark.asyncio
async def test_no_evaluations(store):
    decision = await RefinementEngine(store).decide_refinement(WORKFLOW)

    assert decision.reason == "No quality evaluations found"


@pytest.mark.asyncio
async def test_threshold_met(store):
    await _record(store, ("HERO_COPY", "content", 90), ("TYPOGRAPHY", "design", 80))
    decision = await RefinementEngine(store).decide_refinement(WORKFLOW)

    assert not decision.should_refine
    assert decision.reason == "Quality threshold met (0.85 >= 0.8)"
    assert decision.metrics.overall_score == pytest.approx(0.85)


@pytest.mark.asyncio
async def test_no_mapped_units(store):
    await _record(store, ("X", "accessibility", 10))
    decision = await RefinementEngine(store).decide_refinement(WORKFLOW)

    assert not decision.should_refine
    assert decision.reason == "No units identified for refinement"


@pytest.mark.asyncio
async def test_refine_below_threshold(store):
    await _record(store, ("HERO_COPY", "content", 50), ("TYPOGRAPHY", "design", 95))
    engine = RefinementEngine(store)

    decision = await engine.decide_refinement(
        WORKFLOW, available_units=["HERO_COPY", "CTA_COPY", "TYPOGRAPHY"]
    )

    assert decision.should_refine
    assert decision.reason.startswith("Quality below threshold")
    assert decision.target_unit_ids == ["HERO_COPY", "CTA_COPY"]
    assert should_refine_unit("CTA_COPY", decision)
    assert not should_refine_unit("TYPOGRAPHY", decision)


def test_iteration_counter(store):
    engine = RefinementEngine(store)

    assert engine.increment_iteration() == 1
    assert engine.increment_iteration() == 2
    assert engine.current_iteration == 2
    engine.reset_iteration()
    assert engine.current_iteration == 0


def test_config_copy_is_detached(store):
    engine = RefinementEngine(store)
    engine.update_config(quality_threshold=0.6)

    copy = engine.config
    copy.quality_threshold = 0.1

    assert engine.config.quality_threshold == 0.6


# ==============================================================================
# Formatting
# ==============================================================================


def test_feedback_lists_failed_dimensions(store):
    engine = RefinementEngine(store)
    metrics = engine.calculate_metrics(
        [QualityScore("HERO_COPY", "content", 60), QualityScore("TYPOGRAPHY", "design", 90)]
    )

    assert quality_feedback(metrics) == (
        "Quality Score: 75.0%\n"
        "\n"
        "Areas for Improvement:\n"
        "- content: 60.0% (target: 80.0%)"
    )


def test_feedback_without_failures(store):
    metrics = RefinementEngine(store).calculate_metrics(
        [QualityScore("HERO_COPY", "content", 90)]
    )
    assert quality_feedback(metrics).endswith("- None identified")


def test_format_quality_metrics(store):
    metrics = RefinementEngine(store).calculate_metrics(
        [QualityScore("HERO_COPY", "content", 50)]
    )
    text = format_quality_metrics(metrics)

    assert "Overall Quality: 50.0%" in text
    assert "Total Evaluations: 1" in text
    assert "  content: 50.0% < 80.0%" in text


def test_should_refine_unit_respects_decision_flag():
    decision = RefinementDecision(should_refine=False, reason="", target_unit_ids=["A"])
    assert not should_refine_unit("A", decision)
