"""Quality-driven refinement decisions.

After each execution pass the orchestrator asks the RefinementEngine
whether to re-run part of the graph. The decision is a chain of checks,
first match wins:

1. Refinement disabled                      -> stop
2. Iteration budget exhausted               -> stop ("max iterations reached")
3. No quality evaluations recorded          -> stop
4. Overall score >= threshold               -> stop ("quality threshold met")
5. Failed dimensions map to no known units  -> stop
6. Otherwise                                -> refine the mapped units

Quality scores are written by an external evaluation subsystem; the
engine only reads them through the ExecutionStore.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from typing import Any

from pytaxis.core.config import RefinementConfig
from pytaxis.models import (
    DimensionResult,
    QualityMetrics,
    QualityScore,
    RefinementDecision,
    WorkflowExecutionResult,
)
from pytaxis.storage.base import ExecutionStore

logger = logging.getLogger(__name__)


class RefinementEngine:
    """
    Decides whether and what to refine, and owns the iteration counter.

    Usage:
        refinement = RefinementEngine(store, RefinementConfig(max_iterations=3))
        decision = await refinement.decide_refinement(workflow_id, result)
        if decision.should_refine:
            refinement.increment_iteration()
    """

    def __init__(self, store: ExecutionStore, config: RefinementConfig | None = None):
        self._store = store
        self._config = config or RefinementConfig()
        self._iteration = 0

    def __repr__(self) -> str:
        return (
            f"RefinementEngine(iteration={self._iteration}, "
            f"max_iterations={self._config.max_iterations})"
        )

    @property
    def config(self) -> RefinementConfig:
        return dataclasses.replace(self._config)

    def update_config(self, **updates: Any) -> None:
        self._config = dataclasses.replace(self._config, **updates)

    @property
    def current_iteration(self) -> int:
        return self._iteration

    def increment_iteration(self) -> int:
        self._iteration += 1
        return self._iteration

    def reset_iteration(self) -> None:
        self._iteration = 0

    # ========================================================================
    # Metrics
    # ========================================================================

    def calculate_metrics(self, evaluations: list[QualityScore]) -> QualityMetrics:
        """
        Aggregate scores per dimension.

        Each dimension's value is the mean of ``score / max_score`` over its
        evaluations; the overall score is the unweighted mean of the
        dimension values.
        """
        if not evaluations:
            return QualityMetrics()

        grouped: dict[str, list[float]] = {}
        for evaluation in evaluations:
            grouped.setdefault(evaluation.dimension, []).append(evaluation.normalized)

        dimension_scores = {dim: sum(values) / len(values) for dim, values in grouped.items()}
        overall = sum(dimension_scores.values()) / len(dimension_scores)

        failed: list[DimensionResult] = []
        passed: list[DimensionResult] = []
        for dimension, score in dimension_scores.items():
            threshold = self._config.threshold_for(dimension)
            entry = DimensionResult(dimension=dimension, score=score, threshold=threshold)
            (failed if score < threshold else passed).append(entry)

        return QualityMetrics(
            overall_score=overall,
            dimension_scores=dimension_scores,
            failed_dimensions=failed,
            passed_dimensions=passed,
            total_evaluations=len(evaluations),
        )

    def identify_targets(
        self, metrics: QualityMetrics, available_units: Iterable[str] | None = None
    ) -> list[str]:
        """
        Map failed dimensions to unit ids through ``dimension_targets``.

        Dimension names are matched case-insensitively. When
        ``available_units`` is given, units outside it are dropped.
        """
        table = {dim.lower(): units for dim, units in self._config.dimension_targets.items()}
        available = set(available_units) if available_units is not None else None

        targets: list[str] = []
        for failed in metrics.failed_dimensions:
            for unit_id in table.get(failed.dimension.lower(), ()):
                if available is not None and unit_id not in available:
                    continue
                if unit_id not in targets:
                    targets.append(unit_id)
        return targets

    # ========================================================================
    # Decision
    # ========================================================================

    async def decide_refinement(
        self,
        workflow_id: str,
        last_result: WorkflowExecutionResult | None = None,
        available_units: Iterable[str] | None = None,
    ) -> RefinementDecision:
        """Run the ordered checks and return the first matching decision."""
        config = self._config
        if not config.enabled:
            return self._stop("Refinement is disabled")

        if self._iteration >= config.max_iterations:
            return self._stop(f"Max iterations ({config.max_iterations}) reached")

        evaluations = await self._store.query_quality_evaluations(workflow_id)
        if not evaluations:
            return self._stop("No quality evaluations found")

        metrics = self.calculate_metrics(evaluations)
        if metrics.overall_score >= config.quality_threshold:
            return self._stop(
                f"Quality threshold met "
                f"({metrics.overall_score:.2f} >= {config.quality_threshold})",
                metrics,
            )

        targets = self.identify_targets(metrics, available_units)
        if not targets:
            return self._stop("No units identified for refinement", metrics)

        if last_result is not None and last_result.failed:
            logger.debug(
                f"Refining {workflow_id} after a pass with failures: {last_result.failed_unit_ids}"
            )

        return RefinementDecision(
            should_refine=True,
            reason=(
                f"Quality below threshold "
                f"({metrics.overall_score:.2f} < {config.quality_threshold})"
            ),
            target_unit_ids=targets,
            iteration=self._iteration,
            metrics=metrics,
        )

    def _stop(self, reason: str, metrics: QualityMetrics | None = None) -> RefinementDecision:
        return RefinementDecision(
            should_refine=False,
            reason=reason,
            iteration=self._iteration,
            metrics=metrics or QualityMetrics(),
        )


def quality_feedback(metrics: QualityMetrics) -> str:
    """Feedback text handed to refined units as part of their input."""
    lines = [
        f"Quality Score: {metrics.overall_score * 100:.1f}%",
        "",
        "Areas for Improvement:",
    ]
    for failed in metrics.failed_dimensions:
        lines.append(
            f"- {failed.dimension}: {failed.score * 100:.1f}% "
            f"(target: {failed.threshold * 100:.1f}%)"
        )
    if not metrics.failed_dimensions:
        lines.append("- None identified")
    return "\n".join(lines)


def format_quality_metrics(metrics: QualityMetrics) -> str:
    lines = [
        f"Overall Quality: {metrics.overall_score * 100:.1f}%",
        f"Total Evaluations: {metrics.total_evaluations}",
        "",
        "Dimension Scores:",
    ]
    for dimension, score in metrics.dimension_scores.items():
        lines.append(f"  {dimension}: {score * 100:.1f}%")

    if metrics.failed_dimensions:
        lines.append("")
        lines.append("Failed Dimensions:")
        for failed in metrics.failed_dimensions:
            lines.append(
                f"  {failed.dimension}: {failed.score * 100:.1f}% < {failed.threshold * 100:.1f}%"
            )
    return "\n".join(lines)


def should_refine_unit(unit_id: str, decision: RefinementDecision) -> bool:
    return decision.should_refine and unit_id in decision.target_unit_ids
