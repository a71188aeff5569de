"""Quality scores, aggregated metrics and refinement decisions.

QualityScore values are produced by an external evaluation subsystem and
read back through the execution store. Metrics and decisions are derived
per refinement check and never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from pytaxis.errors import ValidationError


@dataclass(frozen=True)
class QualityScore:
    """One evaluation of one unit along one quality dimension."""

    unit_id: str
    dimension: str
    score: float
    max_score: float = 100.0
    execution_id: str | None = None
    feedback: str | None = None

    def __post_init__(self) -> None:
        if self.max_score <= 0:
            raise ValidationError(
                f"QualityScore for {self.unit_id}/{self.dimension}: max_score must be positive"
            )

    @property
    def normalized(self) -> float:
        return self.score / self.max_score


@dataclass(frozen=True)
class DimensionResult:
    """Aggregated value of one dimension, with the threshold it was held to."""

    dimension: str
    score: float
    threshold: float


@dataclass
class QualityMetrics:
    """Aggregated quality metrics for one refinement check."""

    overall_score: float = 0.0
    dimension_scores: dict[str, float] = field(default_factory=dict)
    failed_dimensions: list[DimensionResult] = field(default_factory=list)
    passed_dimensions: list[DimensionResult] = field(default_factory=list)
    total_evaluations: int = 0


@dataclass
class RefinementDecision:
    """Outcome of one refinement check at an iteration boundary."""

    should_refine: bool
    reason: str
    target_unit_ids: list[str] = field(default_factory=list)
    iteration: int = 0
    metrics: QualityMetrics = field(default_factory=QualityMetrics)
