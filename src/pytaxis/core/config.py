"""Configuration for the orchestrator and the refinement loop.

All configuration is plain dataclasses passed explicitly to the objects
that need it. ``OrchestratorConfig.from_env()`` layers environment
overrides on top of the defaults for deployments that configure through
the process environment.

Environment variables (default prefix ``TAXIS_``):
    TAXIS_MAX_CONCURRENCY            Units run concurrently within a stage
    TAXIS_MAX_REFINEMENT_ITERATIONS  Refinement passes after the first run
    TAXIS_LOCK_TTL_MS                Lease length of a unit lock
    TAXIS_LOCK_RETRIES               Extra lock acquisition attempts
    TAXIS_LOCK_RETRY_DELAY_MS        Delay between lock attempts
    TAXIS_UNIT_TIMEOUT_MS            Per-unit timeout (unset = none)
    TAXIS_QUALITY_THRESHOLD          Global quality threshold (0-1)
    TAXIS_REFINEMENT_ENABLED         "true"/"false"
"""

from __future__ import annotations

import dataclasses
import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from pytaxis.errors import ValidationError
from pytaxis.models.retry import RetryPolicy

DEFAULT_DIMENSION_TARGETS: Mapping[str, tuple[str, ...]] = {
    "design": ("COLOR_PALETTE", "TYPOGRAPHY", "LAYOUT_STRUCTURE"),
    "content": ("HERO_COPY", "FEATURE_COPY", "CTA_COPY"),
    "code": ("CODE_GENERATOR", "COMPONENT_GENERATOR"),
    "seo": ("SEO_METADATA",),
}
"""Starting dimension→unit table.

Known to be partial: dimensions missing here produce no refinement
targets. Deployments should pass their own table.
"""


@dataclass
class RefinementConfig:
    """Settings of the quality-driven refinement loop."""

    enabled: bool = True
    max_iterations: int = 3
    quality_threshold: float = 0.8
    dimension_thresholds: dict[str, float] = field(default_factory=dict)
    dimension_targets: Mapping[str, tuple[str, ...]] = field(
        default_factory=lambda: dict(DEFAULT_DIMENSION_TARGETS)
    )

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ValidationError(f"max_iterations must be >= 0, got {self.max_iterations}")
        if not 0.0 <= self.quality_threshold <= 1.0:
            raise ValidationError(
                f"quality_threshold must be within [0, 1], got {self.quality_threshold}"
            )

    def threshold_for(self, dimension: str) -> float:
        return self.dimension_thresholds.get(dimension, self.quality_threshold)


@dataclass(frozen=True)
class OrchestratorConfig:
    """Settings of the orchestrator and the execution engines it creates."""

    max_concurrency: int = 5
    max_refinement_iterations: int = 3
    lock_ttl_ms: int = 300_000
    lock_retries: int = 0
    lock_retry_delay_ms: int = 100
    unit_timeout_ms: int | None = None
    retry_policy: RetryPolicy = RetryPolicy.NONE
    skip_dependents_of_failed: bool = True
    refinement: RefinementConfig = field(default_factory=RefinementConfig)

    def __post_init__(self) -> None:
        if self.max_concurrency < 1:
            raise ValidationError(f"max_concurrency must be >= 1, got {self.max_concurrency}")
        if self.max_refinement_iterations < 0:
            raise ValidationError("max_refinement_iterations must be >= 0")
        if self.lock_retries < 0:
            raise ValidationError("lock_retries must be >= 0")

    @classmethod
    def from_env(
        cls, prefix: str = "TAXIS_", environ: Mapping[str, str] | None = None
    ) -> OrchestratorConfig:
        """
        Build a config from defaults overridden by environment variables.

        Args:
            prefix: Variable name prefix
            environ: Mapping to read instead of ``os.environ``

        Raises:
            ValidationError: If a variable holds a malformed value
        """
        env = os.environ if environ is None else environ

        def read(name: str, parse):
            raw = env.get(prefix + name)
            if raw is None or raw == "":
                return None
            try:
                return parse(raw)
            except ValueError as e:
                raise ValidationError(f"Invalid value for {prefix}{name}: {raw!r}") from e

        overrides = {}
        for name, attr in (
            ("MAX_CONCURRENCY", "max_concurrency"),
            ("MAX_REFINEMENT_ITERATIONS", "max_refinement_iterations"),
            ("LOCK_TTL_MS", "lock_ttl_ms"),
            ("LOCK_RETRIES", "lock_retries"),
            ("LOCK_RETRY_DELAY_MS", "lock_retry_delay_ms"),
            ("UNIT_TIMEOUT_MS", "unit_timeout_ms"),
        ):
            value = read(name, int)
            if value is not None:
                overrides[attr] = value

        refinement = RefinementConfig()
        threshold = read("QUALITY_THRESHOLD", float)
        if threshold is not None:
            refinement = dataclasses.replace(refinement, quality_threshold=threshold)
        enabled = read("REFINEMENT_ENABLED", _parse_bool)
        if enabled is not None:
            refinement = dataclasses.replace(refinement, enabled=enabled)
        if "max_refinement_iterations" in overrides:
            refinement = dataclasses.replace(
                refinement, max_iterations=overrides["max_refinement_iterations"]
            )

        return cls(refinement=refinement, **overrides)


def _parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise ValueError(raw)
