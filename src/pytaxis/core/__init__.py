"""Core types: manifests, unit contexts and configuration."""

from pytaxis.core.config import DEFAULT_DIMENSION_TARGETS, OrchestratorConfig, RefinementConfig
from pytaxis.core.context import (
    CURRENT_CONTEXT,
    BaseContextConfig,
    ContextBuilder,
    UnitContext,
    build_standalone_context,
    clone_context,
    current_context,
    new_id,
    validate_context,
)
from pytaxis.core.manifest import WorkUnitManifest

__all__ = [
    "CURRENT_CONTEXT",
    "DEFAULT_DIMENSION_TARGETS",
    "BaseContextConfig",
    "ContextBuilder",
    "OrchestratorConfig",
    "RefinementConfig",
    "UnitContext",
    "WorkUnitManifest",
    "build_standalone_context",
    "clone_context",
    "current_context",
    "new_id",
    "validate_context",
]
