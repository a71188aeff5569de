"""Per-unit execution context.

Provides UnitContext (identity and trace ids for one unit execution) and
ContextBuilder, which stamps fresh ids for every unit of a workflow run.

Design: Task-Local State (contextvars)
    While a unit executor runs, the engine publishes its UnitContext in a
    ContextVar so executor code can call ``current_context()`` instead of
    threading the context through every call. Each asyncio task sees its
    own value, so units running concurrently never observe each other's
    context.
"""

from __future__ import annotations

import dataclasses
from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import Any

from uuid_extensions import uuid7

from pytaxis.errors import ValidationError


def new_id(prefix: str) -> str:
    """Generate a time-ordered identifier such as ``unit_0190...``."""
    return f"{prefix}_{uuid7()}"


@dataclass(frozen=True)
class UnitContext:
    """Identity of one unit execution.

    ``execution_id`` is the lock key: two executions sharing it can never
    run at the same time.
    """

    tenant_id: str
    project_id: str
    workflow_id: str
    unit_id: str
    execution_id: str
    trace_id: str
    span_id: str
    parent_span_id: str | None = None
    user_id: str | None = None
    iteration: int = 0
    config: dict[str, Any] = field(default_factory=dict)


@dataclass
class BaseContextConfig:
    """Workflow-wide fields shared by every unit context of a run."""

    tenant_id: str
    project_id: str
    workflow_id: str
    trace_id: str
    user_id: str | None = None
    iteration: int = 0


CURRENT_CONTEXT: ContextVar[UnitContext | None] = ContextVar("pytaxis_unit_context", default=None)
"""Task-local UnitContext of the unit currently executing.

Usage:
    ```python
    token = CURRENT_CONTEXT.set(ctx)
    try:
        await executor.execute(ctx.unit_id, input)
    finally:
        CURRENT_CONTEXT.reset(token)
    ```
"""


def current_context() -> UnitContext | None:
    """Return the context of the unit executing in this task, if any."""
    return CURRENT_CONTEXT.get()


class ContextBuilder:
    """
    Builds UnitContext values for the units of one workflow run.

    Every call to ``build`` mints a new execution id and span id, so each
    attempt of each unit is individually lockable and traceable.

    Usage:
        builder = ContextBuilder(BaseContextConfig(
            tenant_id="t1", project_id="p1",
            workflow_id="workflow_123", trace_id="trace_456",
        ))
        ctx = builder.build("HERO_COPY")
    """

    def __init__(self, base_config: BaseContextConfig):
        self._base = base_config
        self._dependencies: dict[str, Any] = {}

    @property
    def base_config(self) -> BaseContextConfig:
        return dataclasses.replace(self._base)

    def update_base_config(self, **updates: Any) -> None:
        """Replace fields of the shared base config (e.g. ``iteration``)."""
        self._base = dataclasses.replace(self._base, **updates)

    def register_dependency(self, key: str, value: Any) -> None:
        """Inject ``value`` under ``key`` into the config of every built context."""
        self._dependencies[key] = value

    def get_dependency(self, key: str) -> Any:
        return self._dependencies.get(key)

    def build(self, unit_id: str, parent_span_id: str | None = None) -> UnitContext:
        """Build a fresh context for one execution of ``unit_id``."""
        config = {"tenant_id": self._base.tenant_id, "project_id": self._base.project_id}
        config.update(self._dependencies)
        return UnitContext(
            tenant_id=self._base.tenant_id,
            project_id=self._base.project_id,
            workflow_id=self._base.workflow_id,
            unit_id=unit_id,
            execution_id=new_id("unit"),
            trace_id=self._base.trace_id,
            span_id=new_id("span"),
            parent_span_id=parent_span_id,
            user_id=self._base.user_id,
            iteration=self._base.iteration,
            config=config,
        )

    def build_many(
        self, unit_ids: list[str], parent_span_id: str | None = None
    ) -> dict[str, UnitContext]:
        return {unit_id: self.build(unit_id, parent_span_id) for unit_id in unit_ids}

    def build_with_overrides(
        self, unit_id: str, parent_span_id: str | None = None, **overrides: Any
    ) -> UnitContext:
        return dataclasses.replace(self.build(unit_id, parent_span_id), **overrides)

    def __call__(self, unit_id: str) -> UnitContext:
        return self.build(unit_id)


def clone_context(ctx: UnitContext, **overrides: Any) -> UnitContext:
    """Copy a context with a new execution id and span id (used for retries)."""
    fields: dict[str, Any] = {"execution_id": new_id("unit"), "span_id": new_id("span")}
    fields.update(overrides)
    return dataclasses.replace(ctx, **fields)


def validate_context(ctx: UnitContext) -> list[str]:
    """Return a list of missing required fields (empty if valid)."""
    errors = []
    for name in ("tenant_id", "project_id", "workflow_id", "execution_id", "trace_id", "span_id"):
        if not getattr(ctx, name):
            errors.append(f"{name} is required")
    return errors


def build_standalone_context(
    tenant_id: str, project_id: str, unit_id: str, user_id: str | None = None
) -> UnitContext:
    """Build a context for a one-off unit execution outside any workflow.

    Raises:
        ValidationError: If tenant_id or project_id is empty
    """
    builder = ContextBuilder(
        BaseContextConfig(
            tenant_id=tenant_id,
            project_id=project_id,
            workflow_id=new_id("standalone"),
            trace_id=new_id("trace"),
            user_id=user_id,
        )
    )
    ctx = builder.build(unit_id)
    errors = validate_context(ctx)
    if errors:
        raise ValidationError(f"Invalid standalone context: {', '.join(errors)}")
    return ctx
