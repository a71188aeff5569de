"""
Work-unit registry.

Catalog of work-unit manifests: registration, dependency lookups,
topological ordering and grouping of mutually independent units.

Design: Explicit instance, no global
    A Registry is constructed once at process start and passed to the
    orchestrator and DAG builders. Tests build a fresh one per case.

Optionally, each unit can be registered with an async handler; the
registry then satisfies the unit-executor contract itself:

    ```python
    registry = Registry()
    registry.register(WorkUnitManifest("A", "core", "Alpha"), handler=run_alpha)
    result = await registry.execute("A", {"topic": "bakery"})
    ```
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from pytaxis.core.manifest import WorkUnitManifest
from pytaxis.errors import CircularDependencyError, ExecutionError

logger = logging.getLogger(__name__)

UnitHandler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class RegistryEntry:
    """A registered manifest and its optional handler."""

    manifest: WorkUnitManifest
    handler: UnitHandler | None = None

    @property
    def id(self) -> str:
        return self.manifest.id

    @property
    def layer(self) -> str:
        return self.manifest.layer


@dataclass(frozen=True)
class RegistryStats:
    total: int
    by_layer: dict[str, int]
    with_dependencies: int


class Registry:
    """Catalog of work units keyed by id."""

    def __init__(self) -> None:
        self._entries: dict[str, RegistryEntry] = {}

    def __repr__(self) -> str:
        return f"Registry({len(self._entries)} units)"

    def __contains__(self, unit_id: str) -> bool:
        return unit_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    # ========================================================================
    # Registration
    # ========================================================================

    def register(self, manifest: WorkUnitManifest, handler: UnitHandler | None = None) -> None:
        """
        Register a work unit.

        Registering an id twice overwrites the earlier manifest (last write
        wins) and logs a warning.

        Raises:
            ValidationError: If id, layer or name is empty
        """
        manifest.validate()

        if manifest.id in self._entries:
            logger.warning(
                f"Work unit {manifest.id} is already registered. "
                "Overwriting previous registration."
            )

        self._entries[manifest.id] = RegistryEntry(manifest=manifest, handler=handler)
        logger.debug(f"Registered work unit: {manifest.id} ({manifest.layer})")

    def register_many(self, manifests: Iterable[WorkUnitManifest]) -> None:
        for manifest in manifests:
            self.register(manifest)

    def clear(self) -> None:
        self._entries.clear()

    # ========================================================================
    # Lookup
    # ========================================================================

    def get(self, unit_id: str) -> RegistryEntry | None:
        return self._entries.get(unit_id)

    def get_manifest(self, unit_id: str) -> WorkUnitManifest | None:
        entry = self._entries.get(unit_id)
        return entry.manifest if entry else None

    def has(self, unit_id: str) -> bool:
        return unit_id in self._entries

    def entries(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    def by_layer(self, layer: str) -> list[RegistryEntry]:
        return [entry for entry in self._entries.values() if entry.layer == layer]

    def unit_ids(self) -> list[str]:
        return list(self._entries)

    def count(self) -> int:
        return len(self._entries)

    # ========================================================================
    # Dependencies
    # ========================================================================

    def get_dependencies(self, unit_id: str) -> list[str]:
        """Declared dependencies of a unit, or ``[]`` if the unit is unknown."""
        entry = self._entries.get(unit_id)
        return list(entry.manifest.dependencies) if entry else []

    def has_dependencies(self, unit_id: str) -> bool:
        return bool(self.get_dependencies(unit_id))

    def validate_dependencies(self, unit_id: str) -> list[str]:
        """Return the declared dependencies of ``unit_id`` that are not registered."""
        return [dep for dep in self.get_dependencies(unit_id) if dep not in self._entries]

    def get_execution_order(self, unit_ids: list[str]) -> list[str]:
        """
        Linearize ``unit_ids`` so every unit follows its dependencies.

        Depth-first: each unit's dependencies (restricted to ``unit_ids``)
        are emitted before the unit, and each id appears exactly once.
        Uses an explicit stack, so deep chains don't hit the recursion limit.
        """
        wanted = set(unit_ids)
        visited: set[str] = set()
        order: list[str] = []

        for root in unit_ids:
            if root in visited:
                continue
            visited.add(root)
            stack: list[tuple[str, Iterable[str]]] = [(root, iter(self._deps_within(root, wanted)))]
            while stack:
                unit_id, deps = stack[-1]
                for dep in deps:
                    if dep not in visited:
                        visited.add(dep)
                        stack.append((dep, iter(self._deps_within(dep, wanted))))
                        break
                else:
                    stack.pop()
                    order.append(unit_id)

        return order

    def get_parallel_groups(self, unit_ids: list[str]) -> list[list[str]]:
        """
        Group ``unit_ids`` into successive sets of mutually independent units.

        Each pass extracts the remaining units whose dependencies are not
        themselves remaining.

        Raises:
            CircularDependencyError: If a pass extracts nothing
        """
        groups: list[list[str]] = []
        remaining = list(dict.fromkeys(unit_ids))

        while remaining:
            pending = set(remaining)
            group = [
                unit_id
                for unit_id in remaining
                if not any(dep in pending and dep != unit_id for dep in self.get_dependencies(unit_id))
            ]

            if not group:
                raise CircularDependencyError(remaining)

            groups.append(group)
            extracted = set(group)
            remaining = [unit_id for unit_id in remaining if unit_id not in extracted]

        return groups

    def _deps_within(self, unit_id: str, wanted: set[str]) -> list[str]:
        return [dep for dep in self.get_dependencies(unit_id) if dep in wanted]

    # ========================================================================
    # Unit execution
    # ========================================================================

    async def execute(self, unit_id: str, input: Any) -> Any:
        """
        Run the handler registered for ``unit_id``.

        Raises:
            ExecutionError: If the unit is unknown or has no handler
        """
        entry = self._entries.get(unit_id)
        if entry is None:
            raise ExecutionError(f"Work unit not found in registry: {unit_id}", unit_id)
        if entry.handler is None:
            raise ExecutionError(f"Work unit {unit_id} has no handler", unit_id)
        return await entry.handler(input)

    # ========================================================================
    # Introspection
    # ========================================================================

    def stats(self) -> RegistryStats:
        by_layer: dict[str, int] = {}
        with_dependencies = 0
        for entry in self._entries.values():
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            if entry.manifest.dependencies:
                with_dependencies += 1
        return RegistryStats(
            total=len(self._entries), by_layer=by_layer, with_dependencies=with_dependencies
        )

    def to_dicts(self) -> list[dict[str, Any]]:
        return [entry.manifest.to_dict() for entry in self._entries.values()]
