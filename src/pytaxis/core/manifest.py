"""Work-unit manifests.

A manifest identifies one class of schedulable work and declares what it
depends on. Manifests are immutable once built.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pytaxis.errors import ValidationError


@dataclass(frozen=True)
class WorkUnitManifest:
    """
    Declaration of a schedulable work unit.

    Attributes:
        id: Unique unit identifier (e.g. ``"HERO_COPY"``)
        layer: Grouping the unit belongs to (e.g. ``"content"``)
        name: Human-readable name
        dependencies: Ids of units whose outputs this unit consumes
        description: Optional free-form description
    """

    id: str
    layer: str
    name: str
    dependencies: tuple[str, ...] = field(default_factory=tuple)
    description: str = ""

    def __post_init__(self) -> None:
        # Accept any iterable for dependencies but store a tuple
        if not isinstance(self.dependencies, tuple):
            object.__setattr__(self, "dependencies", tuple(self.dependencies))

    def validate(self) -> None:
        """
        Check required fields.

        Raises:
            ValidationError: If id, layer or name is empty, or the unit depends on itself
        """
        if not self.id:
            raise ValidationError("Work unit manifest must have an id")
        if not self.layer:
            raise ValidationError(f"Work unit manifest {self.id!r} must have a layer")
        if not self.name:
            raise ValidationError(f"Work unit manifest {self.id!r} must have a name")
        if self.id in self.dependencies:
            raise ValidationError(f"Work unit {self.id!r} cannot depend on itself")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "layer": self.layer,
            "name": self.name,
            "description": self.description,
            "dependencies": list(self.dependencies),
        }
