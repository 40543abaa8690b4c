"""Hardware profiles: user-facing allocation templates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from gpu_governance.domain.value_objects.identifiers import ProfileId, TeamId
from gpu_governance.domain.value_objects.unit_types import UnitType, parse_unit_type


@dataclass
class HardwareProfile:
    """Allocation template users request units through.

    Invariants:
        1 <= min_count <= default_count <= max_count
        memory_limit_mb <= per-unit memory share of the targeted unit type
    """
    identifier: ProfileId
    memory_limit_mb: int                 # Memory ceiling per unit
    default_count: int = 1
    min_count: int = 1
    max_count: int = 1
    compute_limit_percent: int = 100     # Compute ceiling per unit
    display_name: str = ""
    queue: Optional[TeamId] = None       # Only this team may use the profile
    version: int = 0

    @property
    def unit_type(self) -> Optional[UnitType]:
        return parse_unit_type(self.identifier)

    def structural_problems(self) -> list[str]:
        """Problems detectable without looking at inventory."""
        problems = []
        if self.unit_type is None:
            problems.append(f"Unknown profile identifier {self.identifier!r}")
        if self.min_count < 1:
            problems.append(f"min_count must be at least 1, got {self.min_count}")
        if not self.min_count <= self.default_count <= self.max_count:
            problems.append(
                f"Counts must satisfy min <= default <= max, got "
                f"{self.min_count} <= {self.default_count} <= {self.max_count}"
            )
        if self.memory_limit_mb <= 0:
            problems.append(f"memory_limit_mb must be positive, got {self.memory_limit_mb}")
        if not 1 <= self.compute_limit_percent <= 100:
            problems.append(
                f"compute_limit_percent must be within 1..100, got {self.compute_limit_percent}"
            )
        return problems

    def to_dict(self) -> dict[str, Any]:
        return {
            "identifier": self.identifier,
            "display_name": self.display_name,
            "default_count": self.default_count,
            "min_count": self.min_count,
            "max_count": self.max_count,
            "memory_limit_mb": self.memory_limit_mb,
            "compute_limit_percent": self.compute_limit_percent,
            "queue": self.queue,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], version: int = 0) -> HardwareProfile:
        return cls(
            identifier=ProfileId(data["identifier"]),
            display_name=data.get("display_name", ""),
            default_count=int(data.get("default_count", 1)),
            min_count=int(data.get("min_count", 1)),
            max_count=int(data.get("max_count", 1)),
            memory_limit_mb=int(data["memory_limit_mb"]),
            compute_limit_percent=int(data.get("compute_limit_percent", 100)),
            queue=TeamId(data["queue"]) if data.get("queue") else None,
            version=version,
        )
