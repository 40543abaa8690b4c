"""Per-team quotas."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from gpu_governance.domain.errors import ValidationError
from gpu_governance.domain.value_objects.identifiers import TeamId


@dataclass
class Quota:
    """Unit budget of one team."""
    team: TeamId
    nominal_units: int              # Guaranteed share
    borrowing_limit: int = 0        # Extra units the team may borrow while idle
    priority_weight: float = 1.0    # Multiplies request priority in the queue
    version: int = 0

    @property
    def ceiling_units(self) -> int:
        return self.nominal_units + self.borrowing_limit

    def validate(self) -> None:
        """Raises ValidationError on a malformed quota."""
        if not self.team:
            raise ValidationError("Quota needs a team")
        if self.nominal_units < 0:
            raise ValidationError(f"nominal_units must be >= 0, got {self.nominal_units}")
        if self.borrowing_limit < 0:
            raise ValidationError(f"borrowing_limit must be >= 0, got {self.borrowing_limit}")
        if self.priority_weight <= 0:
            raise ValidationError(f"priority_weight must be > 0, got {self.priority_weight}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "team": self.team,
            "nominal_units": self.nominal_units,
            "borrowing_limit": self.borrowing_limit,
            "priority_weight": self.priority_weight,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], version: int = 0) -> Quota:
        return cls(
            team=TeamId(data["team"]),
            nominal_units=int(data["nominal_units"]),
            borrowing_limit=int(data.get("borrowing_limit", 0)),
            priority_weight=float(data.get("priority_weight", 1.0)),
            version=version,
        )
