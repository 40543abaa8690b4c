"""Allocatable units derived from a device under its current scheme."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from gpu_governance.domain.value_objects.identifiers import DeviceId, RequestId, UnitId
from gpu_governance.domain.value_objects.mig_profiles import SlicePlacement
from gpu_governance.domain.value_objects.unit_types import UnitKind, UnitType


@dataclass
class AllocatableUnit:
    """Schedulable slice of a device.

    Units belong to exactly one scheme generation of their device; a scheme
    change replaces the whole set.
    """
    unit_id: UnitId
    unit_type: UnitType
    device_id: DeviceId
    generation: int
    ordinal: int
    memory_share_mb: int            # Shared: whole device. Isolated: fixed slice size
    placement: Optional[SlicePlacement] = None
    in_use: bool = False
    holder: Optional[RequestId] = None
    available: bool = True          # False while withdrawn, blocked or degraded

    @property
    def kind(self) -> UnitKind:
        return self.unit_type.kind

    @property
    def is_free(self) -> bool:
        """Check if the unit can be handed to a new request."""
        return self.available and not self.in_use

    @property
    def identity(self) -> tuple:
        """Fields that define the unit independent of usage."""
        return (self.unit_id, self.unit_type, self.memory_share_mb, self.placement)
