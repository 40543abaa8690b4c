"""Allocatable unit kinds and the profile identifier grammar.

Profile identifiers name the unit type they target:
    gpu            -> whole, unpartitioned device
    shared-gpu     -> time-sliced shared slot
    mig-<slice>    -> hardware-isolated MIG slice (e.g., mig-1g.5gb)
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from gpu_governance.domain.value_objects.mig_profiles import known_slice_names

WHOLE_DEVICE_IDENTIFIER = "gpu"
SHARED_SLOT_IDENTIFIER = "shared-gpu"
MIG_IDENTIFIER_PREFIX = "mig-"


class UnitKind(Enum):
    """What a unit gives its holder."""
    WHOLE_DEVICE = "whole_device"       # Exclusive unpartitioned GPU
    SHARED_SLOT = "shared_slot"         # Time-sliced replica, memory not isolated
    ISOLATED_SLICE = "isolated_slice"   # MIG slice, memory hardware-enforced

    @property
    def is_isolated(self) -> bool:
        """Whether reservations against this kind are exact."""
        return self is not UnitKind.SHARED_SLOT


@dataclass(frozen=True)
class UnitType:
    """Unit kind plus, for MIG, the slice shape."""
    kind: UnitKind
    slice_profile: Optional[str] = None

    @property
    def identifier(self) -> str:
        """Profile identifier that targets this unit type."""
        if self.kind is UnitKind.WHOLE_DEVICE:
            return WHOLE_DEVICE_IDENTIFIER
        if self.kind is UnitKind.SHARED_SLOT:
            return SHARED_SLOT_IDENTIFIER
        return f"{MIG_IDENTIFIER_PREFIX}{self.slice_profile}"

    @property
    def resource_name(self) -> str:
        """Extended resource name advertised to the orchestrator."""
        if self.kind is UnitKind.WHOLE_DEVICE:
            return "nvidia.com/gpu"
        if self.kind is UnitKind.SHARED_SLOT:
            return "nvidia.com/gpu.shared"
        return f"nvidia.com/mig-{self.slice_profile}"

    def __str__(self) -> str:
        return self.identifier


WHOLE_DEVICE = UnitType(UnitKind.WHOLE_DEVICE)
SHARED_SLOT = UnitType(UnitKind.SHARED_SLOT)


def mig_unit_type(slice_profile: str) -> UnitType:
    return UnitType(UnitKind.ISOLATED_SLICE, slice_profile)


def parse_unit_type(identifier: str) -> Optional[UnitType]:
    """Resolve a profile identifier to the unit type it targets.

    Returns:
        The unit type, or None when the identifier names nothing the
        inventory can ever produce.
    """
    if identifier == WHOLE_DEVICE_IDENTIFIER:
        return WHOLE_DEVICE
    if identifier == SHARED_SLOT_IDENTIFIER:
        return SHARED_SLOT
    if identifier.startswith(MIG_IDENTIFIER_PREFIX):
        slice_profile = identifier[len(MIG_IDENTIFIER_PREFIX):]
        if slice_profile in known_slice_names():
            return mig_unit_type(slice_profile)
    return None
