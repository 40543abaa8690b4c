"""Partition schemes and the per-device transition state.

A PartitionScheme says how one device is carved into allocatable units.
DevicePartitionState records where that device is in the
drain -> reconfigure -> verify state machine, and is what gets persisted
so a restart resumes from the last durable phase.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional

from gpu_governance.domain.errors import ValidationError
from gpu_governance.domain.value_objects.identifiers import DeviceId
from gpu_governance.domain.value_objects.mig_profiles import MigLayoutError, place_slices
from gpu_governance.domain.value_objects.unit_types import (
    SHARED_SLOT,
    WHOLE_DEVICE,
    UnitType,
    mig_unit_type,
)

if TYPE_CHECKING:
    from gpu_governance.domain.entities.gpu_device import GPUDevice


class PartitionMode(Enum):
    """Partitioning strategy applied to a device."""
    UNPARTITIONED = "unpartitioned"
    TIME_SLICED = "time_sliced"
    MIG = "mig"


@dataclass(frozen=True)
class PartitionScheme:
    """Partitioning mode applied to one device."""
    mode: PartitionMode = PartitionMode.UNPARTITIONED
    replicas: int = 1                  # TIME_SLICED only
    slices: tuple[str, ...] = ()       # MIG only, slice profile names

    @classmethod
    def unpartitioned(cls) -> PartitionScheme:
        return cls(PartitionMode.UNPARTITIONED)

    @classmethod
    def time_sliced(cls, replicas: int) -> PartitionScheme:
        return cls(PartitionMode.TIME_SLICED, replicas=replicas)

    @classmethod
    def mig(cls, slices: Iterable[str]) -> PartitionScheme:
        return cls(PartitionMode.MIG, slices=tuple(slices))

    def expected_unit_count(self) -> int:
        if self.mode is PartitionMode.TIME_SLICED:
            return self.replicas
        if self.mode is PartitionMode.MIG:
            return len(self.slices)
        return 1

    def expected_shape(self) -> Counter[UnitType]:
        """Unit types (with multiplicity) this scheme should yield."""
        if self.mode is PartitionMode.TIME_SLICED:
            return Counter({SHARED_SLOT: self.replicas})
        if self.mode is PartitionMode.MIG:
            return Counter(mig_unit_type(name) for name in self.slices)
        return Counter({WHOLE_DEVICE: 1})

    def validate_for(self, device: GPUDevice, max_replicas: int = 64) -> None:
        """Check the scheme can be realized on a device.

        Raises:
            ValidationError: If the scheme is malformed or the device
                cannot host it.
        """
        if self.mode is PartitionMode.TIME_SLICED:
            if self.replicas < 1:
                raise ValidationError(f"Time-slicing needs at least 1 replica, got {self.replicas}")
            if self.replicas > max_replicas:
                raise ValidationError(f"Time-slicing allows at most {max_replicas} replicas, got {self.replicas}")
            if self.slices:
                raise ValidationError("Time-sliced scheme cannot declare MIG slices")
        elif self.mode is PartitionMode.MIG:
            family = device.mig_family
            if family is None:
                raise ValidationError(
                    f"Device {device.device_id} ({device.model or 'unknown model'}, "
                    f"CC {device.compute_capability}, {device.total_memory_mb} MB) does not support MIG"
                )
            try:
                place_slices(self.slices, family)
            except MigLayoutError as e:
                raise ValidationError(str(e)) from e
        elif self.replicas != 1 or self.slices:
            raise ValidationError("Unpartitioned scheme takes no replicas or slices")

    def to_dict(self) -> dict[str, Any]:
        return {"mode": self.mode.value, "replicas": self.replicas, "slices": list(self.slices)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PartitionScheme:
        return cls(
            mode=PartitionMode(data["mode"]),
            replicas=int(data.get("replicas", 1)),
            slices=tuple(data.get("slices", ())),
        )

    def __str__(self) -> str:
        if self.mode is PartitionMode.TIME_SLICED:
            return f"TimeSliced{{{self.replicas}}}"
        if self.mode is PartitionMode.MIG:
            counts = Counter(self.slices)
            return "MIG{" + ", ".join(f"{n}x{name}" for name, n in counts.items()) + "}"
        return "Unpartitioned"


class PartitionPhase(Enum):
    """Transition state machine phases."""
    ACTIVE = "active"                     # Running current scheme
    DRAIN_REQUESTED = "drain_requested"   # New consumption blocked, node cordoned
    DRAINING = "draining"                 # Waiting for last in-use unit to free
    RECONFIGURING = "reconfiguring"       # Declaration sent to the driver layer
    VERIFYING = "verifying"               # Reading back realized units
    FAILED = "failed"                     # Needs an operator

    @property
    def blocks_consumption(self) -> bool:
        return self is not PartitionPhase.ACTIVE


@dataclass
class DevicePartitionState:
    """Durable per-device transition record."""
    device_id: DeviceId
    current: PartitionScheme = field(default_factory=PartitionScheme.unpartitioned)
    phase: PartitionPhase = PartitionPhase.ACTIVE
    target: Optional[PartitionScheme] = None        # Scheme being transitioned to
    pending: Optional[PartitionScheme] = None       # Declared while reconfiguring
    generation: int = 0
    phase_entered_at: float = 0.0
    drain_started_at: Optional[float] = None
    verify_attempts: int = 0
    next_verify_at: Optional[float] = None
    evictions_issued: bool = False
    failure_reason: str = ""
    version: int = 0
    sync_error: str = ""                            # Last device report that could not be applied; not persisted

    @property
    def is_transitioning(self) -> bool:
        return self.phase not in (PartitionPhase.ACTIVE, PartitionPhase.FAILED)

    @property
    def desired(self) -> PartitionScheme:
        """Scheme the device should end up with."""
        return self.pending or self.target or self.current

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_id": self.device_id,
            "current": self.current.to_dict(),
            "phase": self.phase.value,
            "target": self.target.to_dict() if self.target else None,
            "pending": self.pending.to_dict() if self.pending else None,
            "generation": self.generation,
            "phase_entered_at": self.phase_entered_at,
            "drain_started_at": self.drain_started_at,
            "verify_attempts": self.verify_attempts,
            "next_verify_at": self.next_verify_at,
            "evictions_issued": self.evictions_issued,
            "failure_reason": self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], version: int = 0) -> DevicePartitionState:
        return cls(
            device_id=DeviceId(data["device_id"]),
            current=PartitionScheme.from_dict(data["current"]),
            phase=PartitionPhase(data["phase"]),
            target=PartitionScheme.from_dict(data["target"]) if data.get("target") else None,
            pending=PartitionScheme.from_dict(data["pending"]) if data.get("pending") else None,
            generation=int(data.get("generation", 0)),
            phase_entered_at=float(data.get("phase_entered_at", 0.0)),
            drain_started_at=data.get("drain_started_at"),
            verify_attempts=int(data.get("verify_attempts", 0)),
            next_verify_at=data.get("next_verify_at"),
            evictions_issued=bool(data.get("evictions_issued", False)),
            failure_reason=data.get("failure_reason", ""),
            version=version,
        )
