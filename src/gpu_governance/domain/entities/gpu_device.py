"""GPU device entities representing physical GPU hardware.

Devices are reported by the device inventory feed and identified by
(node, index). Their health decides whether units derived from them can
be consumed.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from gpu_governance.domain.value_objects.identifiers import (
    DeviceId,
    NodeName,
    create_device_id,
)
from gpu_governance.domain.value_objects.mig_profiles import family_for_memory

# Ampere and newer support MIG
MIG_MIN_COMPUTE_MAJOR = 8


class DeviceHealth(Enum):
    """Device health as reported by the telemetry layer."""
    HEALTHY = "healthy"           # Fully usable
    DEGRADED = "degraded"         # Keeps running workloads, takes no new ones
    UNREACHABLE = "unreachable"   # Units withdrawn immediately


@dataclass
class GPUDevice:
    """Physical GPU device."""
    node: NodeName
    index: int
    total_memory_mb: int
    compute_capability: str = "8.0"   # e.g., "8.0" (A100), "9.0" (H100)
    model: str = ""
    health: DeviceHealth = DeviceHealth.HEALTHY

    @property
    def device_id(self) -> DeviceId:
        return create_device_id(self.node, self.index)

    @property
    def compute_major(self) -> int:
        try:
            return int(self.compute_capability.split(".")[0])
        except ValueError:
            return 0

    @property
    def mig_family(self) -> Optional[int]:
        """Nominal MIG family size, or None if the device cannot run MIG."""
        if self.compute_major < MIG_MIN_COMPUTE_MAJOR:
            return None
        return family_for_memory(self.total_memory_mb)

    @property
    def supports_mig(self) -> bool:
        return self.mig_family is not None

    @property
    def is_reachable(self) -> bool:
        return self.health != DeviceHealth.UNREACHABLE

    @property
    def is_schedulable(self) -> bool:
        """Check if new consumption may land on this device."""
        return self.health == DeviceHealth.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "node": self.node,
            "index": self.index,
            "total_memory_mb": self.total_memory_mb,
            "compute_capability": self.compute_capability,
            "model": self.model,
            "health": self.health.value,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GPUDevice:
        return cls(
            node=NodeName(data["node"]),
            index=int(data["index"]),
            total_memory_mb=int(data["total_memory_mb"]),
            compute_capability=data.get("compute_capability", "8.0"),
            model=data.get("model", ""),
            health=DeviceHealth(data.get("health", DeviceHealth.HEALTHY.value)),
        )
