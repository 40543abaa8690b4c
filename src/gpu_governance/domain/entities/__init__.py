"""Domain entities for GPU allocation governance.

Entities represent core business objects with identity and lifecycle:
- GPUDevice: Physical GPU with health
- PartitionScheme / DevicePartitionState: How a device is carved up
- AllocatableUnit: Schedulable slice derived from a device
- HardwareProfile: User-facing allocation template
- Quota: Per-team unit budget
- WorkloadRequest: Request for units of a profile
"""

from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
from gpu_governance.domain.entities.gpu_device import DeviceHealth, GPUDevice
from gpu_governance.domain.entities.partition import (
    DevicePartitionState,
    PartitionMode,
    PartitionPhase,
    PartitionScheme,
)
from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.entities.quota import Quota
from gpu_governance.domain.entities.workload import (
    AdmissionDecision,
    AdmissionOutcome,
    RequestState,
    WorkloadRequest,
)

__all__ = [
    # Device
    "GPUDevice",
    "DeviceHealth",
    # Partitioning
    "PartitionMode",
    "PartitionPhase",
    "PartitionScheme",
    "DevicePartitionState",
    # Units
    "AllocatableUnit",
    # Configuration state
    "HardwareProfile",
    "Quota",
    # Workloads
    "WorkloadRequest",
    "RequestState",
    "AdmissionDecision",
    "AdmissionOutcome",
]
