"""Domain services for GPU allocation governance.

Services implement core workflows:
- InventoryReconciler: devices + schemes -> allocatable units
- PartitionSchemeManager: drain -> reconfigure -> verify transitions
- HardwareProfileRegistry: profile validation and resolution
- CapacityAccountant: per-device memory reservations
- AdmissionController: quota-aware fair-share admission queue
"""

from gpu_governance.domain.services.admission_controller import (
    AdmissionController,
    AdmissionSettings,
)
from gpu_governance.domain.services.capacity_accountant import (
    CapacityAccountant,
    CapacityDecision,
)
from gpu_governance.domain.services.device_locks import DeviceLockTable
from gpu_governance.domain.services.inventory_reconciler import (
    InventoryReconciler,
    UnitSetChanged,
)
from gpu_governance.domain.services.partition_manager import (
    PartitionSchemeManager,
    TransitionSettings,
)
from gpu_governance.domain.services.profile_registry import (
    HardwareProfileRegistry,
    ProfileValidation,
)

__all__ = [
    "AdmissionController",
    "AdmissionSettings",
    "CapacityAccountant",
    "CapacityDecision",
    "DeviceLockTable",
    "InventoryReconciler",
    "UnitSetChanged",
    "PartitionSchemeManager",
    "TransitionSettings",
    "HardwareProfileRegistry",
    "ProfileValidation",
]
