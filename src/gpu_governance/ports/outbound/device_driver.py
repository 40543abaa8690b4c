"""Device driver port for applying partition schemes.

The driver layer (e.g., a MIG manager or device plugin config) turns a
scheme declaration into real partitions and reports back what the device
actually exposes.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Optional, Protocol

from gpu_governance.domain.value_objects.identifiers import DeviceId
from gpu_governance.domain.value_objects.unit_types import UnitType

if TYPE_CHECKING:
    from gpu_governance.domain.entities.gpu_device import GPUDevice
    from gpu_governance.domain.entities.partition import PartitionScheme


class DeviceDriverError(Exception):
    """Driver failed to apply a scheme."""
    pass


class DeviceDriverPort(Protocol):
    """Protocol for the device driver collaborator."""

    @abstractmethod
    def apply_scheme(self, device: GPUDevice, scheme: PartitionScheme) -> None:
        """Declare a partition scheme for a device.

        Must be idempotent: applying the same scheme twice is harmless.

        Raises:
            DeviceDriverError: If the declaration was refused.
        """
        ...

    @abstractmethod
    def realized_units(self, device_id: DeviceId) -> list[UnitType]:
        """Unit types the device currently exposes, one entry per unit."""
        ...

    @abstractmethod
    def realized_scheme(self, device_id: DeviceId) -> Optional[PartitionScheme]:
        """Scheme the driver last applied to a device, if known."""
        ...
