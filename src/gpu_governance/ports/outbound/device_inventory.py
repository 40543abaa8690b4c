"""Device inventory port: presence and health of physical GPUs."""

from __future__ import annotations

from abc import abstractmethod
from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from gpu_governance.domain.entities.gpu_device import GPUDevice


class DeviceInventoryPort(Protocol):
    """Protocol for the device telemetry collaborator (poll style)."""

    @abstractmethod
    def list_devices(self) -> list[GPUDevice]:
        """Devices currently present, with memory size and health."""
        ...
