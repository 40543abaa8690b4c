"""Device inventory backed by the NVIDIA Management Library (NVML).

Reports the GPUs of the local node with their memory size, compute
capability and a coarse health verdict:
- HEALTHY: device answers NVML queries and has no uncorrectable ECC errors
- DEGRADED: uncorrectable ECC errors since the last driver reload
- UNREACHABLE: NVML queries against the device fail
"""

from __future__ import annotations

import logging

import pynvml

from gpu_governance.domain.entities.gpu_device import DeviceHealth, GPUDevice
from gpu_governance.domain.value_objects.identifiers import NodeName

logger = logging.getLogger(__name__)


class DeviceInventoryError(Exception):
    """Device inventory could not be read."""
    pass


class NvmlDeviceInventory:
    """Poll-style inventory of the GPUs on one node.

    In dev mode no NVML call is made and a fixed set of simulated A100
    devices is reported, for development and testing without hardware.
    """

    def __init__(
        self,
        node: str,
        dev_mode: bool = False,
        dev_device_count: int = 2,
        dev_memory_mb: int = 40960,
    ) -> None:
        """Initialize NVML or dev mode.

        Args:
            node: Node name devices are reported under.
            dev_mode: Report simulated devices instead of querying NVML.
            dev_device_count: Number of simulated devices.
            dev_memory_mb: Memory of each simulated device.

        Raises:
            DeviceInventoryError: If NVML cannot be initialized.
        """
        self._node = NodeName(node)
        self._dev_mode = dev_mode
        self._dev_device_count = dev_device_count
        self._dev_memory_mb = dev_memory_mb
        self._dev_health: dict[int, DeviceHealth] = {}

        if dev_mode:
            logger.info("Device inventory running in DEVELOPMENT MODE (simulated)")
            return

        try:
            pynvml.nvmlInit()
            logger.info("NVML initialized successfully")
        except pynvml.NVMLError as e:
            raise DeviceInventoryError(f"Failed to initialize NVML: {e}") from e

    @property
    def dev_mode(self) -> bool:
        return self._dev_mode

    def list_devices(self) -> list[GPUDevice]:
        """Devices currently present on the node.

        Raises:
            DeviceInventoryError: If the device count cannot be read.
        """
        if self._dev_mode:
            return self._simulated_devices()

        try:
            count = pynvml.nvmlDeviceGetCount()
        except pynvml.NVMLError as e:
            raise DeviceInventoryError(f"Failed to count devices: {e}") from e

        devices = []
        for index in range(count):
            devices.append(self._read_device(index))
        return devices

    def _read_device(self, index: int) -> GPUDevice:
        try:
            handle = pynvml.nvmlDeviceGetHandleByIndex(index)
            name = pynvml.nvmlDeviceGetName(handle)
            model = name.decode('utf-8') if isinstance(name, bytes) else name
            cc_major, cc_minor = pynvml.nvmlDeviceGetCudaComputeCapability(handle)
            memory_mb = pynvml.nvmlDeviceGetMemoryInfo(handle).total // (1024 * 1024)
        except pynvml.NVMLError as e:
            logger.warning(f"GPU {index} on {self._node} unreachable: {e}")
            return GPUDevice(
                node=self._node,
                index=index,
                total_memory_mb=0,
                health=DeviceHealth.UNREACHABLE,
            )

        return GPUDevice(
            node=self._node,
            index=index,
            total_memory_mb=memory_mb,
            compute_capability=f"{cc_major}.{cc_minor}",
            model=model,
            health=self._read_health(handle, index),
        )

    def _read_health(self, handle, index: int) -> DeviceHealth:
        try:
            uncorrectable = pynvml.nvmlDeviceGetTotalEccErrors(
                handle,
                pynvml.NVML_MEMORY_ERROR_TYPE_UNCORRECTED,
                pynvml.NVML_VOLATILE_ECC,
            )
        except pynvml.NVMLError_NotSupported:
            # Consumer boards have no ECC
            return DeviceHealth.HEALTHY
        except pynvml.NVMLError as e:
            logger.warning(f"GPU {index} health query failed: {e}")
            return DeviceHealth.UNREACHABLE

        if uncorrectable > 0:
            logger.warning(f"GPU {index} has {uncorrectable} uncorrectable ECC errors")
            return DeviceHealth.DEGRADED
        return DeviceHealth.HEALTHY

    def _simulated_devices(self) -> list[GPUDevice]:
        return [
            GPUDevice(
                node=self._node,
                index=i,
                total_memory_mb=self._dev_memory_mb,
                compute_capability="8.0",
                model="A100 (simulated)",
                health=self._dev_health.get(i, DeviceHealth.HEALTHY),
            )
            for i in range(self._dev_device_count)
        ]

    def set_simulated_health(self, index: int, health: DeviceHealth) -> None:
        """Change the health a simulated device reports (dev mode only)."""
        if not self._dev_mode:
            raise DeviceInventoryError("Simulated health is only available in dev mode")
        self._dev_health[index] = health

    def shutdown(self) -> None:
        if self._dev_mode:
            return
        try:
            pynvml.nvmlShutdown()
        except pynvml.NVMLError as e:
            logger.warning(f"NVML shutdown failed: {e}")
