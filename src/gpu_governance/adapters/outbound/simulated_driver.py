"""Simulated device driver with fault injection.

Applies partition schemes instantly in memory and reports the unit types
they yield. Tests can make the driver refuse a scheme, lag behind a
declaration for a number of read-backs, or report a wrong unit set.
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from gpu_governance.domain.entities.gpu_device import GPUDevice
from gpu_governance.domain.entities.partition import PartitionScheme
from gpu_governance.domain.value_objects.identifiers import DeviceId
from gpu_governance.domain.value_objects.unit_types import WHOLE_DEVICE, UnitType
from gpu_governance.ports.outbound.device_driver import DeviceDriverError

logger = logging.getLogger(__name__)


class SimulatedDeviceDriver:
    """Mock implementation of DeviceDriverPort.

    Example:
        driver = SimulatedDeviceDriver()
        driver.lag_realization("node-a/GPU-0", reads=2)
        driver.apply_scheme(device, PartitionScheme.time_sliced(4))
        driver.realized_units("node-a/GPU-0")   # old units for two reads
    """

    def __init__(self) -> None:
        self._schemes: dict[DeviceId, PartitionScheme] = {}
        self._realized: dict[DeviceId, list[UnitType]] = {}
        self._apply_counts: dict[DeviceId, int] = {}
        self._apply_failures: dict[DeviceId, str] = {}
        self._lag: dict[DeviceId, int] = {}
        self._overrides: dict[DeviceId, list[UnitType]] = {}
        self._lock = threading.Lock()

    def apply_scheme(self, device: GPUDevice, scheme: PartitionScheme) -> None:
        """Apply a scheme; idempotent for repeated declarations.

        Raises:
            DeviceDriverError: If a failure was injected for the device.
        """
        device_id = device.device_id
        with self._lock:
            reason = self._apply_failures.pop(device_id, None)
            if reason is not None:
                raise DeviceDriverError(reason)
            self._apply_counts[device_id] = self._apply_counts.get(device_id, 0) + 1
            if self._schemes.get(device_id) == scheme and device_id in self._realized:
                return
            self._schemes[device_id] = scheme
            if self._lag.get(device_id, 0) == 0:
                self._realized[device_id] = list(scheme.expected_shape().elements())
        logger.info(f"Driver applied {scheme} to {device_id}")

    def realized_units(self, device_id: DeviceId) -> list[UnitType]:
        with self._lock:
            override = self._overrides.get(device_id)
            if override is not None:
                return list(override)
            current = list(self._realized.get(device_id, [WHOLE_DEVICE]))
            lag = self._lag.get(device_id, 0)
            if lag > 0:
                self._lag[device_id] = lag - 1
                if lag == 1 and device_id in self._schemes:
                    # Next read sees the declared scheme
                    self._realized[device_id] = list(self._schemes[device_id].expected_shape().elements())
            return current

    def realized_scheme(self, device_id: DeviceId) -> Optional[PartitionScheme]:
        with self._lock:
            return self._schemes.get(device_id)

    # Fault injection

    def fail_next_apply(self, device_id: DeviceId, reason: str = "driver refused declaration") -> None:
        """Make the next apply_scheme for a device raise DeviceDriverError."""
        with self._lock:
            self._apply_failures[device_id] = reason

    def lag_realization(self, device_id: DeviceId, reads: int) -> None:
        """Keep reporting the previous units for the next `reads` read-backs."""
        with self._lock:
            self._lag[device_id] = reads

    def override_realized(self, device_id: DeviceId, units: Optional[list[UnitType]]) -> None:
        """Report a fixed unit set regardless of the applied scheme (None clears)."""
        with self._lock:
            if units is None:
                self._overrides.pop(device_id, None)
            else:
                self._overrides[device_id] = list(units)

    def apply_count(self, device_id: DeviceId) -> int:
        return self._apply_counts.get(device_id, 0)
