"""Per-device memory accounting.

Prevents silent overcommit of GPU memory:
1. Isolated units (MIG slices, whole devices): exact reservation up to the
   unit's fixed share. Asking for more is a programming error.
2. Shared units (time-sliced replicas): advisory reservation against a
   per-device safety ceiling of total memory minus headroom. Exceeding it
   is a normal, transient rejection.

All reserve/release calls for a device run under that device's lock.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
from gpu_governance.domain.errors import AccountingError
from gpu_governance.domain.services.device_locks import DeviceLockTable
from gpu_governance.domain.value_objects.identifiers import DeviceId, RequestId, UnitId

logger = logging.getLogger(__name__)


@dataclass
class CapacityDecision:
    """Result of a reservation attempt."""
    ok: bool
    reason: str = ""


@dataclass
class DeviceLedger:
    """Reservations on one device."""
    device_id: DeviceId
    total_memory_mb: int
    shared_ceiling_mb: int
    shared: dict[tuple[UnitId, RequestId], int] = field(default_factory=dict)
    isolated: dict[UnitId, tuple[RequestId, int]] = field(default_factory=dict)

    @property
    def reserved_shared_mb(self) -> int:
        return sum(self.shared.values())

    @property
    def reserved_isolated_mb(self) -> int:
        return sum(mb for _, mb in self.isolated.values())

    @property
    def reserved_mb(self) -> int:
        return self.reserved_shared_mb + self.reserved_isolated_mb


class CapacityAccountant:
    """Tracks reserved memory per device."""

    def __init__(
        self,
        locks: Optional[DeviceLockTable] = None,
        headroom_mb: int = 1024,
        headroom_fraction: float = 0.0,
    ) -> None:
        """Initialize the accountant.

        Args:
            locks: Shared per-device lock table.
            headroom_mb: Memory left unreserved on shared devices.
            headroom_fraction: Same, as a fraction of device memory.
                The larger of the two applies.
        """
        self._locks = locks or DeviceLockTable()
        self._headroom_mb = headroom_mb
        self._headroom_fraction = headroom_fraction
        self._ledgers: dict[DeviceId, DeviceLedger] = {}

    def headroom_for(self, total_memory_mb: int) -> int:
        return max(self._headroom_mb, int(total_memory_mb * self._headroom_fraction))

    def register_device(self, device_id: DeviceId, total_memory_mb: int) -> None:
        """Create or resize a device's ledger, keeping existing reservations."""
        with self._locks.hold(device_id):
            ceiling = max(0, total_memory_mb - self.headroom_for(total_memory_mb))
            ledger = self._ledgers.get(device_id)
            if ledger is None:
                self._ledgers[device_id] = DeviceLedger(device_id, total_memory_mb, ceiling)
            else:
                ledger.total_memory_mb = total_memory_mb
                ledger.shared_ceiling_mb = ceiling

    def withdraw_device(self, device_id: DeviceId) -> None:
        """Forget a device that left the inventory."""
        with self._locks.hold(device_id):
            ledger = self._ledgers.pop(device_id, None)
            if ledger and ledger.reserved_mb:
                logger.warning(
                    f"Device {device_id} withdrawn with {ledger.reserved_mb} MB still reserved"
                )

    def reserve(self, unit: AllocatableUnit, memory_mb: int, holder: RequestId) -> CapacityDecision:
        """Reserve memory on a unit for a request.

        Args:
            unit: Unit the request will run on.
            memory_mb: Memory the request may use on that unit.
            holder: Request taking the reservation.

        Returns:
            CapacityDecision; ok=False means InsufficientCapacity.

        Raises:
            AccountingError: If an isolated unit is asked for more than
                its fixed share, or the amount is not positive.
        """
        if memory_mb <= 0:
            raise AccountingError(f"Reservation must be positive, got {memory_mb} MB")

        with self._locks.hold(unit.device_id):
            ledger = self._ledgers.get(unit.device_id)
            if ledger is None:
                return CapacityDecision(False, f"Device {unit.device_id} has no capacity ledger")

            if unit.kind.is_isolated:
                if memory_mb > unit.memory_share_mb:
                    raise AccountingError(
                        f"Unit {unit.unit_id} has a fixed share of {unit.memory_share_mb} MB, "
                        f"cannot reserve {memory_mb} MB"
                    )
                existing = ledger.isolated.get(unit.unit_id)
                if existing is not None and existing[0] != holder:
                    return CapacityDecision(False, f"Unit {unit.unit_id} already reserved by {existing[0]}")
                ledger.isolated[unit.unit_id] = (holder, memory_mb)
                return CapacityDecision(True)

            key = (unit.unit_id, holder)
            current = ledger.reserved_shared_mb - ledger.shared.get(key, 0)
            if current + memory_mb > ledger.shared_ceiling_mb:
                return CapacityDecision(
                    False,
                    f"Device {unit.device_id} shared ceiling {ledger.shared_ceiling_mb} MB "
                    f"would be exceeded ({current} MB reserved, {memory_mb} MB requested)",
                )
            ledger.shared[key] = memory_mb
            return CapacityDecision(True)

    def release(self, unit: AllocatableUnit, holder: RequestId) -> int:
        """Release a request's reservation on a unit.

        Returns:
            Memory released in MB (0 if nothing was reserved).
        """
        with self._locks.hold(unit.device_id):
            ledger = self._ledgers.get(unit.device_id)
            if ledger is None:
                return 0
            if unit.kind.is_isolated:
                existing = ledger.isolated.get(unit.unit_id)
                if existing is None or existing[0] != holder:
                    return 0
                del ledger.isolated[unit.unit_id]
                return existing[1]
            return ledger.shared.pop((unit.unit_id, holder), 0)

    def reserved_mb(self, device_id: DeviceId) -> int:
        with self._locks.hold(device_id):
            ledger = self._ledgers.get(device_id)
            return ledger.reserved_mb if ledger else 0

    def ceiling_mb(self, device_id: DeviceId) -> int:
        """Shared-unit safety ceiling of a device."""
        with self._locks.hold(device_id):
            ledger = self._ledgers.get(device_id)
            return ledger.shared_ceiling_mb if ledger else 0

    def unit_reservation_mb(self, unit: AllocatableUnit) -> int:
        """Memory currently reserved on one unit."""
        with self._locks.hold(unit.device_id):
            ledger = self._ledgers.get(unit.device_id)
            if ledger is None:
                return 0
            if unit.kind.is_isolated:
                existing = ledger.isolated.get(unit.unit_id)
                return existing[1] if existing else 0
            return sum(mb for (uid, _), mb in ledger.shared.items() if uid == unit.unit_id)

    def snapshot(self) -> dict[str, dict[str, int]]:
        """Per-device totals for status reporting."""
        result = {}
        for device_id in list(self._ledgers):
            with self._locks.hold(device_id):
                ledger = self._ledgers.get(device_id)
                if ledger is None:
                    continue
                result[device_id] = {
                    "total_memory_mb": ledger.total_memory_mb,
                    "shared_ceiling_mb": ledger.shared_ceiling_mb,
                    "reserved_shared_mb": ledger.reserved_shared_mb,
                    "reserved_isolated_mb": ledger.reserved_isolated_mb,
                }
        return result
