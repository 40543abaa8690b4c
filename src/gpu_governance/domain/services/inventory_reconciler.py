"""Inventory reconciliation: devices + schemes -> allocatable units.

For every device the reconciler derives the unit set its active scheme
yields:
1. Unpartitioned: one whole-device unit owning all memory
2. TimeSliced{r}: r shared units, each seeing the whole device memory
   (oversubscription is bounded by the capacity accountant)
3. MIG{slices}: one isolated unit per slice, with the slice's fixed memory
   and a non-overlapping memory-slice placement

Reconciliation is idempotent: the same device/scheme input yields the same
unit ids and does not emit an event. Unit ids embed the scheme generation,
so units never outlive the scheme that produced them.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
from gpu_governance.domain.entities.gpu_device import GPUDevice
from gpu_governance.domain.entities.partition import PartitionMode, PartitionScheme
from gpu_governance.domain.errors import CapacityError, TransitionError, ValidationError
from gpu_governance.domain.services.capacity_accountant import CapacityAccountant
from gpu_governance.domain.services.device_locks import DeviceLockTable
from gpu_governance.domain.value_objects.identifiers import DeviceId, RequestId, UnitId, create_unit_id
from gpu_governance.domain.value_objects.mig_profiles import MigLayoutError, lookup_slice, place_slices
from gpu_governance.domain.value_objects.unit_types import (
    SHARED_SLOT,
    WHOLE_DEVICE,
    UnitType,
    mig_unit_type,
)

logger = logging.getLogger(__name__)


@dataclass
class UnitSetChanged:
    """Emitted whenever a device's units appear, vanish, free up or change availability."""
    device_id: DeviceId
    generation: int
    unit_ids: list[UnitId] = field(default_factory=list)
    available_count: int = 0
    reason: str = ""


class InventoryReconciler:
    """Owns the allocatable unit set of every device."""

    def __init__(
        self,
        accountant: CapacityAccountant,
        locks: Optional[DeviceLockTable] = None,
    ) -> None:
        """Initialize the reconciler.

        Args:
            accountant: Capacity ledger each device is registered with.
            locks: Shared per-device lock table.
        """
        self._accountant = accountant
        self._locks = locks or DeviceLockTable()
        self._units: dict[DeviceId, list[AllocatableUnit]] = {}
        self._index: dict[UnitId, AllocatableUnit] = {}
        self._generations: dict[DeviceId, int] = {}
        self._withdrawn: set[DeviceId] = set()   # Failed devices draining their last holders
        self._subscribers: list[Callable[[UnitSetChanged], None]] = []

    def subscribe(self, callback: Callable[[UnitSetChanged], None]) -> None:
        """Register a callback for unit-set changes."""
        self._subscribers.append(callback)

    def reconcile_device(
        self,
        device: GPUDevice,
        scheme: PartitionScheme,
        generation: int,
        *,
        blocked: bool = False,
        failed: bool = False,
    ) -> list[AllocatableUnit]:
        """Recompute a device's units from its current state.

        Args:
            device: Device as last reported.
            scheme: Scheme active on the device.
            generation: Scheme generation (bumped by every completed transition).
            blocked: A transition is pending; no new consumption.
            failed: Device is FAILED and reports no allocatable units.

        Returns:
            The device's units after reconciliation.

        Raises:
            TransitionError: If the unit set would change while units are in use.
            ValidationError: If the scheme cannot be realized on the device.
        """
        device_id = device.device_id
        available = device.is_schedulable and not blocked and not failed
        changed = False
        try:
            with self._locks.hold(device_id):
                # Availability first: it must hold even if re-derivation fails
                changed = self._set_available(device_id, available)

                existing = self._units.get(device_id, [])
                if failed:
                    desired: list[AllocatableUnit] = [u for u in existing if u.in_use]
                    if not desired:
                        self._withdrawn.discard(device_id)
                    else:
                        self._withdrawn.add(device_id)
                else:
                    self._withdrawn.discard(device_id)
                    desired = self._derive(device, scheme, generation)

                if [u.identity for u in existing] != [u.identity for u in desired]:
                    # Units that survive unchanged keep their object and holder
                    previous = {u.unit_id: u for u in existing}
                    merged = []
                    for unit in desired:
                        old = previous.get(unit.unit_id)
                        merged.append(old if old is not None and old.identity == unit.identity else unit)
                    kept = {id(u) for u in merged}
                    busy = [u.unit_id for u in existing if u.in_use and id(u) not in kept]
                    if busy:
                        raise TransitionError(
                            f"Cannot replace units of {device_id} while {len(busy)} are in use"
                        )
                    self._replace(device_id, merged)
                    self._set_available(device_id, available)
                    changed = True

                self._generations[device_id] = generation
                self._accountant.register_device(device_id, device.total_memory_mb)
                units = list(self._units.get(device_id, []))
        finally:
            if changed:
                self._emit(device_id, "reconciled")

        if changed:
            logger.info(
                f"Device {device_id} reconciled to {scheme} (gen {generation}): "
                f"{len(units)} units, available={available}"
            )
        return units

    def _set_available(self, device_id: DeviceId, available: bool) -> bool:
        changed = False
        for unit in self._units.get(device_id, []):
            if unit.available != available:
                unit.available = available
                changed = True
        return changed

    def _derive(self, device: GPUDevice, scheme: PartitionScheme, generation: int) -> list[AllocatableUnit]:
        device_id = device.device_id
        total = device.total_memory_mb

        if scheme.mode is PartitionMode.TIME_SLICED:
            return [
                self._make_unit(device_id, generation, SHARED_SLOT, "shared", i, total)
                for i in range(scheme.replicas)
            ]

        if scheme.mode is PartitionMode.MIG:
            family = device.mig_family
            if family is None:
                raise ValidationError(f"Device {device_id} does not support MIG")
            try:
                placements = place_slices(scheme.slices, family)
            except MigLayoutError as e:
                raise ValidationError(str(e)) from e
            units = []
            for i, placement in enumerate(placements):
                profile = lookup_slice(placement.profile, family)
                unit = self._make_unit(
                    device_id, generation, mig_unit_type(placement.profile),
                    f"mig-{placement.profile}", i, profile.memory_mb,
                )
                unit.placement = placement
                units.append(unit)
            return units

        return [self._make_unit(device_id, generation, WHOLE_DEVICE, "gpu", 0, total)]

    @staticmethod
    def _make_unit(
        device_id: DeviceId,
        generation: int,
        unit_type: UnitType,
        tag: str,
        ordinal: int,
        memory_mb: int,
    ) -> AllocatableUnit:
        return AllocatableUnit(
            unit_id=create_unit_id(device_id, generation, tag, ordinal),
            unit_type=unit_type,
            device_id=device_id,
            generation=generation,
            ordinal=ordinal,
            memory_share_mb=memory_mb,
        )

    def _replace(self, device_id: DeviceId, units: list[AllocatableUnit]) -> None:
        for old in self._units.get(device_id, []):
            self._index.pop(old.unit_id, None)
        self._units[device_id] = units
        for unit in units:
            self._index[unit.unit_id] = unit

    def remove_device(self, device_id: DeviceId) -> None:
        """Drop every unit of a device that left the inventory."""
        with self._locks.hold(device_id):
            units = self._units.pop(device_id, [])
            for unit in units:
                self._index.pop(unit.unit_id, None)
            self._generations.pop(device_id, None)
            self._withdrawn.discard(device_id)
            busy = [u.unit_id for u in units if u.in_use]
            if busy:
                logger.warning(f"Device {device_id} removed with {len(busy)} units in use")
            self._accountant.withdraw_device(device_id)
        if units:
            self._emit(device_id, "removed")

    def claim(self, unit_ids: Iterable[UnitId], holder: RequestId) -> None:
        """Mark units in use by a request, all or nothing.

        Raises:
            CapacityError: If any unit is unknown, unavailable or taken.
        """
        unit_ids = list(unit_ids)
        units = [self._index.get(uid) for uid in unit_ids]
        devices = {u.device_id for u in units if u is not None}
        with self._locks.hold_all(devices):
            for uid in unit_ids:
                unit = self._index.get(uid)
                if unit is None or not unit.is_free:
                    raise CapacityError(f"Unit {uid} is not free")
            for uid in unit_ids:
                unit = self._index[uid]
                unit.in_use = True
                unit.holder = holder

    def release(self, unit_ids: Iterable[UnitId], holder: RequestId) -> int:
        """Free units held by a request.

        Returns:
            Number of units released.
        """
        released_devices: set[DeviceId] = set()
        count = 0
        for uid in unit_ids:
            unit = self._index.get(uid)
            if unit is None:
                continue
            with self._locks.hold(unit.device_id):
                if unit.in_use and unit.holder == holder:
                    unit.in_use = False
                    unit.holder = None
                    count += 1
                    released_devices.add(unit.device_id)

        for device_id in released_devices:
            with self._locks.hold(device_id):
                if device_id in self._withdrawn and not any(
                    u.in_use for u in self._units.get(device_id, [])
                ):
                    self._replace(device_id, [])
                    self._withdrawn.discard(device_id)
            self._emit(device_id, "released")
        return count

    def units(
        self,
        device_id: Optional[DeviceId] = None,
        unit_type: Optional[UnitType] = None,
    ) -> list[AllocatableUnit]:
        """List units, optionally filtered by device and type."""
        if device_id is not None:
            candidates = list(self._units.get(device_id, []))
        else:
            candidates = [u for units in list(self._units.values()) for u in units]
        if unit_type is not None:
            candidates = [u for u in candidates if u.unit_type == unit_type]
        return candidates

    def allocatable_units(self, unit_type: Optional[UnitType] = None) -> list[AllocatableUnit]:
        """Units available for consumption (in use or not)."""
        return [u for u in self.units(unit_type=unit_type) if u.available]

    def free_units(self, unit_type: UnitType) -> list[AllocatableUnit]:
        return [u for u in self.units(unit_type=unit_type) if u.is_free]

    def get_unit(self, unit_id: UnitId) -> Optional[AllocatableUnit]:
        return self._index.get(unit_id)

    def generation(self, device_id: DeviceId) -> int:
        return self._generations.get(device_id, 0)

    def in_use_count(self, device_id: DeviceId) -> int:
        with self._locks.hold(device_id):
            return sum(1 for u in self._units.get(device_id, []) if u.in_use)

    def holders(self, device_id: DeviceId) -> set[RequestId]:
        """Requests holding units on a device."""
        with self._locks.hold(device_id):
            return {u.holder for u in self._units.get(device_id, []) if u.in_use and u.holder}

    def min_memory_share(self, unit_type: UnitType) -> Optional[int]:
        """Smallest per-unit memory share currently produced for a type."""
        shares = [u.memory_share_mb for u in self.units(unit_type=unit_type)]
        return min(shares) if shares else None

    def _emit(self, device_id: DeviceId, reason: str) -> None:
        units = self._units.get(device_id, [])
        event = UnitSetChanged(
            device_id=device_id,
            generation=self._generations.get(device_id, 0),
            unit_ids=[u.unit_id for u in units],
            available_count=sum(1 for u in units if u.is_free),
            reason=reason,
        )
        for callback in self._subscribers:
            callback(event)
