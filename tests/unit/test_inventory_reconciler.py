"""Unit tests for inventory reconciliation."""

import pytest

from gpu_governance.domain.entities.gpu_device import DeviceHealth
from gpu_governance.domain.entities.partition import PartitionScheme
from gpu_governance.domain.errors import CapacityError, TransitionError, ValidationError
from gpu_governance.domain.services.capacity_accountant import CapacityAccountant
from gpu_governance.domain.services.device_locks import DeviceLockTable
from gpu_governance.domain.services.inventory_reconciler import InventoryReconciler
from gpu_governance.domain.value_objects.identifiers import RequestId
from gpu_governance.domain.value_objects.unit_types import SHARED_SLOT, WHOLE_DEVICE, mig_unit_type


@pytest.fixture
def events() -> list:
    return []


@pytest.fixture
def reconciler(events) -> InventoryReconciler:
    locks = DeviceLockTable()
    reconciler = InventoryReconciler(CapacityAccountant(locks), locks)
    reconciler.subscribe(events.append)
    return reconciler


@pytest.mark.unit
class TestUnitDerivation:
    """Test units derived from each scheme."""

    def test_unpartitioned(self, reconciler, make_device):
        units = reconciler.reconcile_device(make_device(), PartitionScheme.unpartitioned(), 0)
        assert len(units) == 1
        assert units[0].unit_type == WHOLE_DEVICE
        assert units[0].memory_share_mb == 40960
        assert units[0].unit_id == "node-a/GPU-0/g0/gpu-0"

    def test_time_sliced_units_see_whole_memory(self, reconciler, make_device):
        units = reconciler.reconcile_device(make_device(), PartitionScheme.time_sliced(4), 1)
        assert len(units) == 4
        assert all(u.unit_type == SHARED_SLOT for u in units)
        assert all(u.memory_share_mb == 40960 for u in units)
        assert len({u.unit_id for u in units}) == 4

    def test_mig_units_have_fixed_share_and_placement(self, reconciler, make_device):
        scheme = PartitionScheme.mig(["3g.20gb", "2g.10gb", "1g.5gb", "1g.5gb"])
        units = reconciler.reconcile_device(make_device(), scheme, 1)
        assert [u.unit_type for u in units] == [
            mig_unit_type("3g.20gb"),
            mig_unit_type("2g.10gb"),
            mig_unit_type("1g.5gb"),
            mig_unit_type("1g.5gb"),
        ]
        assert [u.memory_share_mb for u in units] == [19968, 9856, 4864, 4864]
        placements = [u.placement for u in units]
        for i, a in enumerate(placements):
            for b in placements[i + 1:]:
                assert not a.overlaps(b)

    def test_mig_on_unsupported_device(self, reconciler, make_device):
        with pytest.raises(ValidationError):
            reconciler.reconcile_device(
                make_device(compute_capability="7.0", memory_mb=32768),
                PartitionScheme.mig(["1g.5gb"]),
                1,
            )


@pytest.mark.unit
class TestReconciliation:
    """Test idempotency, availability and replacement rules."""

    def test_idempotent(self, reconciler, make_device, events):
        """Test the same input yields the same units and a single event."""
        device = make_device()
        first = reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 1)
        second = reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 1)
        assert [u.unit_id for u in first] == [u.unit_id for u in second]
        assert len(events) == 1
        assert events[0].reason == "reconciled"

    def test_new_generation_replaces_units(self, reconciler, make_device):
        device = make_device()
        reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 1)
        units = reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 2)
        assert all(u.generation == 2 for u in units)
        assert len(reconciler.units()) == 2

    def test_blocked_units_are_unavailable(self, reconciler, make_device, events):
        device = make_device()
        reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 1)
        units = reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 1, blocked=True)
        assert not any(u.available for u in units)
        assert reconciler.free_units(SHARED_SLOT) == []
        assert len(events) == 2

    def test_degraded_device_takes_no_new_work(self, reconciler, make_device):
        units = reconciler.reconcile_device(
            make_device(health=DeviceHealth.DEGRADED), PartitionScheme.time_sliced(2), 1
        )
        assert not any(u.is_free for u in units)

    def test_unreachable_device_withdraws_every_unit_at_once(self, reconciler, make_device, events):
        """Test holders keep their units while the whole device stops taking work."""
        units = reconciler.reconcile_device(make_device(), PartitionScheme.time_sliced(4), 1)
        reconciler.claim([units[2].unit_id], RequestId("r1"))

        after = reconciler.reconcile_device(
            make_device(health=DeviceHealth.UNREACHABLE), PartitionScheme.time_sliced(4), 1
        )
        assert [u.unit_id for u in after] == [u.unit_id for u in units]
        assert not any(u.available for u in after)
        assert reconciler.free_units(SHARED_SLOT) == []
        held = reconciler.get_unit(units[2].unit_id)
        assert held.in_use
        assert held.holder == "r1"
        assert events[-1].available_count == 0

    def test_health_applies_when_units_cannot_be_replaced(self, reconciler, make_device, events):
        units = reconciler.reconcile_device(make_device(), PartitionScheme.time_sliced(2), 1)
        reconciler.claim([units[0].unit_id], RequestId("r1"))

        with pytest.raises(TransitionError):
            reconciler.reconcile_device(
                make_device(memory_mb=40000, health=DeviceHealth.UNREACHABLE),
                PartitionScheme.time_sliced(2),
                1,
            )
        assert not any(u.available for u in reconciler.units())
        assert all(u.memory_share_mb == 40960 for u in reconciler.units())
        assert len(events) == 2

    def test_cannot_replace_units_in_use(self, reconciler, make_device):
        device = make_device()
        units = reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 1)
        reconciler.claim([units[0].unit_id], RequestId("r1"))
        with pytest.raises(TransitionError, match="in use"):
            reconciler.reconcile_device(device, PartitionScheme.unpartitioned(), 2)
        assert reconciler.get_unit(units[0].unit_id).in_use

    def test_failed_device_keeps_held_units_until_released(self, reconciler, make_device, events):
        """Test a FAILED device withdraws free units and drops held ones once released."""
        device = make_device()
        units = reconciler.reconcile_device(device, PartitionScheme.time_sliced(3), 1)
        reconciler.claim([units[1].unit_id], RequestId("r1"))

        remaining = reconciler.reconcile_device(device, PartitionScheme.time_sliced(3), 1, failed=True)
        assert [u.unit_id for u in remaining] == [units[1].unit_id]
        assert not remaining[0].available

        reconciler.release([units[1].unit_id], RequestId("r1"))
        assert reconciler.units(device.device_id) == []
        assert events[-1].reason == "released"

    def test_remove_device(self, reconciler, make_device, events):
        device = make_device()
        reconciler.reconcile_device(device, PartitionScheme.time_sliced(2), 1)
        reconciler.remove_device(device.device_id)
        assert reconciler.units() == []
        assert reconciler.generation(device.device_id) == 0
        assert events[-1].reason == "removed"


@pytest.mark.unit
class TestClaims:
    """Test all-or-nothing unit claims."""

    def test_claim_and_release(self, reconciler, make_device):
        units = reconciler.reconcile_device(make_device(), PartitionScheme.time_sliced(2), 1)
        ids = [u.unit_id for u in units]
        reconciler.claim(ids, RequestId("r1"))
        assert reconciler.in_use_count(units[0].device_id) == 2
        assert reconciler.holders(units[0].device_id) == {"r1"}

        assert reconciler.release(ids, RequestId("other")) == 0
        assert reconciler.release(ids, RequestId("r1")) == 2
        assert reconciler.in_use_count(units[0].device_id) == 0

    def test_claim_is_all_or_nothing(self, reconciler, make_device):
        units = reconciler.reconcile_device(make_device(), PartitionScheme.time_sliced(2), 1)
        reconciler.claim([units[1].unit_id], RequestId("r1"))
        with pytest.raises(CapacityError):
            reconciler.claim([units[0].unit_id, units[1].unit_id], RequestId("r2"))
        assert not reconciler.get_unit(units[0].unit_id).in_use

    def test_claim_unknown_unit(self, reconciler):
        with pytest.raises(CapacityError):
            reconciler.claim(["node-a/GPU-9/g1/gpu-0"], RequestId("r1"))

    def test_min_memory_share(self, reconciler, make_device):
        reconciler.reconcile_device(make_device(0), PartitionScheme.mig(["2g.10gb", "1g.5gb"]), 1)
        assert reconciler.min_memory_share(mig_unit_type("1g.5gb")) == 4864
        assert reconciler.min_memory_share(SHARED_SLOT) is None
