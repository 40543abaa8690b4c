"""Unit tests for GPU governance value objects and entities."""

import pytest

from gpu_governance.domain.entities.gpu_device import DeviceHealth, GPUDevice
from gpu_governance.domain.entities.partition import (
    DevicePartitionState,
    PartitionMode,
    PartitionPhase,
    PartitionScheme,
)
from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.entities.quota import Quota
from gpu_governance.domain.entities.workload import RequestState, WorkloadRequest
from gpu_governance.domain.errors import ValidationError
from gpu_governance.domain.value_objects.admission_policy import AdmissionPolicy
from gpu_governance.domain.value_objects.identifiers import (
    DeviceId,
    ProfileId,
    TeamId,
    create_device_id,
    create_request_id,
    create_unit_id,
    parse_device_id,
)
from gpu_governance.domain.value_objects.mig_profiles import (
    MigLayoutError,
    family_for_memory,
    lookup_slice,
    place_slices,
)
from gpu_governance.domain.value_objects.unit_types import (
    SHARED_SLOT,
    WHOLE_DEVICE,
    UnitKind,
    mig_unit_type,
    parse_unit_type,
)

from factories import shared_profile


@pytest.mark.unit
class TestIdentifiers:
    """Test identifier creation and parsing."""

    def test_create_device_id(self):
        """Test device ID creation from node and index."""
        assert create_device_id("node-a", 0) == "node-a/GPU-0"
        assert create_device_id("rack1/node-b", 7) == "rack1/node-b/GPU-7"

    def test_parse_device_id(self):
        """Test splitting a device ID back into node and index."""
        assert parse_device_id(DeviceId("node-a/GPU-3")) == ("node-a", 3)
        assert parse_device_id(DeviceId("rack1/node-b/GPU-7")) == ("rack1/node-b", 7)

    def test_parse_malformed_device_id(self):
        """Test malformed device IDs are refused."""
        with pytest.raises(ValueError):
            parse_device_id(DeviceId("GPU-0"))
        with pytest.raises(ValueError):
            parse_device_id(DeviceId("node-a/disk-0"))

    def test_unit_id_embeds_generation(self):
        """Test unit IDs are scoped to a scheme generation."""
        unit_id = create_unit_id(DeviceId("node-a/GPU-0"), 2, "shared", 3)
        assert unit_id == "node-a/GPU-0/g2/shared-3"
        assert unit_id != create_unit_id(DeviceId("node-a/GPU-0"), 3, "shared", 3)

    def test_create_request_id(self):
        """Test request ID creation."""
        assert create_request_id("ml", 1) == "ml-00000001"
        assert create_request_id("infer", 42) == "infer-00000042"


@pytest.mark.unit
class TestUnitTypes:
    """Test profile identifier grammar."""

    def test_parse_known_identifiers(self):
        assert parse_unit_type("gpu") == WHOLE_DEVICE
        assert parse_unit_type("shared-gpu") == SHARED_SLOT
        assert parse_unit_type("mig-1g.5gb") == mig_unit_type("1g.5gb")
        assert parse_unit_type("mig-3g.40gb") == mig_unit_type("3g.40gb")

    def test_parse_unknown_identifiers(self):
        """Test identifiers no inventory can produce resolve to None."""
        assert parse_unit_type("tpu") is None
        assert parse_unit_type("mig-9g.99gb") is None
        assert parse_unit_type("") is None

    def test_identifier_and_resource_name(self):
        mig = mig_unit_type("2g.10gb")
        assert mig.identifier == "mig-2g.10gb"
        assert mig.resource_name == "nvidia.com/mig-2g.10gb"
        assert SHARED_SLOT.resource_name == "nvidia.com/gpu.shared"
        assert str(WHOLE_DEVICE) == "gpu"

    def test_isolation(self):
        """Test only shared slots use advisory accounting."""
        assert UnitKind.WHOLE_DEVICE.is_isolated
        assert UnitKind.ISOLATED_SLICE.is_isolated
        assert not UnitKind.SHARED_SLOT.is_isolated


@pytest.mark.unit
class TestMigPlacement:
    """Test MIG slice placement rules."""

    def test_family_for_memory(self):
        assert family_for_memory(40960) == 40960
        assert family_for_memory(40536) == 40960
        assert family_for_memory(81920) == 81920
        assert family_for_memory(16384) is None

    def test_lookup_slice(self):
        profile = lookup_slice("1g.5gb", 40960)
        assert profile.compute_slices == 1
        assert profile.memory_mb == 4864
        assert lookup_slice("1g.5gb", 81920) is None

    def test_seven_small_slices_fit(self):
        """Test a full 1g.5gb layout occupies distinct memory slices."""
        placements = place_slices(("1g.5gb",) * 7, 40960)
        assert len(placements) == 7
        assert sorted(p.start for p in placements) == list(range(7))

    def test_mixed_layout(self):
        """Test larger slices are placed first but results keep declaration order."""
        placements = place_slices(("3g.20gb", "4g.20gb"), 40960)
        assert [p.profile for p in placements] == ["3g.20gb", "4g.20gb"]
        assert placements[1].start == 0
        assert placements[0].start == 4
        assert not placements[0].overlaps(placements[1])

    def test_placement_backtracks(self):
        """Test a layout that only fits with the large slice at its second offset."""
        placements = place_slices(("3g.20gb", "2g.10gb", "2g.10gb"), 40960)
        assert placements[0].start == 4
        assert sorted(p.start for p in placements[1:]) == [0, 2]

    def test_compute_exhaustion(self):
        with pytest.raises(MigLayoutError, match="compute slices"):
            place_slices(("4g.20gb", "4g.20gb"), 40960)
        with pytest.raises(MigLayoutError):
            place_slices(("1g.5gb",) * 8, 40960)

    def test_unknown_slice_for_family(self):
        with pytest.raises(MigLayoutError, match="not available"):
            place_slices(("1g.10gb",), 40960)

    def test_empty_layout(self):
        with pytest.raises(MigLayoutError):
            place_slices((), 40960)


@pytest.mark.unit
class TestGPUDevice:
    """Test GPU device entity."""

    def test_device_identity(self, make_device):
        device = make_device(index=1)
        assert device.device_id == "node-a/GPU-1"
        assert device.is_schedulable
        assert device.is_reachable

    def test_mig_support(self, make_device):
        """Test MIG needs Ampere or newer and a known memory size."""
        assert make_device(memory_mb=40960).supports_mig
        assert make_device(memory_mb=81920, compute_capability="9.0").mig_family == 81920
        assert not make_device(memory_mb=32768, compute_capability="7.0").supports_mig
        assert not make_device(memory_mb=24576, compute_capability="8.6").supports_mig

    def test_health(self, make_device):
        degraded = make_device(health=DeviceHealth.DEGRADED)
        assert degraded.is_reachable
        assert not degraded.is_schedulable

        unreachable = make_device(health=DeviceHealth.UNREACHABLE)
        assert not unreachable.is_reachable
        assert not unreachable.is_schedulable

    def test_persisted_form(self, make_device):
        device = make_device(index=2, health=DeviceHealth.DEGRADED)
        assert GPUDevice.from_dict(device.to_dict()) == device


@pytest.mark.unit
class TestPartitionScheme:
    """Test partition scheme validation and shape."""

    def test_expected_shape(self):
        assert PartitionScheme.unpartitioned().expected_shape() == {WHOLE_DEVICE: 1}
        assert PartitionScheme.time_sliced(4).expected_shape() == {SHARED_SLOT: 4}
        mig = PartitionScheme.mig(["1g.5gb", "1g.5gb", "2g.10gb"])
        assert mig.expected_shape() == {mig_unit_type("1g.5gb"): 2, mig_unit_type("2g.10gb"): 1}
        assert mig.expected_unit_count() == 3

    def test_str(self):
        assert str(PartitionScheme.time_sliced(4)) == "TimeSliced{4}"
        assert str(PartitionScheme.mig(["1g.5gb"] * 7)) == "MIG{7x1g.5gb}"
        assert str(PartitionScheme.unpartitioned()) == "Unpartitioned"

    def test_time_slicing_bounds(self, make_device):
        device = make_device()
        PartitionScheme.time_sliced(1).validate_for(device)
        PartitionScheme.time_sliced(64).validate_for(device)
        with pytest.raises(ValidationError):
            PartitionScheme.time_sliced(0).validate_for(device)
        with pytest.raises(ValidationError, match="at most 8"):
            PartitionScheme.time_sliced(9).validate_for(device, max_replicas=8)

    def test_mig_on_unsupported_device(self, make_device):
        """Test MIG on a pre-Ampere device is a validation error."""
        v100 = make_device(memory_mb=32768, compute_capability="7.0", model="V100")
        with pytest.raises(ValidationError, match="does not support MIG"):
            PartitionScheme.mig(["1g.5gb"]).validate_for(v100)

    def test_mig_layout_error_becomes_validation_error(self, make_device):
        with pytest.raises(ValidationError):
            PartitionScheme.mig(["7g.40gb", "1g.5gb"]).validate_for(make_device())

    def test_unpartitioned_takes_no_parameters(self, make_device):
        with pytest.raises(ValidationError):
            PartitionScheme(PartitionMode.UNPARTITIONED, replicas=2).validate_for(make_device())


@pytest.mark.unit
class TestDevicePartitionState:
    """Test the durable transition record."""

    def test_desired_scheme(self):
        state = DevicePartitionState(device_id=DeviceId("node-a/GPU-0"))
        assert state.desired == PartitionScheme.unpartitioned()
        state.target = PartitionScheme.time_sliced(2)
        assert state.desired == PartitionScheme.time_sliced(2)
        state.pending = PartitionScheme.time_sliced(4)
        assert state.desired == PartitionScheme.time_sliced(4)

    def test_transitioning_phases(self):
        state = DevicePartitionState(device_id=DeviceId("node-a/GPU-0"))
        assert not state.is_transitioning
        for phase in (PartitionPhase.DRAIN_REQUESTED, PartitionPhase.DRAINING,
                      PartitionPhase.RECONFIGURING, PartitionPhase.VERIFYING):
            state.phase = phase
            assert state.is_transitioning
            assert phase.blocks_consumption
        state.phase = PartitionPhase.FAILED
        assert not state.is_transitioning
        assert PartitionPhase.FAILED.blocks_consumption

    def test_persisted_form_keeps_transition_progress(self):
        state = DevicePartitionState(
            device_id=DeviceId("node-a/GPU-0"),
            current=PartitionScheme.time_sliced(4),
            phase=PartitionPhase.VERIFYING,
            target=PartitionScheme.mig(["1g.5gb"] * 7),
            generation=3,
            verify_attempts=2,
            next_verify_at=1234.5,
        )
        restored = DevicePartitionState.from_dict(state.to_dict(), version=9)
        assert restored.phase is PartitionPhase.VERIFYING
        assert restored.target == state.target
        assert restored.verify_attempts == 2
        assert restored.next_verify_at == 1234.5
        assert restored.version == 9


@pytest.mark.unit
class TestProfileAndQuota:
    """Test configuration entities."""

    def test_profile_structural_problems(self):
        assert shared_profile().structural_problems() == []

        bad = HardwareProfile(
            identifier=ProfileId("tpu"),
            memory_limit_mb=0,
            default_count=5,
            min_count=1,
            max_count=4,
            compute_limit_percent=150,
        )
        problems = bad.structural_problems()
        assert len(problems) == 4
        assert any("Unknown profile identifier" in p for p in problems)

    def test_quota_validation(self):
        quota = Quota(team=TeamId("ml"), nominal_units=4, borrowing_limit=2)
        quota.validate()
        assert quota.ceiling_units == 6

        with pytest.raises(ValidationError):
            Quota(team=TeamId("ml"), nominal_units=-1).validate()
        with pytest.raises(ValidationError):
            Quota(team=TeamId("ml"), nominal_units=1, priority_weight=0).validate()
        with pytest.raises(ValidationError):
            Quota(team=TeamId(""), nominal_units=1).validate()

    def test_policy_capabilities(self):
        assert not AdmissionPolicy.STRICT_QUOTA.allows_borrowing
        assert AdmissionPolicy.BORROW_WITH_LIMIT.allows_borrowing
        assert not AdmissionPolicy.BORROW_WITH_LIMIT.allows_preemption
        assert AdmissionPolicy.PRIORITY_PREEMPTIVE.allows_preemption


@pytest.mark.unit
class TestWorkloadRequest:
    """Test workload request defaults."""

    def test_defaults_come_from_profile(self):
        request = WorkloadRequest(
            request_id=create_request_id("ml", 1),
            team=TeamId("ml"),
            profile_id=ProfileId("shared-gpu"),
        )
        assert request.requested_count == 1
        request.profile = shared_profile(memory_limit_mb=6000, default_count=2)
        assert request.requested_count == 2
        assert request.memory_per_unit_mb == 6000

        request.count = 3
        request.memory_mb = 1000
        assert request.requested_count == 3
        assert request.memory_per_unit_mb == 1000

    def test_terminal_states(self):
        assert RequestState.COMPLETED.is_terminal
        assert RequestState.CANCELLED.is_terminal
        assert RequestState.REJECTED.is_terminal
        assert not RequestState.QUEUED.is_terminal
        assert not RequestState.ADMITTED.is_terminal
