"""Integration tests for end-to-end governance flows.

These tests run the full engine: inventory feed, partition transitions,
unit reconciliation, admission and the event dispatcher.
"""

import pytest

from gpu_governance.adapters.outbound.in_memory_orchestrator import InMemoryOrchestrator
from gpu_governance.domain.entities.gpu_device import DeviceHealth
from gpu_governance.domain.entities.partition import PartitionPhase, PartitionScheme
from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.entities.workload import AdmissionOutcome, RequestState, WorkloadRequest
from gpu_governance.domain.services.admission_controller import AdmissionSettings
from gpu_governance.domain.services.partition_manager import TransitionSettings
from gpu_governance.domain.value_objects.admission_policy import AdmissionPolicy
from gpu_governance.domain.value_objects.identifiers import ProfileId, RequestId, TeamId
from gpu_governance.domain.value_objects.unit_types import SHARED_SLOT, WHOLE_DEVICE
from gpu_governance.ports.inbound.api import GovernanceAPI

from factories import GPU0, GPU1, mig_profile, quota, shared_profile


def submit(engine, team="ml", profile="shared-gpu", **kwargs):
    return engine.submit(WorkloadRequest(
        request_id=RequestId(kwargs.pop("request_id", "")),
        team=TeamId(team),
        profile_id=ProfileId(profile),
        **kwargs,
    ))


def whole_gpu_profile():
    return HardwareProfile(identifier=ProfileId("gpu"), memory_limit_mb=40000)


def preempt_spanning_gang(engine_factory, orchestrator):
    engine = engine_factory(admission=AdmissionSettings(policy=AdmissionPolicy.PRIORITY_PREEMPTIVE))
    # Evictions are reported later, as a real orchestrator would
    orchestrator.set_eviction_callback(None)
    engine.declare_scheme(GPU0, PartitionScheme.time_sliced(1))
    engine.declare_scheme(GPU1, PartitionScheme.time_sliced(1))
    engine.declare_profile(shared_profile())
    engine.declare_quota(quota("batch", 0, borrowing=2))
    engine.declare_quota(quota("ml", 2))
    victim = submit(engine, team="batch", count=2)
    assert victim.admitted
    urgent = submit(engine, count=2, priority=10)
    assert urgent.admitted
    assert {e.device_id for e in orchestrator.evictions} == {GPU0, GPU1}
    return engine, victim.request_id, urgent.request_id


@pytest.mark.integration
class TestTimeSlicedPool:
    """Test admission on a time-sliced device."""

    def test_four_slots_admit_four(self, engine):
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile())
        engine.declare_quota(quota("ml", 8))

        decisions = [submit(engine) for _ in range(5)]
        assert [d.outcome for d in decisions] == [AdmissionOutcome.ADMITTED] * 4 + [AdmissionOutcome.QUEUED]
        assert {u.device_id for d in decisions[:4] for u in d.units} == {GPU0}

        engine.complete(decisions[0].request_id)
        assert engine.get_request(decisions[4].request_id).state is RequestState.ADMITTED

    def test_count_above_profile_maximum_is_rejected(self, engine):
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile(max_count=4))
        engine.declare_quota(quota("ml", 8))

        decision = submit(engine, count=5)
        assert decision.outcome is AdmissionOutcome.REJECTED
        assert decision.error == "ValidationError"
        assert engine.queue_position(decision.request_id) is None
        assert engine.get_stats()["admission"]["queue_depth"] == 0

    def test_queued_request_times_out(self, engine, clock):
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(1))
        engine.declare_profile(shared_profile())
        engine.declare_quota(quota("ml", 8))
        submit(engine)
        waiting = submit(engine, timeout_seconds=10)

        clock.advance(11)
        summary = engine.tick()
        assert summary["expired"] == [waiting.request_id]
        assert engine.get_request(waiting.request_id).error_kind == "Timeout"


@pytest.mark.integration
class TestMigPool:
    """Test admission on a MIG-partitioned device."""

    @pytest.fixture
    def mig_engine(self, engine):
        engine.declare_scheme(GPU0, PartitionScheme.mig(["1g.5gb"] * 7))
        engine.declare_profile(mig_profile())
        engine.declare_quota(quota("ml", 16))
        return engine

    def test_seven_slices(self, mig_engine):
        state = mig_engine.get_device_state(GPU0)
        assert state.phase is PartitionPhase.ACTIVE
        assert state.generation == 1
        assert len(mig_engine.list_units(GPU0)) == 7

        decisions = [submit(mig_engine, profile="mig-1g.5gb") for _ in range(8)]
        assert sum(d.admitted for d in decisions) == 7
        assert decisions[7].outcome is AdmissionOutcome.QUEUED

    def test_gang_of_eight_queues_whole(self, mig_engine):
        decision = submit(mig_engine, profile="mig-1g.5gb", count=8)
        assert decision.outcome is AdmissionOutcome.QUEUED
        assert all(u.is_free for u in mig_engine.list_units(GPU0))


@pytest.mark.integration
class TestSchemeTransitions:
    """Test drains and reconfiguration through the engine."""

    def test_drain_waits_for_in_use_units(self, engine, orchestrator):
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile())
        engine.declare_quota(quota("ml", 8))
        first, second = submit(engine), submit(engine)

        state = engine.declare_scheme(GPU0, PartitionScheme.unpartitioned())
        assert state.phase is PartitionPhase.DRAIN_REQUESTED
        assert orchestrator.is_cordoned("node-a")
        assert submit(engine).outcome is AdmissionOutcome.QUEUED

        engine.complete(first.request_id)
        assert engine.get_device_state(GPU0).is_transitioning

        engine.complete(second.request_id)
        state = engine.get_device_state(GPU0)
        assert state.phase is PartitionPhase.ACTIVE
        assert state.current == PartitionScheme.unpartitioned()
        assert state.generation == 2
        assert [u.unit_type for u in engine.list_units(GPU0)] == [WHOLE_DEVICE]
        assert not orchestrator.is_cordoned("node-a")

    def test_eviction_after_grace_period(self, engine_factory, orchestrator, clock):
        engine = engine_factory(transition=TransitionSettings(evict_on_drain=True, drain_grace_seconds=30))
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile())
        engine.declare_quota(quota("ml", 8))
        held = [submit(engine).request_id for _ in range(2)]

        engine.declare_scheme(GPU0, PartitionScheme.unpartitioned())
        engine.tick()
        assert orchestrator.evictions == []

        clock.advance(31)
        engine.tick()
        assert sorted(orchestrator.evictions[0].request_ids) == sorted(held)
        assert all(engine.get_request(r).state is RequestState.CANCELLED for r in held)
        state = engine.get_device_state(GPU0)
        assert state.phase is PartitionPhase.ACTIVE
        assert state.current == PartitionScheme.unpartitioned()

    def test_restart_resumes_declarations(self, engine_factory, store):
        engine = engine_factory()
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile())
        engine.declare_quota(quota("ml", 8, borrowing=2))

        restarted = engine_factory(orchestrator=InMemoryOrchestrator())
        state = restarted.get_device_state(GPU0)
        assert state.current == PartitionScheme.time_sliced(4)
        assert state.generation == 1
        assert [p.identifier for p in restarted.list_profiles()] == ["shared-gpu"]
        assert restarted.list_quotas()[0].borrowing_limit == 2
        assert len(restarted.list_units(GPU0, SHARED_SLOT)) == 4
        assert submit(restarted).admitted


@pytest.mark.integration
class TestDeviceHealth:
    """Test health changes from the inventory feed."""

    def test_degraded_device_takes_no_new_work(self, engine, inventory):
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(2))
        engine.declare_profile(whole_gpu_profile())
        engine.declare_quota(quota("ml", 4))

        inventory.set_simulated_health(1, DeviceHealth.DEGRADED)
        engine.sync_inventory()
        decision = submit(engine, profile="gpu")
        assert decision.outcome is AdmissionOutcome.QUEUED

        inventory.set_simulated_health(1, DeviceHealth.HEALTHY)
        engine.sync_inventory()
        request = engine.get_request(decision.request_id)
        assert request.state is RequestState.ADMITTED
        assert engine.reconciler.get_unit(request.unit_ids[0]).device_id == GPU1

    def test_bad_report_does_not_block_other_devices(self, engine, inventory, make_device, monkeypatch):
        """Test one device's unappliable report neither aborts the sync nor hides health."""
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile())
        engine.declare_quota(quota("ml", 4))
        holder = submit(engine)
        assert holder.admitted

        monkeypatch.setattr(inventory, "list_devices", lambda: [
            make_device(0, memory_mb=40000),
            make_device(1, health=DeviceHealth.UNREACHABLE),
        ])
        engine.sync_inventory()

        assert not any(u.available for u in engine.list_units(GPU1))
        assert "in use" in engine.get_device_state(GPU0).sync_error
        gpu0 = next(d for d in engine.list_devices() if d.device_id == GPU0)
        assert gpu0.total_memory_mb == 40960
        assert engine.get_request(holder.request_id).state is RequestState.ADMITTED

        engine.complete(holder.request_id)
        engine.sync_inventory()
        assert engine.get_device_state(GPU0).sync_error == ""
        gpu0 = next(d for d in engine.list_devices() if d.device_id == GPU0)
        assert gpu0.total_memory_mb == 40000


@pytest.mark.integration
class TestPreemption:
    """Test priority preemption through the engine."""

    def test_borrowed_units_are_reclaimed(self, engine_factory, orchestrator, clock, metrics):
        engine = engine_factory(admission=AdmissionSettings(policy=AdmissionPolicy.PRIORITY_PREEMPTIVE))
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile())
        engine.declare_quota(quota("batch", 0, borrowing=4))
        engine.declare_quota(quota("ml", 4))
        borrowers = []
        for _ in range(4):
            borrowers.append(submit(engine, team="batch").request_id)
            clock.advance(1)

        assert submit(engine, priority=10).admitted

        victim = engine.get_request(borrowers[-1])
        assert victim.state is RequestState.QUEUED
        assert victim.preemption_count == 1
        assert orchestrator.evictions[-1].request_ids == [victim.request_id]
        assert metrics.registry.get_sample_value("governance_preemptions_total", {"team": "batch"}) == 1

    def test_late_eviction_reports_spare_readmitted_victim(self, engine_factory, orchestrator):
        """Test each eviction report of a multi-device victim is absorbed once."""
        engine, victim, urgent = preempt_spanning_gang(engine_factory, orchestrator)
        assert engine.get_request(victim).state is RequestState.QUEUED

        engine.report_evicted([victim])
        engine.complete(urgent)
        assert engine.get_request(victim).state is RequestState.ADMITTED

        engine.report_evicted([victim])
        engine.flush(timeout=5)
        assert engine.get_request(victim).state is RequestState.ADMITTED

    def test_eviction_reports_expire(self, engine_factory, orchestrator, clock):
        engine, victim, urgent = preempt_spanning_gang(engine_factory, orchestrator)
        engine.complete(urgent)
        assert engine.get_request(victim).state is RequestState.ADMITTED

        clock.advance(301)
        engine.tick()
        engine.report_evicted([victim])
        engine.flush(timeout=5)
        assert engine.get_request(victim).state is RequestState.CANCELLED


@pytest.mark.integration
class TestThreadedEvents:
    """Test the engine with a worker pool dispatching events."""

    def test_queued_request_admitted_after_reconfiguration(self, engine_factory):
        engine = engine_factory(event_workers=2)
        engine.declare_scheme(GPU1, PartitionScheme.time_sliced(2))
        engine.declare_scheme(GPU0, PartitionScheme.time_sliced(4))
        engine.declare_profile(shared_profile())
        engine.declare_profile(whole_gpu_profile())
        engine.declare_quota(quota("ml", 8))

        holder = submit(engine, request_id="holder")
        assert holder.admitted
        waiting = submit(engine, profile="gpu")
        assert waiting.outcome is AdmissionOutcome.QUEUED

        engine.declare_scheme(GPU0, PartitionScheme.unpartitioned())
        engine.complete(holder.request_id)

        request = engine.wait_for_outcome(waiting.request_id, timeout=10)
        assert request.state is RequestState.ADMITTED
        assert engine.flush(timeout=10)
        assert engine.get_device_state(GPU0).current == PartitionScheme.unpartitioned()


@pytest.mark.integration
class TestEngineInterface:
    """Test the engine against its inbound port."""

    def test_engine_implements_api(self, engine):
        assert isinstance(engine, GovernanceAPI)
