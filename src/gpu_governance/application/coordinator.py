"""GPU Governance Engine.

Orchestrates domain services into the process-wide governance engine.
Implements the GovernanceAPI by coordinating inventory reconciliation,
partition transitions, profile and quota configuration, admission and
observability.

Control flow:
    device feed -> PartitionSchemeManager -> InventoryReconciler
    -> UnitSetChanged events (ordered per device) -> AdmissionController

Domain callbacks fire while device locks are held, so they only record
follow-up work. The work is handed to the EventDispatcher once the
outermost engine operation returns.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from contextlib import contextmanager, nullcontext
from typing import Callable, Iterator, Optional

from gpu_governance.adapters.outbound.metrics import PrometheusExporter
from gpu_governance.adapters.outbound.tracing import OpenTelemetryTracer
from gpu_governance.application.event_dispatcher import EventDispatcher
from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
from gpu_governance.domain.entities.gpu_device import GPUDevice
from gpu_governance.domain.entities.partition import (
    DevicePartitionState,
    PartitionPhase,
    PartitionScheme,
)
from gpu_governance.domain.entities.profile import HardwareProfile
from gpu_governance.domain.entities.quota import Quota
from gpu_governance.domain.entities.workload import (
    AdmissionDecision,
    AdmissionOutcome,
    RequestState,
    WorkloadRequest,
)
from gpu_governance.domain.errors import EngineNotRunning, GovernanceError
from gpu_governance.domain.services.admission_controller import AdmissionController, AdmissionSettings
from gpu_governance.domain.services.capacity_accountant import CapacityAccountant
from gpu_governance.domain.services.device_locks import DeviceLockTable
from gpu_governance.domain.services.inventory_reconciler import InventoryReconciler, UnitSetChanged
from gpu_governance.domain.services.partition_manager import PartitionSchemeManager, TransitionSettings
from gpu_governance.domain.services.profile_registry import HardwareProfileRegistry, ProfileValidation
from gpu_governance.domain.value_objects.identifiers import DeviceId, ProfileId, RequestId, TeamId, UnitId
from gpu_governance.domain.value_objects.unit_types import UnitType
from gpu_governance.ports.outbound.device_driver import DeviceDriverPort
from gpu_governance.ports.outbound.device_inventory import DeviceInventoryPort
from gpu_governance.ports.outbound.object_store import KIND_PROFILES, KIND_QUOTAS, ObjectStorePort
from gpu_governance.ports.outbound.orchestrator import OrchestratorError, OrchestratorPort

logger = logging.getLogger(__name__)

_UNITS_CHANGED = "units-changed"
_EVICTED = "evicted"

# Unreported evictions of preempted requests are forgotten after this long
_EVICTION_REPORT_WINDOW_SECONDS = 300.0


class GovernanceEngine:
    """Coordinates GPU governance operations with full observability."""

    def __init__(
        self,
        inventory: DeviceInventoryPort,
        orchestrator: OrchestratorPort,
        driver: DeviceDriverPort,
        store: ObjectStorePort,
        transition: Optional[TransitionSettings] = None,
        admission: Optional[AdmissionSettings] = None,
        headroom_mb: int = 1024,
        headroom_fraction: float = 0.0,
        event_workers: int = 4,
        metrics: Optional[PrometheusExporter] = None,
        tracer: Optional[OpenTelemetryTracer] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the engine.

        Args:
            inventory: Device presence and health feed.
            orchestrator: Cordons nodes and evicts workloads.
            driver: Applies partition schemes.
            store: Durable state for schemes, profiles and quotas.
            transition: Transition timing knobs.
            admission: Admission policy and queue limits.
            headroom_mb: Memory left unreserved on time-sliced devices.
            headroom_fraction: Same, as a fraction of device memory.
            event_workers: Dispatcher pool size; 0 handles events inline.
            metrics: Prometheus exporter, if metrics are enabled.
            tracer: OpenTelemetry span helper, if tracing is enabled.
            clock: Time source shared by all services.
        """
        self._inventory = inventory
        self._orchestrator = orchestrator
        self._store = store
        self._clock = clock

        # Core services
        self._locks = DeviceLockTable()
        self._accountant = CapacityAccountant(self._locks, headroom_mb, headroom_fraction)
        self._reconciler = InventoryReconciler(self._accountant, self._locks)
        self._registry = HardwareProfileRegistry(share_lookup=self._reconciler.min_memory_share)
        self._partitions = PartitionSchemeManager(
            self._reconciler, orchestrator, driver, store, self._locks, transition, clock,
        )
        self._admission = AdmissionController(
            self._registry, self._reconciler, self._accountant, self._locks, admission,
            preemption_handler=self._on_preempted, clock=clock,
        )
        self._dispatcher = EventDispatcher(self._handle_event, workers=event_workers)

        # Observability
        self._metrics = metrics
        self._tracer = tracer

        self._reconciler.subscribe(self._on_unit_set_changed)
        self._partitions.subscribe(self._on_phase_change)
        self._admission.subscribe(self._on_decision)

        self._deferred: list[tuple[str, str]] = []
        self._deferred_lock = threading.Lock()
        self._preempting: dict[RequestId, tuple[int, float]] = {}   # Outstanding evictions, last issued
        self._preempting_lock = threading.Lock()
        self._local = threading.local()
        self._outcome = threading.Condition()

        self._initialized = False
        self._accepting = False
        self._loop: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Load configuration state and devices, then resume transitions.

        Profiles and quotas come from the object store, persisted
        partition states are resumed, and the device inventory is synced.
        """
        with self._operation():
            try:
                for obj in self._store.list(KIND_PROFILES):
                    self._registry.load(HardwareProfile.from_dict(obj.value, version=obj.version))
                for obj in self._store.list(KIND_QUOTAS):
                    self._admission.declare_quota(Quota.from_dict(obj.value, version=obj.version))

                resumed = self._partitions.resume()
                devices = self.sync_inventory()
                logger.info(
                    f"Governance engine initialized: {len(devices)} devices, "
                    f"{len(self._registry.profiles())} profiles, "
                    f"{len(self._admission.quotas())} quotas, {len(resumed)} resumed states"
                )
            except Exception as e:
                logger.error(f"Initialization failed: {e}")
                raise

            self._initialized = True
            self._accepting = True
        self._dispatcher.flush()

    def shutdown(self) -> None:
        """Stop accepting work and flush in-flight events."""
        self._accepting = False
        self.stop_background()
        self._dispatcher.shutdown(wait=True)
        logger.info("Governance engine shut down")

    def start_background(self, interval_seconds: float = 1.0, inventory_every: int = 30) -> None:
        """Run tick() periodically on a daemon thread.

        Args:
            interval_seconds: Delay between ticks.
            inventory_every: Sync the device inventory every N ticks.
        """
        if self._loop is not None:
            return
        self._stop.clear()

        def run() -> None:
            ticks = 0
            while not self._stop.wait(interval_seconds):
                ticks += 1
                try:
                    if ticks % inventory_every == 0:
                        self.sync_inventory()
                    self.tick()
                except Exception:
                    logger.exception("Governance tick failed")

        self._loop = threading.Thread(target=run, name="governance-loop", daemon=True)
        self._loop.start()

    def stop_background(self) -> None:
        if self._loop is None:
            return
        self._stop.set()
        self._loop.join()
        self._loop = None

    def _require_running(self) -> None:
        if not self._initialized:
            raise EngineNotRunning("Governance engine not initialized")
        if not self._accepting:
            raise EngineNotRunning("Governance engine is shutting down")

    # ------------------------------------------------------------------
    # Device feed and partition schemes
    # ------------------------------------------------------------------

    def sync_inventory(self) -> list[GPUDevice]:
        """Poll the inventory and reconcile presence and health.

        A device whose report cannot be applied is logged and skipped; the
        rest of the inventory is still reconciled.
        """
        with self._operation():
            devices = self._inventory.list_devices()
            reported = {d.device_id for d in devices}
            for device in devices:
                try:
                    self.observe_device(device)
                except GovernanceError as e:
                    logger.error(f"Inventory sync of {device.device_id} failed: {e}")
            for known in self._partitions.devices():
                if known.device_id not in reported:
                    self.remove_device(known.device_id)
            return devices

    def observe_device(self, device: GPUDevice) -> DevicePartitionState:
        """Record a device's presence or health change."""
        with self._operation(), self._span("trace_reconcile", device.device_id):
            return self._partitions.observe_device(device)

    def remove_device(self, device_id: DeviceId) -> None:
        with self._operation():
            self._partitions.remove_device(device_id)

    def declare_scheme(self, device_id: DeviceId, scheme: PartitionScheme) -> DevicePartitionState:
        """Declare a device's partition scheme and start the transition.

        An idle device moves through drain and reconfiguration right away;
        a busy one waits in DRAIN_REQUESTED until its units are released.
        """
        self._require_running()
        with self._operation():
            state = self._partitions.declare_desired_scheme(device_id, scheme)
            if state.is_transitioning:
                self._step(device_id)
            return state

    def clear_fault(self, device_id: DeviceId, scheme: Optional[PartitionScheme] = None) -> DevicePartitionState:
        self._require_running()
        with self._operation():
            return self._partitions.clear_fault(device_id, scheme)

    def get_device_state(self, device_id: DeviceId) -> Optional[DevicePartitionState]:
        return self._partitions.get_state(device_id)

    def list_device_states(self) -> list[DevicePartitionState]:
        return self._partitions.states()

    def list_devices(self) -> list[GPUDevice]:
        return self._partitions.devices()

    def list_units(
        self,
        device_id: Optional[DeviceId] = None,
        unit_type: Optional[UnitType] = None,
    ) -> list[AllocatableUnit]:
        return self._reconciler.units(device_id=device_id, unit_type=unit_type)

    def _step(self, device_id: DeviceId, now: Optional[float] = None) -> DevicePartitionState:
        state = self._partitions.get_state(device_id)
        phase = state.phase.value if state else "unknown"
        with self._span("trace_transition_step", device_id, phase):
            return self._partitions.step(device_id, now)

    # ------------------------------------------------------------------
    # Profiles and quotas
    # ------------------------------------------------------------------

    def validate_profile(self, profile: HardwareProfile) -> ProfileValidation:
        return self._registry.validate(profile)

    def declare_profile(self, profile: HardwareProfile) -> HardwareProfile:
        """Create or update a profile and persist it.

        Raises:
            ValidationError: If the profile breaks an invariant.
        """
        stored = self._registry.apply(profile)
        self._store.put(KIND_PROFILES, stored.identifier, stored.to_dict())
        return stored

    def delete_profile(self, identifier: ProfileId) -> bool:
        deleted = self._registry.delete(identifier)
        if deleted:
            self._store.delete(KIND_PROFILES, identifier)
            logger.info(f"Profile {identifier} deleted")
        return deleted

    def get_profile(self, identifier: ProfileId) -> Optional[HardwareProfile]:
        return self._registry.get(identifier)

    def list_profiles(self) -> list[HardwareProfile]:
        return self._registry.profiles()

    def declare_quota(self, quota: Quota) -> Quota:
        """Create or replace a team quota, persist it and re-evaluate the queue."""
        with self._operation():
            stored = self._admission.declare_quota(quota)
            self._store.put(KIND_QUOTAS, stored.team, stored.to_dict())
            self._refresh_metrics()
            return stored

    def delete_quota(self, team: TeamId) -> bool:
        deleted = self._admission.remove_quota(team)
        if deleted:
            self._store.delete(KIND_QUOTAS, team)
            logger.info(f"Quota of {team} deleted")
        return deleted

    def list_quotas(self) -> list[Quota]:
        return self._admission.quotas()

    # ------------------------------------------------------------------
    # Workloads
    # ------------------------------------------------------------------

    def submit(self, request: WorkloadRequest) -> AdmissionDecision:
        """Submit a workload request.

        Returns:
            ADMITTED with units, QUEUED with a position, or REJECTED.
        """
        self._require_running()
        with self._operation(), self._span(
            "trace_submit", request.team, request.profile_id, request.count or 0
        ) as span:
            decision = self._admission.submit(request)
            if span is not None:
                span.set_attribute("admission.outcome", decision.outcome.value)
                span.set_attribute("request.id", decision.request_id)
            if self._metrics:
                wait = 0.0 if decision.admitted else None
                self._metrics.record_admission(decision.outcome.value, request.team, wait)
                self._refresh_metrics()
            if decision.outcome is AdmissionOutcome.QUEUED:
                logger.info(f"Request {decision.request_id} queued at {decision.position}: {decision.reason}")
            return decision

    def cancel(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        with self._operation():
            request = self._admission.cancel(request_id)
            self._wake_waiters()
            return request

    def complete(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        """Mark a request finished and release its units.

        Raises:
            ValidationError: If the request is not admitted.
        """
        with self._operation():
            request = self._admission.complete(request_id)
            self._wake_waiters()
            return request

    def report_evicted(self, request_ids: list[RequestId]) -> None:
        """Orchestrator feed: workloads were evicted from their devices."""
        with self._operation():
            for request_id in request_ids:
                if self._expect_eviction(request_id, -1):
                    continue
                self._defer(_EVICTED, request_id)

    def get_request(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        return self._admission.get_request(request_id)

    def list_requests(self, state: Optional[RequestState] = None) -> list[WorkloadRequest]:
        return self._admission.requests(state)

    def queue_position(self, request_id: RequestId) -> Optional[int]:
        return self._admission.queue_position(request_id)

    def blocked_reason(self, request_id: RequestId) -> str:
        return self._admission.blocked_reason(request_id)

    def wait_for_outcome(self, request_id: RequestId, timeout: Optional[float] = None) -> Optional[WorkloadRequest]:
        """Block until a request leaves the queue or the timeout expires.

        Returns:
            The request (possibly still QUEUED on timeout), or None if unknown.
        """
        request = self._admission.get_request(request_id)
        if request is None:
            return None
        with self._outcome:
            self._outcome.wait_for(
                lambda: request.state not in (RequestState.PENDING, RequestState.QUEUED),
                timeout=timeout,
            )
        return request

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def tick(self, now: Optional[float] = None) -> dict:
        """Advance transitions, expire timed-out requests and re-evaluate.

        Returns:
            Summary of what changed during the tick.
        """
        now = self._clock() if now is None else now
        with self._operation():
            expired = self._admission.expire(now)
            self._forget_stale_evictions(now)
            stepped = []
            for state in self._partitions.states():
                if state.is_transitioning:
                    stepped.append(self._step(state.device_id, now))
            admitted = self._admission.evaluate_queue(now)
            if expired or admitted:
                self._wake_waiters()
            self._refresh_metrics()
        return {
            "expired": [r.request_id for r in expired],
            "admitted": [d.request_id for d in admitted],
            "transitioning": [s.device_id for s in stepped if s.is_transitioning],
            "failed": [s.device_id for s in self._partitions.states() if s.phase is PartitionPhase.FAILED],
        }

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until all deferred events are handled."""
        return self._dispatcher.flush(timeout)

    def get_stats(self) -> dict:
        """Engine-wide statistics."""
        unit_counts: Counter[str] = Counter()
        for unit in self._reconciler.units():
            status = "in_use" if unit.in_use else ("free" if unit.available else "unavailable")
            unit_counts[f"{unit.unit_type.identifier}:{status}"] += 1
        phases = Counter(s.phase.value for s in self._partitions.states())
        return {
            "devices": len(self._partitions.devices()),
            "device_phases": dict(phases),
            "units": dict(unit_counts),
            "capacity": self._accountant.snapshot(),
            "admission": self._admission.stats(),
            "profiles": len(self._registry.profiles()),
            "events": self._dispatcher.stats(),
        }

    # ------------------------------------------------------------------
    # Event plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _operation(self) -> Iterator[None]:
        depth = getattr(self._local, "depth", 0)
        self._local.depth = depth + 1
        try:
            yield
        finally:
            self._local.depth = depth
            if depth == 0:
                self._pump()

    def _defer(self, kind: str, key: str) -> None:
        with self._deferred_lock:
            self._deferred.append((kind, key))

    def _pump(self) -> None:
        with self._deferred_lock:
            pending, self._deferred = self._deferred, []
        for kind, key in pending:
            self._dispatcher.post(key, kind)

    def _handle_event(self, key: str, kind: str) -> None:
        with self._operation():
            if kind == _EVICTED:
                request = self._admission.get_request(RequestId(key))
                if request is not None and request.state is RequestState.ADMITTED:
                    logger.info(f"Request {key} evicted, releasing its units")
                    self._admission.cancel(request.request_id)
                    self._wake_waiters()
                return

            device_id = DeviceId(key)
            state = self._partitions.get_state(device_id)
            if state is not None and state.is_transitioning:
                self._step(device_id)
            with self._span("trace_evaluate", kind):
                admitted = self._admission.evaluate_queue()
            if admitted:
                self._wake_waiters()
            self._refresh_metrics()

    def _on_unit_set_changed(self, event: UnitSetChanged) -> None:
        self._defer(_UNITS_CHANGED, event.device_id)

    def _on_phase_change(self, state: DevicePartitionState, previous: PartitionPhase) -> None:
        if self._metrics:
            self._metrics.record_transition(previous, state.phase)
            self._metrics.update_device_phase(state)

    def _on_decision(self, request: WorkloadRequest, decision: AdmissionDecision) -> None:
        if self._metrics:
            wait = request.wait_seconds if decision.admitted else None
            self._metrics.record_admission(decision.outcome.value, request.team, wait)
        self._wake_waiters()

    def _on_preempted(self, victim: WorkloadRequest, lost: list[UnitId]) -> None:
        if self._metrics:
            self._metrics.record_preemption(victim.team)
        devices = {u.device_id for u in (self._reconciler.get_unit(uid) for uid in lost) if u is not None}
        for device_id in sorted(devices):
            device = self._partitions.get_device(device_id)
            if device is None:
                continue
            # Counted before evict(): the report may arrive from inside the call
            self._expect_eviction(victim.request_id, +1)
            try:
                self._orchestrator.evict(device.node, device_id, [victim.request_id])
            except OrchestratorError as e:
                self._expect_eviction(victim.request_id, -1)
                logger.error(f"Eviction of preempted request {victim.request_id} failed: {e}")

    def _expect_eviction(self, request_id: RequestId, delta: int) -> bool:
        """Adjust the outstanding evictions of a preempted request.

        Returns:
            False when a report (delta < 0) matches no outstanding eviction.
        """
        with self._preempting_lock:
            count, _ = self._preempting.get(request_id, (0, 0.0))
            if delta < 0 and count == 0:
                return False
            count += delta
            if count > 0:
                self._preempting[request_id] = (count, self._clock())
            else:
                self._preempting.pop(request_id, None)
            return True

    def _forget_stale_evictions(self, now: float) -> None:
        with self._preempting_lock:
            for request_id, (_, issued_at) in list(self._preempting.items()):
                request = self._admission.get_request(request_id)
                if (
                    request is None
                    or request.state.is_terminal
                    or now - issued_at > _EVICTION_REPORT_WINDOW_SECONDS
                ):
                    del self._preempting[request_id]

    def _wake_waiters(self) -> None:
        with self._outcome:
            self._outcome.notify_all()

    def _refresh_metrics(self) -> None:
        if not self._metrics:
            return
        self._metrics.update_units(self._reconciler.units())
        self._metrics.update_reserved_memory(self._accountant.snapshot())
        self._metrics.set_queue_depth(len(self._admission.queued()))

    def _span(self, helper: str, *args):
        if self._tracer is None:
            return nullcontext()
        return getattr(self._tracer, helper)(*args)

    # Direct access for status endpoints and tests

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def metrics(self) -> Optional[PrometheusExporter]:
        return self._metrics

    @property
    def partitions(self) -> PartitionSchemeManager:
        return self._partitions

    @property
    def admission(self) -> AdmissionController:
        return self._admission

    @property
    def reconciler(self) -> InventoryReconciler:
        return self._reconciler

    @property
    def accountant(self) -> CapacityAccountant:
        return self._accountant

    @property
    def registry(self) -> HardwareProfileRegistry:
        return self._registry
