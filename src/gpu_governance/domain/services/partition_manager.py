"""Partition scheme transitions as a per-device state machine.

    ACTIVE(scheme) -> DRAIN_REQUESTED -> DRAINING -> RECONFIGURING
                   -> VERIFYING -> ACTIVE(new scheme)

    FAILED is entered on drain timeout, driver errors, or when verification
    keeps disagreeing with the declared scheme. It is left only through
    clear_fault() by an operator.

Guarantees:
1. New consumption on a device is blocked from the moment DRAIN_REQUESTED
   is entered.
2. DRAINING -> RECONFIGURING happens only with zero units in use. This is
   never bypassed: a running workload never observes a scheme change.
3. Verification retries with exponential backoff and then fails; it never
   loops forever.
4. Every phase change is persisted, so a restart resumes from the last
   durable phase instead of assuming ACTIVE.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, replace
from typing import Callable, Optional

from gpu_governance.domain.entities.gpu_device import GPUDevice
from gpu_governance.domain.entities.partition import (
    DevicePartitionState,
    PartitionPhase,
    PartitionScheme,
)
from gpu_governance.domain.errors import DeviceUnavailable, TransitionError, ValidationError
from gpu_governance.domain.services.device_locks import DeviceLockTable
from gpu_governance.domain.services.inventory_reconciler import InventoryReconciler
from gpu_governance.domain.value_objects.identifiers import DeviceId
from gpu_governance.ports.outbound.device_driver import DeviceDriverError, DeviceDriverPort
from gpu_governance.ports.outbound.object_store import (
    KIND_DEVICES,
    KIND_PARTITION_STATES,
    ObjectStorePort,
)
from gpu_governance.ports.outbound.orchestrator import OrchestratorError, OrchestratorPort

logger = logging.getLogger(__name__)

# Upper bound of phase changes one step() may chain
_MAX_CHAINED_PHASES = 8


@dataclass
class TransitionSettings:
    """Timing and safety knobs for scheme transitions."""
    drain_timeout_seconds: float = 600.0
    drain_grace_seconds: float = 60.0
    evict_on_drain: bool = False          # Safe default: wait for workloads to finish
    verify_max_attempts: int = 5
    verify_backoff_seconds: float = 1.0
    verify_backoff_max_seconds: float = 30.0
    max_time_slice_replicas: int = 64


PhaseListener = Callable[[DevicePartitionState, PartitionPhase], None]


class PartitionSchemeManager:
    """Owns devices and drives their partition scheme transitions."""

    def __init__(
        self,
        reconciler: InventoryReconciler,
        orchestrator: OrchestratorPort,
        driver: DeviceDriverPort,
        store: Optional[ObjectStorePort] = None,
        locks: Optional[DeviceLockTable] = None,
        settings: Optional[TransitionSettings] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the manager.

        Args:
            reconciler: Derives units from device state.
            orchestrator: Cordons nodes and evicts workloads.
            driver: Applies schemes to devices and reads them back.
            store: Durable state; transitions are not persisted without it.
            locks: Shared per-device lock table.
            settings: Transition timing knobs.
            clock: Wall clock (persisted timestamps survive restarts).
        """
        self._reconciler = reconciler
        self._orchestrator = orchestrator
        self._driver = driver
        self._store = store
        self._locks = locks or DeviceLockTable()
        self._settings = settings or TransitionSettings()
        self._clock = clock
        self._devices: dict[DeviceId, GPUDevice] = {}
        self._states: dict[DeviceId, DevicePartitionState] = {}
        self._registry_lock = threading.Lock()   # Guards membership of _devices and _states
        self._listeners: list[PhaseListener] = []

    @property
    def settings(self) -> TransitionSettings:
        return self._settings

    def subscribe(self, listener: PhaseListener) -> None:
        """Register a callback invoked as listener(state, previous_phase)."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Device feed
    # ------------------------------------------------------------------

    def observe_device(self, device: GPUDevice) -> DevicePartitionState:
        """Record a device's presence or health and refresh its units.

        Health always reaches the device's units. If the report would also
        re-derive the units and that fails, for example because the
        reported memory changed while units are in use, the previous
        record is kept with the new health and the error is surfaced as
        the state's sync_error until a later report reconciles cleanly.
        """
        device_id = device.device_id
        with self._locks.hold(device_id):
            previous = self._devices.get(device_id)
            if previous is not None and previous.health != device.health:
                logger.warning(
                    f"Device {device_id} health {previous.health.value} -> {device.health.value}"
                )
            with self._registry_lock:
                self._devices[device_id] = device

            state = self._states.get(device_id)
            if state is None:
                realized = self._driver.realized_scheme(device_id)
                state = DevicePartitionState(
                    device_id=device_id,
                    current=realized or PartitionScheme.unpartitioned(),
                    phase_entered_at=self._clock(),
                )
                with self._registry_lock:
                    self._states[device_id] = state
                self._persist(state)
                logger.info(f"Device {device_id} registered with scheme {state.current}")

            try:
                self._reconcile(state)
            except (TransitionError, ValidationError) as e:
                if previous is not None:
                    with self._registry_lock:
                        self._devices[device_id] = replace(previous, health=device.health)
                if state.sync_error != str(e):
                    logger.error(f"Device {device_id} report not applied: {e}")
                state.sync_error = str(e)
                return state

            state.sync_error = ""
            if previous is None or previous.to_dict() != device.to_dict():
                self._persist_device(device)
            return state

    def remove_device(self, device_id: DeviceId) -> None:
        """Forget a device the inventory no longer reports."""
        with self._locks.hold(device_id):
            with self._registry_lock:
                device = self._devices.pop(device_id, None)
                self._states.pop(device_id, None)
            self._reconciler.remove_device(device_id)
            if self._store is not None:
                self._store.delete(KIND_PARTITION_STATES, device_id)
                self._store.delete(KIND_DEVICES, device_id)
        if device is not None:
            logger.info(f"Device {device_id} removed from inventory")

    def resume(self) -> list[DevicePartitionState]:
        """Reload persisted devices and transition states after a restart.

        Devices found in the store are re-registered and their units
        re-derived from the last durable phase. In-flight transitions
        continue on the next step(); drains re-cordon their node.
        """
        if self._store is None:
            return []

        for obj in self._store.list(KIND_DEVICES):
            device = GPUDevice.from_dict(obj.value)
            with self._registry_lock:
                self._devices.setdefault(device.device_id, device)

        resumed = []
        for obj in self._store.list(KIND_PARTITION_STATES):
            state = DevicePartitionState.from_dict(obj.value, version=obj.version)
            device = self._devices.get(state.device_id)
            if device is None:
                logger.warning(f"Dropping persisted state of unknown device {state.device_id}")
                continue
            with self._locks.hold(state.device_id):
                with self._registry_lock:
                    self._states[state.device_id] = state
                self._reconcile(state)
                if state.phase in (PartitionPhase.DRAIN_REQUESTED, PartitionPhase.DRAINING):
                    self._cordon(device)
            resumed.append(state)
            logger.info(f"Resumed device {state.device_id} in phase {state.phase.value}")
        return resumed

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def declare_desired_scheme(self, device_id: DeviceId, scheme: PartitionScheme) -> DevicePartitionState:
        """Declare the scheme a device should run.

        Raises:
            DeviceUnavailable: If the device is unknown.
            ValidationError: If the device cannot host the scheme.
            TransitionError: If the device is FAILED.
        """
        with self._locks.hold(device_id):
            device = self._require_device(device_id)
            scheme.validate_for(device, self._settings.max_time_slice_replicas)
            state = self._states[device_id]

            if state.phase is PartitionPhase.FAILED:
                raise TransitionError(
                    f"Device {device_id} is FAILED ({state.failure_reason}); clear the fault first"
                )

            if state.phase is PartitionPhase.ACTIVE:
                if scheme == state.current:
                    return state
                self._begin(state, scheme)
            elif state.phase in (PartitionPhase.DRAIN_REQUESTED, PartitionPhase.DRAINING):
                if scheme == state.current:
                    # Nothing was touched yet: call the transition off
                    state.target = None
                    self._enter(state, PartitionPhase.ACTIVE)
                    self._reconcile(state)
                    self._uncordon_if_idle(device)
                    logger.info(f"Device {device_id} transition cancelled, staying on {scheme}")
                else:
                    state.target = scheme
                    self._persist(state)
            else:
                state.pending = None if scheme == state.target else scheme
                self._persist(state)
            return state

    def clear_fault(self, device_id: DeviceId, scheme: Optional[PartitionScheme] = None) -> DevicePartitionState:
        """Return a FAILED device to ACTIVE after operator intervention.

        Args:
            device_id: Failed device.
            scheme: Scheme the operator left on the device. Defaults to what
                the driver reports, then to the last active scheme.

        Raises:
            TransitionError: If the device is not FAILED.
        """
        with self._locks.hold(device_id):
            device = self._require_device(device_id)
            state = self._states[device_id]
            if state.phase is not PartitionPhase.FAILED:
                raise TransitionError(f"Device {device_id} is {state.phase.value}, not failed")

            realized = scheme or self._driver.realized_scheme(device_id) or state.current
            realized.validate_for(device, self._settings.max_time_slice_replicas)
            if realized != state.current:
                state.current = realized
                state.generation += 1
            state.target = None
            state.pending = None
            state.failure_reason = ""
            state.verify_attempts = 0
            state.next_verify_at = None
            self._enter(state, PartitionPhase.ACTIVE)
            self._reconcile(state)
            self._uncordon_if_idle(device)
            logger.info(f"Device {device_id} fault cleared, active on {state.current}")
            return state

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def step(self, device_id: DeviceId, now: Optional[float] = None) -> DevicePartitionState:
        """Advance one device as far as its current conditions allow."""
        now = self._clock() if now is None else now
        with self._locks.hold(device_id):
            self._require_device(device_id)
            state = self._states[device_id]
            for _ in range(_MAX_CHAINED_PHASES):
                if not self._advance(state, now):
                    break
            return state

    def _advance(self, state: DevicePartitionState, now: float) -> bool:
        phase = state.phase
        device = self._devices[state.device_id]

        if phase is PartitionPhase.ACTIVE:
            if state.pending is not None:
                pending, state.pending = state.pending, None
                if pending != state.current:
                    self._begin(state, pending)
                    return True
                self._persist(state)
            return False

        if phase is PartitionPhase.DRAIN_REQUESTED:
            if self._reconciler.in_use_count(state.device_id) == 0:
                self._enter(state, PartitionPhase.DRAINING)
                return True
            if self._drain_expired(state, now):
                return self._fail(state, self._drain_timeout_reason(state))
            if self._settings.evict_on_drain and not state.evictions_issued:
                started = state.drain_started_at or state.phase_entered_at
                if now - started >= self._settings.drain_grace_seconds and self._evict(state, device):
                    self._enter(state, PartitionPhase.DRAINING)
                    return True
            return False

        if phase is PartitionPhase.DRAINING:
            if self._reconciler.in_use_count(state.device_id) == 0:
                self._enter(state, PartitionPhase.RECONFIGURING)
                return True
            if self._drain_expired(state, now):
                return self._fail(state, self._drain_timeout_reason(state))
            return False

        if phase is PartitionPhase.RECONFIGURING:
            if self._reconciler.in_use_count(state.device_id) != 0:
                # Only reachable through a stale resume; drain again
                self._enter(state, PartitionPhase.DRAINING)
                return False
            try:
                self._driver.apply_scheme(device, state.target)
            except DeviceDriverError as e:
                return self._fail(state, f"Reconfiguration to {state.target} failed: {e}")
            state.verify_attempts = 0
            state.next_verify_at = now
            self._enter(state, PartitionPhase.VERIFYING)
            return True

        if phase is PartitionPhase.VERIFYING:
            if state.next_verify_at is not None and now < state.next_verify_at:
                return False
            realized = Counter(self._driver.realized_units(state.device_id))
            expected = state.target.expected_shape()
            if realized == expected:
                self._complete(state, device)
                return True
            state.verify_attempts += 1
            if state.verify_attempts >= self._settings.verify_max_attempts:
                return self._fail(
                    state,
                    f"Verification failed after {state.verify_attempts} attempts: expected "
                    f"{_describe_shape(expected)}, device reports {_describe_shape(realized)}",
                )
            backoff = min(
                self._settings.verify_backoff_seconds * 2 ** (state.verify_attempts - 1),
                self._settings.verify_backoff_max_seconds,
            )
            state.next_verify_at = now + backoff
            self._persist(state)
            logger.warning(
                f"Device {state.device_id} verification mismatch "
                f"(attempt {state.verify_attempts}), retrying in {backoff:.1f}s"
            )
            return False

        return False

    def _begin(self, state: DevicePartitionState, scheme: PartitionScheme) -> None:
        device = self._devices[state.device_id]
        state.target = scheme
        state.pending = None
        state.drain_started_at = self._clock()
        state.evictions_issued = False
        state.verify_attempts = 0
        state.next_verify_at = None
        self._enter(state, PartitionPhase.DRAIN_REQUESTED)
        self._reconcile(state)
        self._cordon(device)
        logger.info(f"Device {state.device_id} transition {state.current} -> {scheme} requested")

    def _complete(self, state: DevicePartitionState, device: GPUDevice) -> None:
        previous = state.current
        state.current = state.target
        state.target = None
        state.generation += 1
        state.drain_started_at = None
        state.next_verify_at = None
        state.failure_reason = ""
        if state.pending == state.current:
            state.pending = None
        self._enter(state, PartitionPhase.ACTIVE)
        self._reconcile(state)
        if state.pending is None:
            self._uncordon_if_idle(device)
        logger.info(
            f"Device {state.device_id} transitioned {previous} -> {state.current} "
            f"(generation {state.generation})"
        )

    def _fail(self, state: DevicePartitionState, reason: str) -> bool:
        state.failure_reason = reason
        self._enter(state, PartitionPhase.FAILED)
        self._reconcile(state)
        self._uncordon_if_idle(self._devices[state.device_id])
        logger.error(f"Device {state.device_id} FAILED: {reason}")
        return False

    def _enter(self, state: DevicePartitionState, phase: PartitionPhase) -> None:
        previous = state.phase
        state.phase = phase
        state.phase_entered_at = self._clock()
        self._persist(state)
        if previous is not phase:
            logger.debug(f"Device {state.device_id} {previous.value} -> {phase.value}")
            for listener in self._listeners:
                listener(state, previous)

    def _drain_expired(self, state: DevicePartitionState, now: float) -> bool:
        started = state.drain_started_at or state.phase_entered_at
        return now - started > self._settings.drain_timeout_seconds

    def _drain_timeout_reason(self, state: DevicePartitionState) -> str:
        busy = self._reconciler.in_use_count(state.device_id)
        return (
            f"Drain timeout after {self._settings.drain_timeout_seconds:.0f}s "
            f"with {busy} units still in use"
        )

    def _reconcile(self, state: DevicePartitionState) -> None:
        self._reconciler.reconcile_device(
            self._devices[state.device_id],
            state.current,
            state.generation,
            blocked=state.phase.blocks_consumption,
            failed=state.phase is PartitionPhase.FAILED,
        )

    def _evict(self, state: DevicePartitionState, device: GPUDevice) -> bool:
        """Ask the orchestrator to evict every holder; retried next step on failure."""
        holders = self._reconciler.holders(state.device_id)
        try:
            self._orchestrator.evict(device.node, state.device_id, holders)
        except OrchestratorError as e:
            logger.error(f"Eviction on {state.device_id} failed: {e}")
            return False
        state.evictions_issued = True
        logger.warning(f"Evicting {len(holders)} workloads from {state.device_id}")
        return True

    def _cordon(self, device: GPUDevice) -> None:
        try:
            self._orchestrator.cordon(device.node)
        except OrchestratorError as e:
            logger.error(f"Cordon of node {device.node} failed: {e}")

    def _uncordon_if_idle(self, device: GPUDevice) -> None:
        with self._registry_lock:
            nodes = {d: dev.node for d, dev in self._devices.items()}
            states = list(self._states.values())
        busy = [
            s for s in states
            if s.is_transitioning and nodes.get(s.device_id, device.node) == device.node
        ]
        if busy:
            return
        try:
            self._orchestrator.uncordon(device.node)
        except OrchestratorError as e:
            logger.error(f"Uncordon of node {device.node} failed: {e}")

    def _persist(self, state: DevicePartitionState) -> None:
        if self._store is None:
            return
        state.version = self._store.put(KIND_PARTITION_STATES, state.device_id, state.to_dict())

    def _persist_device(self, device: GPUDevice) -> None:
        if self._store is not None:
            self._store.put(KIND_DEVICES, device.device_id, device.to_dict())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def _require_device(self, device_id: DeviceId) -> GPUDevice:
        device = self._devices.get(device_id)
        if device is None:
            raise DeviceUnavailable(f"Unknown device {device_id}")
        return device

    def get_state(self, device_id: DeviceId) -> Optional[DevicePartitionState]:
        return self._states.get(device_id)

    def states(self) -> list[DevicePartitionState]:
        with self._registry_lock:
            return [self._states[d] for d in sorted(self._states)]

    def get_device(self, device_id: DeviceId) -> Optional[GPUDevice]:
        return self._devices.get(device_id)

    def devices(self) -> list[GPUDevice]:
        with self._registry_lock:
            return [self._devices[d] for d in sorted(self._devices)]


def _describe_shape(shape: Counter) -> str:
    if not shape:
        return "no units"
    return ", ".join(f"{n}x{unit_type}" for unit_type, n in sorted(shape.items(), key=lambda kv: str(kv[0])))
