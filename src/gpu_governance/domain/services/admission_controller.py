"""Quota- and priority-aware admission of workload requests.

The controller implements:
1. Structural validation: unknown profiles or teams, queue binding
   mismatches, counts outside the profile range and memory above the
   profile ceiling are rejected at once and never queued
2. Fair-share queue: effective priority (priority x team weight)
   descending, then arrival order
3. Head-of-line blocking per unit type: a capacity-blocked entry holds back
   later entries for the same unit type so large requests cannot starve;
   quota-blocked entries do not block anyone
4. Gang admission: every unit of a request is reserved or none is
5. Policies: strict quota, borrowing up to a limit, and priority
   preemption of borrowed units
"""

from __future__ import annotations

import bisect
import logging
import threading
import time
from collections import Counter, defaultdict, deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
from gpu_governance.domain.entities.quota import Quota
from gpu_governance.domain.entities.workload import (
    AdmissionDecision,
    AdmissionOutcome,
    RequestState,
    WorkloadRequest,
)
from gpu_governance.domain.errors import AdmissionOverloadError, CapacityError, ValidationError
from gpu_governance.domain.services.capacity_accountant import CapacityAccountant
from gpu_governance.domain.services.device_locks import DeviceLockTable
from gpu_governance.domain.services.inventory_reconciler import InventoryReconciler
from gpu_governance.domain.services.profile_registry import HardwareProfileRegistry
from gpu_governance.domain.value_objects.admission_policy import AdmissionPolicy
from gpu_governance.domain.value_objects.identifiers import (
    DeviceId,
    RequestId,
    TeamId,
    UnitId,
    create_request_id,
)
from gpu_governance.domain.value_objects.unit_types import UnitType

logger = logging.getLogger(__name__)


@dataclass
class AdmissionSettings:
    """Admission behaviour knobs."""
    policy: AdmissionPolicy = AdmissionPolicy.BORROW_WITH_LIMIT
    max_queue_size: int = 10_000
    default_timeout_seconds: Optional[float] = None
    finished_retention: int = 10_000     # Finished requests kept for status queries


class _Blocked(Enum):
    QUOTA = "quota"         # Team is at its share; others may proceed
    CAPACITY = "capacity"   # Not enough free units; blocks its unit type


PreemptionHandler = Callable[[WorkloadRequest, list[UnitId]], None]
DecisionListener = Callable[[WorkloadRequest, AdmissionDecision], None]


class AdmissionController:
    """Admits requests against the unit pool under team quotas."""

    def __init__(
        self,
        registry: HardwareProfileRegistry,
        reconciler: InventoryReconciler,
        accountant: CapacityAccountant,
        locks: Optional[DeviceLockTable] = None,
        settings: Optional[AdmissionSettings] = None,
        preemption_handler: Optional[PreemptionHandler] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the controller.

        Args:
            registry: Resolves profile identifiers.
            reconciler: Unit pool; admission claims and releases units.
            accountant: Memory ledger consulted before every admission.
            locks: Shared per-device lock table.
            settings: Policy and queue limits.
            preemption_handler: Called with each preempted request and the
                units it lost, e.g. to evict its workload through the
                orchestrator.
            clock: Time source.
        """
        self._registry = registry
        self._reconciler = reconciler
        self._accountant = accountant
        self._locks = locks or DeviceLockTable()
        self._settings = settings or AdmissionSettings()
        self._preemption_handler = preemption_handler
        self._clock = clock

        self._quotas: dict[TeamId, Quota] = {}
        self._requests: dict[RequestId, WorkloadRequest] = {}
        self._finished: deque[RequestId] = deque()
        self._queue: list[tuple[tuple[float, int], RequestId]] = []
        self._blocked_reasons: dict[RequestId, str] = {}
        self._usage: Counter[TeamId] = Counter()
        self._listeners: list[DecisionListener] = []
        self._seq = 0
        self._counter = 0
        self._lock = threading.RLock()

    @property
    def policy(self) -> AdmissionPolicy:
        return self._settings.policy

    def set_preemption_handler(self, handler: Optional[PreemptionHandler]) -> None:
        self._preemption_handler = handler

    def subscribe(self, listener: DecisionListener) -> None:
        """Register a callback for decisions made outside submit()."""
        self._listeners.append(listener)

    # ------------------------------------------------------------------
    # Quotas
    # ------------------------------------------------------------------

    def declare_quota(self, quota: Quota) -> Quota:
        """Create or replace a team's quota and re-evaluate the queue.

        Raises:
            ValidationError: If the quota is malformed.
        """
        quota.validate()
        with self._lock:
            current = self._quotas.get(quota.team)
            quota.version = current.version + 1 if current else max(quota.version, 1)
            self._quotas[quota.team] = quota
            self._rekey_queue()
            logger.info(
                f"Quota for {quota.team}: nominal={quota.nominal_units} "
                f"borrow={quota.borrowing_limit} weight={quota.priority_weight}"
            )
            self.evaluate_queue()
            return quota

    def remove_quota(self, team: TeamId) -> bool:
        """Drop a team's quota. Its queued requests stay quota-blocked."""
        with self._lock:
            return self._quotas.pop(team, None) is not None

    def get_quota(self, team: TeamId) -> Optional[Quota]:
        return self._quotas.get(team)

    def quotas(self) -> list[Quota]:
        return [self._quotas[t] for t in sorted(self._quotas)]

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def submit(self, request: WorkloadRequest) -> AdmissionDecision:
        """Submit a request for admission.

        Invalid requests are rejected and never queued. Valid requests are
        admitted at once when quota and capacity allow and no earlier entry
        is waiting for the same unit type; otherwise they are queued.

        Returns:
            AdmissionDecision describing the outcome.
        """
        with self._lock:
            now = self._clock()
            if not request.request_id:
                self._counter += 1
                request.request_id = create_request_id(request.team, self._counter)
            if request.request_id in self._requests:
                return AdmissionDecision(
                    request_id=request.request_id,
                    outcome=AdmissionOutcome.REJECTED,
                    reason=f"Duplicate request id {request.request_id}",
                    error=ValidationError.__name__,
                )

            request.submitted_at = now
            self._requests[request.request_id] = request

            try:
                self._validate(request)
            except ValidationError as e:
                return self._reject(request, e)

            if len(self._queue) >= self._settings.max_queue_size:
                return self._reject(
                    request,
                    AdmissionOverloadError(f"Admission queue is full ({self._settings.max_queue_size})"),
                )

            timeout = request.timeout_seconds
            if timeout is None:
                timeout = self._settings.default_timeout_seconds
            request.deadline = now + timeout if timeout is not None else None

            self._seq += 1
            request.arrival_seq = self._seq
            self._enqueue(request)
            self._evaluate(now, notify_except=request.request_id)

            if request.state is RequestState.ADMITTED:
                return self._admitted_decision(request)
            return self._queued_decision(request)

    def _validate(self, request: WorkloadRequest) -> None:
        profile = self._registry.get(request.profile_id)
        if profile is None:
            raise ValidationError(f"Unknown profile {request.profile_id!r}")
        if profile.unit_type is None:
            raise ValidationError(f"Profile {profile.identifier!r} targets no known unit type")
        if request.team not in self._quotas:
            raise ValidationError(f"Unknown team {request.team!r} (no quota declared)")
        if profile.queue is not None and profile.queue != request.team:
            raise ValidationError(
                f"Profile {profile.identifier!r} is bound to queue {profile.queue!r}, "
                f"not {request.team!r}"
            )
        # Snapshot: later profile updates do not affect this request
        request.profile = profile
        count = request.requested_count
        if not profile.min_count <= count <= profile.max_count:
            raise ValidationError(
                f"Count {count} outside [{profile.min_count}, {profile.max_count}] "
                f"for profile {profile.identifier!r}"
            )
        if request.memory_mb is not None:
            if request.memory_mb <= 0:
                raise ValidationError(f"memory_mb must be positive, got {request.memory_mb}")
            if request.memory_mb > profile.memory_limit_mb:
                raise ValidationError(
                    f"memory_mb {request.memory_mb} exceeds the {profile.memory_limit_mb} MB "
                    f"ceiling of profile {profile.identifier!r}"
                )
        if request.timeout_seconds is not None and request.timeout_seconds <= 0:
            raise ValidationError(f"timeout_seconds must be positive, got {request.timeout_seconds}")

    def _reject(self, request: WorkloadRequest, error: Exception) -> AdmissionDecision:
        request.state = RequestState.REJECTED
        request.rejection_reason = str(error)
        request.error_kind = type(error).__name__
        self._finish(request)
        logger.info(f"Request {request.request_id} rejected: {error}")
        return AdmissionDecision(
            request_id=request.request_id,
            outcome=AdmissionOutcome.REJECTED,
            reason=str(error),
            error=request.error_kind,
        )

    def _finish(self, request: WorkloadRequest, now: Optional[float] = None) -> None:
        """Stamp a terminal request and forget the oldest ones past retention."""
        request.finished_at = self._clock() if now is None else now
        self._finished.append(request.request_id)
        while len(self._finished) > self._settings.finished_retention:
            stale = self._requests.get(self._finished.popleft())
            if stale is not None and stale.state.is_terminal:
                del self._requests[stale.request_id]

    def cancel(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        """Cancel a queued or admitted request.

        Queued requests leave the queue with no other side effect. Admitted
        requests release their reservations and units, and the queue is
        re-evaluated.

        Returns:
            The request, or None if unknown. Terminal requests are
            returned unchanged.
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.state.is_terminal:
                return request
            if request.state is RequestState.QUEUED:
                self._dequeue(request_id)
                request.state = RequestState.CANCELLED
                self._finish(request)
                logger.info(f"Request {request_id} cancelled while queued")
                return request
            self._release(request)
            request.state = RequestState.CANCELLED
            self._finish(request)
            logger.info(f"Request {request_id} cancelled, units released")
            self.evaluate_queue()
            return request

    def complete(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        """Mark an admitted request finished and free its units.

        Raises:
            ValidationError: If the request is not admitted.
        """
        with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return None
            if request.state is not RequestState.ADMITTED:
                raise ValidationError(
                    f"Request {request_id} is {request.state.value}, only admitted requests complete"
                )
            self._release(request)
            request.state = RequestState.COMPLETED
            self._finish(request)
            logger.info(f"Request {request_id} completed after {request.finished_at - request.admitted_at:.1f}s")
            self.evaluate_queue()
            return request

    def expire(self, now: Optional[float] = None) -> list[WorkloadRequest]:
        """Reject queued requests whose caller timeout has passed."""
        with self._lock:
            now = self._clock() if now is None else now
            expired = []
            for _, request_id in list(self._queue):
                request = self._requests[request_id]
                if request.deadline is not None and now >= request.deadline:
                    self._dequeue(request_id)
                    request.state = RequestState.REJECTED
                    request.rejection_reason = (
                        f"Timeout: queued for {now - request.submitted_at:.1f}s "
                        f"({self._blocked_reasons.get(request_id, 'waiting')})"
                    )
                    request.error_kind = "Timeout"
                    self._finish(request, now)
                    expired.append(request)
                    logger.info(f"Request {request_id} timed out in queue")
                    self._notify(request, AdmissionDecision(
                        request_id=request_id,
                        outcome=AdmissionOutcome.REJECTED,
                        reason=request.rejection_reason,
                        error="Timeout",
                    ))
            if expired:
                self._evaluate(now)
            return expired

    # ------------------------------------------------------------------
    # Queue evaluation
    # ------------------------------------------------------------------

    def evaluate_queue(self, now: Optional[float] = None) -> list[AdmissionDecision]:
        """Admit whatever the current quotas and unit pool allow.

        Returns:
            Decisions for requests admitted by this pass.
        """
        with self._lock:
            return self._evaluate(self._clock() if now is None else now)

    def _evaluate(self, now: float, notify_except: Optional[RequestId] = None) -> list[AdmissionDecision]:
        admitted = []
        blocked_types: set[UnitType] = set()
        for _, request_id in list(self._queue):
            request = self._requests.get(request_id)
            if request is None or request.state is not RequestState.QUEUED:
                continue
            unit_type = request.profile.unit_type
            if unit_type in blocked_types:
                self._blocked_reasons[request_id] = f"Waiting behind an earlier request for {unit_type}"
                continue

            blocked, reason = self._try_admit(request, now)
            if blocked is None:
                decision = self._admitted_decision(request)
                admitted.append(decision)
                if request_id != notify_except:
                    self._notify(request, decision)
            else:
                self._blocked_reasons[request_id] = reason
                if blocked is _Blocked.CAPACITY:
                    blocked_types.add(unit_type)
        return admitted

    def _try_admit(self, request: WorkloadRequest, now: float) -> tuple[Optional[_Blocked], str]:
        quota = self._quotas.get(request.team)
        if quota is None:
            return _Blocked.QUOTA, f"Team {request.team!r} has no quota"

        count = request.requested_count
        used = self._usage[request.team]
        borrow = used + count > quota.nominal_units
        if borrow:
            if not self.policy.allows_borrowing:
                return _Blocked.QUOTA, (
                    f"Team {request.team!r} would exceed its nominal share "
                    f"({used} + {count} > {quota.nominal_units})"
                )
            if used + count > quota.ceiling_units:
                return _Blocked.QUOTA, (
                    f"Team {request.team!r} would exceed its borrowing limit "
                    f"({used} + {count} > {quota.ceiling_units})"
                )

        units, reason = self._reserve_gang(request)
        if units is None and not borrow and self.policy.allows_preemption:
            units, reason = self._preempt_for(request, reason)
        if units is None:
            return _Blocked.CAPACITY, reason

        self._dequeue(request.request_id)
        request.state = RequestState.ADMITTED
        request.unit_ids = [u.unit_id for u in units]
        request.borrowed = borrow
        request.admitted_at = now
        self._usage[request.team] += count
        logger.info(
            f"Request {request.request_id} admitted on {len(units)} x {request.profile.unit_type}"
            f"{' (borrowed)' if borrow else ''}"
        )
        return None, ""

    def _reserve_gang(self, request: WorkloadRequest) -> tuple[Optional[list[AllocatableUnit]], str]:
        """Reserve and claim every unit of a request, or nothing."""
        unit_type = request.profile.unit_type
        count = request.requested_count
        memory_mb = request.memory_per_unit_mb
        candidates = [
            u for u in self._reconciler.free_units(unit_type)
            if not u.kind.is_isolated or u.memory_share_mb >= memory_mb
        ]
        if len(candidates) < count:
            return None, f"Only {len(candidates)} of {count} {unit_type} units free"
        candidates.sort(key=lambda u: (u.device_id, u.ordinal))

        reason = ""
        with self._locks.hold_all(u.device_id for u in candidates):
            chosen: list[AllocatableUnit] = []
            for unit in candidates:
                if not unit.is_free:
                    continue
                decision = self._accountant.reserve(unit, memory_mb, request.request_id)
                if decision.ok:
                    chosen.append(unit)
                    if len(chosen) == count:
                        break
                else:
                    reason = decision.reason

            if len(chosen) == count:
                try:
                    self._reconciler.claim([u.unit_id for u in chosen], request.request_id)
                    return chosen, ""
                except CapacityError as e:
                    reason = str(e)

            for unit in chosen:
                self._accountant.release(unit, request.request_id)
        return None, reason or f"Could not reserve {count} {unit_type} units"

    def _preempt_for(self, request: WorkloadRequest, reason: str) -> tuple[Optional[list[AllocatableUnit]], str]:
        """Reclaim borrowed units from lower-priority requests of other teams."""
        unit_type = request.profile.unit_type
        mine = self._effective_priority(request)
        victims = [
            r for r in self._requests.values()
            if r.state is RequestState.ADMITTED
            and r.borrowed
            and r.team != request.team
            and r.profile.unit_type == unit_type
            and self._effective_priority(r) < mine
        ]
        if not victims:
            return None, reason

        victims.sort(key=lambda r: (self._effective_priority(r), -(r.admitted_at or 0.0)))
        plan = self._plan_preemption(request, victims)
        if plan is None:
            return None, reason
        for victim in plan:
            self._preempt(victim, request)
        return self._reserve_gang(request)

    def _plan_preemption(
        self, request: WorkloadRequest, victims: list[WorkloadRequest]
    ) -> Optional[list[WorkloadRequest]]:
        """Pick the shortest prefix of victims whose units would let the gang fit.

        Only units on available devices count, and shared units also need
        their device's memory ceiling to hold the request after the victims'
        reservations are returned. Nothing is released here.
        """
        memory_mb = request.memory_per_unit_mb

        def usable(unit: Optional[AllocatableUnit]) -> bool:
            return unit is not None and unit.available and (
                not unit.kind.is_isolated or unit.memory_share_mb >= memory_mb
            )

        pool = [u for u in self._reconciler.free_units(request.profile.unit_type) if usable(u)]
        freed_mb: Counter[DeviceId] = Counter()
        plan = []
        for victim in victims:
            reclaimed = [u for u in map(self._reconciler.get_unit, victim.unit_ids) if usable(u)]
            if not reclaimed:
                continue
            plan.append(victim)
            for unit in reclaimed:
                pool.append(unit)
                if not unit.kind.is_isolated:
                    freed_mb[unit.device_id] += self._accountant.unit_reservation_mb(unit)
            if self._fit_count(pool, freed_mb, memory_mb) >= request.requested_count:
                return plan
        return None

    def _fit_count(self, pool: list[AllocatableUnit], freed_mb: Counter[DeviceId], memory_mb: int) -> int:
        by_device: defaultdict[DeviceId, list[AllocatableUnit]] = defaultdict(list)
        for unit in pool:
            by_device[unit.device_id].append(unit)
        fit = 0
        for device_id, units in by_device.items():
            if units[0].kind.is_isolated:
                fit += len(units)
                continue
            spare = (
                self._accountant.ceiling_mb(device_id)
                - self._accountant.reserved_mb(device_id)
                + freed_mb[device_id]
            )
            fit += min(len(units), max(0, spare // memory_mb))
        return fit

    def _preempt(self, victim: WorkloadRequest, by: WorkloadRequest) -> None:
        lost = list(victim.unit_ids)
        self._release(victim)
        victim.state = RequestState.QUEUED
        victim.preemption_count += 1
        victim.admitted_at = None
        self._enqueue(victim)
        self._blocked_reasons[victim.request_id] = f"Preempted by {by.request_id}"
        logger.warning(
            f"Request {victim.request_id} ({victim.team}) preempted by "
            f"{by.request_id} ({by.team})"
        )
        if self._preemption_handler is not None:
            self._preemption_handler(victim, lost)
        self._notify(victim, self._queued_decision(victim))

    def _release(self, request: WorkloadRequest) -> None:
        units = [self._reconciler.get_unit(uid) for uid in request.unit_ids]
        for unit in units:
            if unit is not None:
                self._accountant.release(unit, request.request_id)
        self._reconciler.release(request.unit_ids, request.request_id)
        self._usage[request.team] -= len(request.unit_ids)
        if self._usage[request.team] <= 0:
            del self._usage[request.team]
        request.unit_ids = []
        request.borrowed = False

    # ------------------------------------------------------------------
    # Queue bookkeeping
    # ------------------------------------------------------------------

    def _effective_priority(self, request: WorkloadRequest) -> float:
        quota = self._quotas.get(request.team)
        weight = quota.priority_weight if quota else 1.0
        return request.priority * weight

    def _enqueue(self, request: WorkloadRequest) -> None:
        request.state = RequestState.QUEUED
        key = (-self._effective_priority(request), request.arrival_seq)
        bisect.insort(self._queue, (key, request.request_id))

    def _dequeue(self, request_id: RequestId) -> None:
        self._queue = [entry for entry in self._queue if entry[1] != request_id]
        self._blocked_reasons.pop(request_id, None)

    def _rekey_queue(self) -> None:
        self._queue = sorted(
            ((-self._effective_priority(self._requests[rid]), self._requests[rid].arrival_seq), rid)
            for _, rid in self._queue
        )

    def _notify(self, request: WorkloadRequest, decision: AdmissionDecision) -> None:
        for listener in self._listeners:
            listener(request, decision)

    def _admitted_decision(self, request: WorkloadRequest) -> AdmissionDecision:
        units = [self._reconciler.get_unit(uid) for uid in request.unit_ids]
        return AdmissionDecision(
            request_id=request.request_id,
            outcome=AdmissionOutcome.ADMITTED,
            units=[u for u in units if u is not None],
        )

    def _queued_decision(self, request: WorkloadRequest) -> AdmissionDecision:
        return AdmissionDecision(
            request_id=request.request_id,
            outcome=AdmissionOutcome.QUEUED,
            position=self.queue_position(request.request_id),
            reason=self._blocked_reasons.get(request.request_id, ""),
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def queue_position(self, request_id: RequestId) -> Optional[int]:
        """1-based position in the queue, or None if not queued."""
        with self._lock:
            for i, (_, rid) in enumerate(self._queue):
                if rid == request_id:
                    return i + 1
            return None

    def blocked_reason(self, request_id: RequestId) -> str:
        return self._blocked_reasons.get(request_id, "")

    def get_request(self, request_id: RequestId) -> Optional[WorkloadRequest]:
        return self._requests.get(request_id)

    def requests(self, state: Optional[RequestState] = None) -> list[WorkloadRequest]:
        with self._lock:
            result = list(self._requests.values())
        if state is not None:
            result = [r for r in result if r.state is state]
        return sorted(result, key=lambda r: (r.submitted_at, r.request_id))

    def queued(self) -> list[WorkloadRequest]:
        """Queued requests in admission order."""
        with self._lock:
            return [self._requests[rid] for _, rid in self._queue]

    def team_usage(self, team: TeamId) -> int:
        """Units currently held by a team's admitted requests."""
        return self._usage[team]

    def stats(self) -> dict:
        """Admission statistics for status reporting."""
        with self._lock:
            states = Counter(r.state.value for r in self._requests.values())
            borrowed: defaultdict[TeamId, int] = defaultdict(int)
            for r in self._requests.values():
                if r.state is RequestState.ADMITTED and r.borrowed:
                    borrowed[r.team] += len(r.unit_ids)
            return {
                "policy": self.policy.value,
                "queue_depth": len(self._queue),
                "requests": dict(states),
                "teams": {
                    team: {
                        "nominal_units": quota.nominal_units,
                        "borrowing_limit": quota.borrowing_limit,
                        "used_units": self._usage[team],
                        "borrowed_units": borrowed[team],
                    }
                    for team, quota in sorted(self._quotas.items())
                },
            }
