"""Prometheus metrics export for GPU governance.

Exports unit pool, transition and admission statistics in Prometheus
format for time-series collection and alerting.
"""

from __future__ import annotations

from collections import Counter as Tally
from typing import TYPE_CHECKING, Iterable, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest

from gpu_governance.domain.entities.partition import PartitionPhase

if TYPE_CHECKING:
    from gpu_governance.domain.entities.allocatable_unit import AllocatableUnit
    from gpu_governance.domain.entities.partition import DevicePartitionState


class PrometheusExporter:
    """Export governance engine metrics to Prometheus."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        """Initialize Prometheus exporter.

        Args:
            registry: Prometheus collector registry. Creates a private one if None.
        """
        self.registry = registry or CollectorRegistry()

        # Unit pool
        self.units = Gauge(
            'governance_units',
            'Allocatable units by type and status',
            ['unit_type', 'status'],
            registry=self.registry,
        )

        self.device_phase = Gauge(
            'governance_device_phase',
            'Partition phase per device (1 for the current phase)',
            ['device_id', 'phase'],
            registry=self.registry,
        )

        self.reserved_memory = Gauge(
            'governance_reserved_memory_mb',
            'Reserved GPU memory per device in MB',
            ['device_id'],
            registry=self.registry,
        )

        # Transitions
        self.transitions = Counter(
            'governance_transitions_total',
            'Partition phase changes',
            ['from_phase', 'to_phase'],
            registry=self.registry,
        )

        # Admission
        self.admissions = Counter(
            'governance_admissions_total',
            'Admission outcomes',
            ['outcome', 'team'],
            registry=self.registry,
        )

        self.preemptions = Counter(
            'governance_preemptions_total',
            'Requests preempted to reclaim borrowed units',
            ['team'],
            registry=self.registry,
        )

        self.queue_depth = Gauge(
            'governance_queue_depth',
            'Requests waiting for admission',
            registry=self.registry,
        )

        self.admission_wait = Histogram(
            'governance_admission_wait_seconds',
            'Time between submission and admission',
            buckets=(0.01, 0.1, 1, 5, 30, 60, 300, 900, 3600),
            registry=self.registry,
        )

    def update_units(self, units: Iterable[AllocatableUnit]) -> None:
        """Refresh unit gauges from the current pool."""
        counts: Tally[tuple[str, str]] = Tally()
        for unit in units:
            if unit.in_use:
                status = 'in_use'
            elif unit.available:
                status = 'free'
            else:
                status = 'unavailable'
            counts[(unit.unit_type.identifier, status)] += 1

        self.units.clear()
        for (unit_type, status), n in counts.items():
            self.units.labels(unit_type=unit_type, status=status).set(n)

    def update_device_phase(self, state: DevicePartitionState) -> None:
        for phase in PartitionPhase:
            self.device_phase.labels(device_id=state.device_id, phase=phase.value).set(
                1 if phase is state.phase else 0
            )

    def update_reserved_memory(self, snapshot: dict[str, dict[str, int]]) -> None:
        for device_id, ledger in snapshot.items():
            self.reserved_memory.labels(device_id=device_id).set(
                ledger['reserved_shared_mb'] + ledger['reserved_isolated_mb']
            )

    def record_transition(self, previous: PartitionPhase, current: PartitionPhase) -> None:
        self.transitions.labels(from_phase=previous.value, to_phase=current.value).inc()

    def record_admission(self, outcome: str, team: str, wait_seconds: Optional[float] = None) -> None:
        """Record an admission outcome.

        Args:
            outcome: 'admitted', 'queued' or 'rejected'.
            team: Submitting team.
            wait_seconds: Queue wait for admitted requests.
        """
        self.admissions.labels(outcome=outcome, team=team).inc()
        if wait_seconds is not None:
            self.admission_wait.observe(wait_seconds)

    def record_preemption(self, team: str) -> None:
        self.preemptions.labels(team=team).inc()

    def set_queue_depth(self, depth: int) -> None:
        self.queue_depth.set(depth)

    def export_metrics(self) -> str:
        """Export metrics in Prometheus text format.

        Returns:
            Prometheus text format metrics.
        """
        return generate_latest(self.registry).decode('utf-8')
