"""OpenTelemetry tracing for the governance engine.

Spans cover request submission, unit reconciliation and partition
transition steps. The tracer provider and exporter are configured in
gpu_governance.infrastructure.tracing.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from opentelemetry import trace


class OpenTelemetryTracer:
    """Span helpers around governance operations."""

    def __init__(
        self,
        service_name: str = "gpu-governance",
        tracer: Optional[trace.Tracer] = None,
    ):
        """Initialize the tracer.

        Args:
            service_name: Name of the service for traces.
            tracer: Tracer to use; defaults to the global provider's.
        """
        self.tracer = tracer or trace.get_tracer("gpu_governance")
        self.service_name = service_name

    @contextmanager
    def trace_submit(self, team: str, profile_id: str, count: int) -> Generator[trace.Span, None, None]:
        """Trace a workload submission.

        Args:
            team: Submitting team.
            profile_id: Requested profile.
            count: Requested unit count.

        Yields:
            The active span; callers add the outcome.
        """
        with self.tracer.start_as_current_span(
            "admission.submit",
            attributes={
                "request.team": team,
                "request.profile": profile_id,
                "request.count": count,
                "service.name": self.service_name,
            }
        ) as span:
            yield span

    @contextmanager
    def trace_evaluate(self, reason: str) -> Generator[trace.Span, None, None]:
        with self.tracer.start_as_current_span(
            "admission.evaluate",
            attributes={
                "evaluate.reason": reason,
                "service.name": self.service_name,
            }
        ) as span:
            yield span

    @contextmanager
    def trace_reconcile(self, device_id: str) -> Generator[trace.Span, None, None]:
        with self.tracer.start_as_current_span(
            "inventory.reconcile",
            attributes={
                "device.id": device_id,
                "service.name": self.service_name,
            }
        ) as span:
            yield span

    @contextmanager
    def trace_transition_step(self, device_id: str, phase: str) -> Generator[trace.Span, None, None]:
        """Trace one partition state machine step.

        Args:
            device_id: Device being advanced.
            phase: Phase before the step.

        Yields:
            The active span.
        """
        with self.tracer.start_as_current_span(
            "partition.step",
            attributes={
                "device.id": device_id,
                "partition.phase": phase,
                "service.name": self.service_name,
            }
        ) as span:
            yield span
