"""Dependency injection container for GPU governance."""

from dataclasses import dataclass
from typing import Optional

import structlog
from opentelemetry import trace

from gpu_governance.adapters.outbound.in_memory_orchestrator import InMemoryOrchestrator
from gpu_governance.adapters.outbound.in_memory_store import InMemoryObjectStore
from gpu_governance.adapters.outbound.metrics import PrometheusExporter
from gpu_governance.adapters.outbound.nvml_inventory import NvmlDeviceInventory
from gpu_governance.adapters.outbound.simulated_driver import SimulatedDeviceDriver
from gpu_governance.adapters.outbound.tracing import OpenTelemetryTracer
from gpu_governance.application.coordinator import GovernanceEngine
from gpu_governance.domain.services.admission_controller import AdmissionSettings
from gpu_governance.domain.services.partition_manager import TransitionSettings
from gpu_governance.domain.value_objects.admission_policy import AdmissionPolicy
from gpu_governance.infrastructure.config import Config, get_config
from gpu_governance.infrastructure.logging import get_logger, setup_logging
from gpu_governance.infrastructure.metrics import get_metrics
from gpu_governance.infrastructure.tracing import setup_tracing


def build_engine(
    config: Config,
    metrics: Optional[PrometheusExporter] = None,
    tracer: Optional[trace.Tracer] = None,
) -> GovernanceEngine:
    """Wire a GovernanceEngine with in-memory collaborators.

    The device inventory reads NVML, or simulated devices in dev mode.
    """
    transition = config.transition
    admission = config.admission
    orchestrator = InMemoryOrchestrator()
    engine = GovernanceEngine(
        inventory=NvmlDeviceInventory(
            node=config.inventory.node_name,
            dev_mode=config.inventory.dev_mode,
            dev_device_count=config.inventory.dev_device_count,
            dev_memory_mb=config.inventory.dev_memory_mb,
        ),
        orchestrator=orchestrator,
        driver=SimulatedDeviceDriver(),
        store=InMemoryObjectStore(),
        transition=TransitionSettings(
            drain_timeout_seconds=transition.drain_timeout_seconds,
            drain_grace_seconds=transition.drain_grace_seconds,
            evict_on_drain=transition.evict_on_drain,
            verify_max_attempts=transition.verify_max_attempts,
            verify_backoff_seconds=transition.verify_backoff_seconds,
            verify_backoff_max_seconds=transition.verify_backoff_max_seconds,
            max_time_slice_replicas=transition.max_time_slice_replicas,
        ),
        admission=AdmissionSettings(
            policy=AdmissionPolicy(admission.policy),
            max_queue_size=admission.max_queue_size,
            default_timeout_seconds=admission.default_timeout_seconds,
            finished_retention=admission.finished_retention,
        ),
        headroom_mb=config.capacity.shared_headroom_mb,
        headroom_fraction=config.capacity.shared_headroom_fraction,
        event_workers=admission.event_workers,
        metrics=metrics,
        tracer=OpenTelemetryTracer(tracer=tracer) if tracer is not None else None,
    )
    orchestrator.set_eviction_callback(engine.report_evicted)
    return engine


@dataclass
class Container:
    """Dependency injection container for GPU governance components."""

    config: Config
    logger: structlog.stdlib.BoundLogger
    tracer: Optional[trace.Tracer]
    metrics: Optional[PrometheusExporter]
    engine: GovernanceEngine

    _instance: "Container | None" = None

    @classmethod
    def create(cls, config: Config | None = None) -> "Container":
        """Create and initialize the container with all dependencies."""
        if cls._instance is not None:
            return cls._instance

        config = config or get_config()
        observability = config.observability
        setup_logging(observability.log_level, observability.log_format)
        logger = get_logger("gpu_governance")
        tracer = setup_tracing(config) if observability.enable_tracing else None
        metrics = get_metrics() if observability.enable_metrics else None

        engine = build_engine(config, metrics, tracer)

        cls._instance = cls(
            config=config,
            logger=logger,
            tracer=tracer,
            metrics=metrics,
            engine=engine,
        )

        logger.info(
            "gpu_governance_container_initialized",
            environment=observability.environment,
            policy=config.admission.policy,
            dev_mode=config.inventory.dev_mode,
        )

        return cls._instance

    @classmethod
    def get(cls) -> "Container":
        """Get the singleton container instance."""
        if cls._instance is None:
            return cls.create()
        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the container (useful for testing)."""
        if cls._instance is not None:
            cls._instance.engine.shutdown()
        cls._instance = None


def get_container() -> Container:
    """Get the dependency injection container."""
    return Container.get()
