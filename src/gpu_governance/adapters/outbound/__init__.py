"""Outbound adapters - implementations of outbound ports.

- InMemoryObjectStore: versioned object store held in memory
- InMemoryOrchestrator: records cordons and evictions
- SimulatedDeviceDriver: applies schemes in memory, with fault injection
- NvmlDeviceInventory: NVML-backed device inventory (dev mode available)
- PrometheusExporter / OpenTelemetryTracer: observability
"""

from gpu_governance.adapters.outbound.in_memory_orchestrator import (
    EvictionRecord,
    InMemoryOrchestrator,
)
from gpu_governance.adapters.outbound.in_memory_store import InMemoryObjectStore
from gpu_governance.adapters.outbound.metrics import PrometheusExporter
from gpu_governance.adapters.outbound.simulated_driver import SimulatedDeviceDriver
from gpu_governance.adapters.outbound.tracing import OpenTelemetryTracer

__all__ = [
    "EvictionRecord",
    "InMemoryOrchestrator",
    "InMemoryObjectStore",
    "PrometheusExporter",
    "SimulatedDeviceDriver",
    "OpenTelemetryTracer",
]
