"""Outbound ports - interfaces for external collaborators.

Outbound ports define contracts for the systems the governance engine
depends on: the device inventory feed, the orchestrator, the device
driver layer and the declarative object store.
"""

from gpu_governance.ports.outbound.device_driver import DeviceDriverError, DeviceDriverPort
from gpu_governance.ports.outbound.device_inventory import DeviceInventoryPort
from gpu_governance.ports.outbound.object_store import (
    KIND_DEVICES,
    KIND_PARTITION_STATES,
    KIND_PROFILES,
    KIND_QUOTAS,
    ObjectStorePort,
    StoredObject,
    WatchEvent,
    WatchEventType,
)
from gpu_governance.ports.outbound.orchestrator import OrchestratorError, OrchestratorPort

__all__ = [
    "DeviceDriverError",
    "DeviceDriverPort",
    "DeviceInventoryPort",
    "ObjectStorePort",
    "StoredObject",
    "WatchEvent",
    "WatchEventType",
    "KIND_DEVICES",
    "KIND_PARTITION_STATES",
    "KIND_PROFILES",
    "KIND_QUOTAS",
    "OrchestratorError",
    "OrchestratorPort",
]
