"""Orchestrator port for node cordoning and workload eviction.

The orchestrator owns pod/container lifecycles. The governance engine
only asks it to stop placing work on a node and to evict the workloads
bound to a device's units.
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Iterable, Protocol

from gpu_governance.domain.value_objects.identifiers import DeviceId, NodeName, RequestId


class OrchestratorError(Exception):
    """Orchestrator rejected or failed an operation."""
    pass


class OrchestratorPort(Protocol):
    """Protocol for the cluster orchestrator collaborator.

    Thread Safety:
        Implementations must be thread-safe; different devices on the
        same node may drain concurrently.
    """

    @abstractmethod
    def cordon(self, node: NodeName) -> None:
        """Stop scheduling new workloads onto a node."""
        ...

    @abstractmethod
    def uncordon(self, node: NodeName) -> None:
        """Allow scheduling onto a node again."""
        ...

    @abstractmethod
    def evict(self, node: NodeName, device_id: DeviceId, request_ids: Iterable[RequestId]) -> None:
        """Evict the workloads of the given requests from a device.

        Eviction is asynchronous: the orchestrator reports completion of
        each workload back through the governance API.

        Raises:
            OrchestratorError: If eviction could not be requested.
        """
        ...
