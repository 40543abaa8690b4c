"""In-memory orchestrator for testing and development.

Records cordons and evictions instead of talking to a cluster. An
eviction callback lets the engine (or a test) react as if the evicted
pods had terminated.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from gpu_governance.domain.value_objects.identifiers import DeviceId, NodeName, RequestId
from gpu_governance.ports.outbound.orchestrator import OrchestratorError

logger = logging.getLogger(__name__)


@dataclass
class EvictionRecord:
    """One eviction issued through the orchestrator."""
    node: NodeName
    device_id: Optional[DeviceId]
    request_ids: list[RequestId] = field(default_factory=list)


class InMemoryOrchestrator:
    """Mock implementation of OrchestratorPort.

    Example:
        orchestrator = InMemoryOrchestrator()
        orchestrator.cordon("node-a")
        assert orchestrator.is_cordoned("node-a")
    """

    def __init__(self, on_evict: Optional[Callable[[list[RequestId]], None]] = None) -> None:
        """Initialize the mock orchestrator.

        Args:
            on_evict: Called with the request ids of every eviction.
        """
        self._cordoned: set[NodeName] = set()
        self._evictions: list[EvictionRecord] = []
        self._on_evict = on_evict
        self._fail_evictions = False
        self._lock = threading.Lock()

    def set_eviction_callback(self, on_evict: Optional[Callable[[list[RequestId]], None]]) -> None:
        self._on_evict = on_evict

    def cordon(self, node: NodeName) -> None:
        with self._lock:
            if node not in self._cordoned:
                self._cordoned.add(node)
                logger.info(f"Node {node} cordoned")

    def uncordon(self, node: NodeName) -> None:
        with self._lock:
            if node in self._cordoned:
                self._cordoned.discard(node)
                logger.info(f"Node {node} uncordoned")

    def evict(
        self,
        node: NodeName,
        device_id: Optional[DeviceId],
        request_ids: Iterable[RequestId],
    ) -> None:
        """Record an eviction and notify the callback.

        Raises:
            OrchestratorError: If evictions were set to fail.
        """
        request_ids = sorted(request_ids)
        with self._lock:
            if self._fail_evictions:
                raise OrchestratorError(f"Eviction on {node} refused")
            self._evictions.append(EvictionRecord(node, device_id, list(request_ids)))
        logger.info(f"Evicting {len(request_ids)} workloads from {device_id or node}")
        if self._on_evict is not None and request_ids:
            self._on_evict(request_ids)

    def fail_evictions(self, fail: bool = True) -> None:
        """Make subsequent evictions raise OrchestratorError."""
        self._fail_evictions = fail

    def is_cordoned(self, node: NodeName) -> bool:
        return node in self._cordoned

    @property
    def cordoned_nodes(self) -> set[NodeName]:
        return set(self._cordoned)

    @property
    def evictions(self) -> list[EvictionRecord]:
        return list(self._evictions)
