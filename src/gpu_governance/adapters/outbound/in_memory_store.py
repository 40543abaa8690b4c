"""In-memory object store for testing and single-process deployments.

Implements ObjectStorePort with per-object versions, optimistic
concurrency and synchronous watch callbacks.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Callable, Optional

from gpu_governance.domain.errors import StoreConflictError
from gpu_governance.ports.outbound.object_store import StoredObject, WatchEvent, WatchEventType

logger = logging.getLogger(__name__)


class InMemoryObjectStore:
    """Versioned key-value store held in process memory.

    Example:
        store = InMemoryObjectStore()
        version = store.put("quotas", "ml", {"team": "ml", "nominal_units": 4})
        store.put("quotas", "ml", {...}, expected_version=version)
    """

    def __init__(self) -> None:
        self._objects: dict[tuple[str, str], StoredObject] = {}
        self._watchers: dict[str, list[Callable[[WatchEvent], None]]] = {}
        self._lock = threading.Lock()
        self._writes = 0

    def put(
        self,
        kind: str,
        key: str,
        value: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        """Write an object, bumping its version.

        Raises:
            StoreConflictError: If expected_version does not match.
        """
        with self._lock:
            current = self._objects.get((kind, key))
            current_version = current.version if current else 0
            if expected_version is not None and expected_version != current_version:
                raise StoreConflictError(
                    f"{kind}/{key}: expected version {expected_version}, found {current_version}"
                )
            obj = StoredObject(kind, key, copy.deepcopy(value), current_version + 1)
            self._objects[(kind, key)] = obj
            self._writes += 1
            watchers = list(self._watchers.get(kind, []))

        event = WatchEvent(WatchEventType.PUT, obj)
        for callback in watchers:
            callback(event)
        return obj.version

    def get(self, kind: str, key: str) -> Optional[StoredObject]:
        with self._lock:
            obj = self._objects.get((kind, key))
        if obj is None:
            return None
        return StoredObject(obj.kind, obj.key, copy.deepcopy(obj.value), obj.version)

    def delete(self, kind: str, key: str) -> bool:
        with self._lock:
            obj = self._objects.pop((kind, key), None)
            watchers = list(self._watchers.get(kind, []))
        if obj is None:
            return False
        event = WatchEvent(WatchEventType.DELETE, obj)
        for callback in watchers:
            callback(event)
        return True

    def list(self, kind: str) -> list[StoredObject]:
        """All objects of a kind, ordered by key."""
        with self._lock:
            objects = [obj for (k, _), obj in self._objects.items() if k == kind]
        return [
            StoredObject(obj.kind, obj.key, copy.deepcopy(obj.value), obj.version)
            for obj in sorted(objects, key=lambda o: o.key)
        ]

    def watch(self, kind: str, callback: Callable[[WatchEvent], None]) -> None:
        with self._lock:
            self._watchers.setdefault(kind, []).append(callback)

    @property
    def write_count(self) -> int:
        return self._writes
