"""Object store port for declarative, versioned state.

Devices, partition states, profiles and quotas are persisted as JSON-like
dicts keyed by (kind, key). Every write bumps the object's version; writers
may pass the version they read to get optimistic concurrency.
"""

from __future__ import annotations

from abc import abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

# Object kinds owned by the governance engine
KIND_DEVICES = "devices"
KIND_PARTITION_STATES = "partition-states"
KIND_PROFILES = "profiles"
KIND_QUOTAS = "quotas"


@dataclass(frozen=True)
class StoredObject:
    """One versioned object."""
    kind: str
    key: str
    value: dict[str, Any]
    version: int


class WatchEventType(Enum):
    PUT = "put"
    DELETE = "delete"


@dataclass(frozen=True)
class WatchEvent:
    """Change notification delivered to watchers."""
    type: WatchEventType
    obj: StoredObject


class ObjectStorePort(Protocol):
    """Protocol for the key-value object store collaborator.

    Thread Safety:
        All methods must be thread-safe. Watch callbacks for one key are
        delivered in write order.
    """

    @abstractmethod
    def put(
        self,
        kind: str,
        key: str,
        value: dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> int:
        """Write an object.

        Args:
            kind: Object kind.
            key: Stable identifier within the kind.
            value: Serializable payload.
            expected_version: If given, the write only succeeds when the
                stored version matches (0 = must not exist).

        Returns:
            The new version.

        Raises:
            StoreConflictError: On a version mismatch.
        """
        ...

    @abstractmethod
    def get(self, kind: str, key: str) -> Optional[StoredObject]:
        ...

    @abstractmethod
    def delete(self, kind: str, key: str) -> bool:
        ...

    @abstractmethod
    def list(self, kind: str) -> list[StoredObject]:
        ...

    @abstractmethod
    def watch(self, kind: str, callback: Callable[[WatchEvent], None]) -> None:
        """Subscribe to changes of one kind."""
        ...
