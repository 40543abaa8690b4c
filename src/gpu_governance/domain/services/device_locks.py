"""Per-device serialization.

Every mutation of a device's scheme, units or capacity ledger runs under
that device's lock. Locks are re-entrant so a service already holding a
device (e.g., admission reserving capacity) can call into another service
that takes the same lock. Multi-device acquisition always happens in
sorted order, so two gang admissions cannot deadlock.

Thread Safety:
    The lock table itself is guarded by a single short-lived lock; the
    per-device locks are independent, so operations on different devices
    proceed in parallel.
"""

from __future__ import annotations

import threading
from contextlib import ExitStack, contextmanager
from typing import Iterable, Iterator

from gpu_governance.domain.value_objects.identifiers import DeviceId


class DeviceLockTable:
    """Lazily created re-entrant lock per device."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[DeviceId, threading.RLock] = {}

    def lock_for(self, device_id: DeviceId) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(device_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[device_id] = lock
            return lock

    @contextmanager
    def hold(self, *device_ids: DeviceId) -> Iterator[None]:
        """Hold the locks of all given devices."""
        with self.hold_all(device_ids):
            yield

    @contextmanager
    def hold_all(self, device_ids: Iterable[DeviceId]) -> Iterator[None]:
        with ExitStack() as stack:
            for device_id in sorted(set(device_ids)):
                stack.enter_context(self.lock_for(device_id))
            yield
