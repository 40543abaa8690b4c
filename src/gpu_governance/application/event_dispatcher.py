"""Per-key ordered event dispatch.

Events posted under the same key (a device id, a request id) are handled
one at a time in arrival order. Different keys are drained concurrently
by a thread pool and are not ordered relative to each other.

With workers=0 events are handled inline on the posting thread; events
posted from inside a handler are appended and handled after it returns.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Hashable, Optional

logger = logging.getLogger(__name__)

EventHandler = Callable[[Hashable, Any], None]


class EventDispatcher:
    """Per-key FIFO queues drained by a worker pool."""

    def __init__(self, handler: EventHandler, workers: int = 4) -> None:
        """Initialize the dispatcher.

        Args:
            handler: Called as handler(key, event).
            workers: Pool size; 0 handles events inline.
        """
        self._handler = handler
        self._workers = workers
        self._executor = (
            ThreadPoolExecutor(max_workers=workers, thread_name_prefix="governance-events")
            if workers > 0 else None
        )
        self._queues: dict[Hashable, deque] = {}
        self._active: set[Hashable] = set()
        self._draining: set[Hashable] = set()   # Keys a thread is draining right now
        self._cond = threading.Condition()
        self._closed = False
        self._local = threading.local()
        self._handled = 0
        self._failed = 0

    def post(self, key: Hashable, event: Any) -> None:
        """Queue an event for its key."""
        with self._cond:
            if self._closed:
                logger.warning(f"Dispatcher closed, dropping event for {key}")
                return
            self._queues.setdefault(key, deque()).append(event)
            if key in self._active:
                return
            self._active.add(key)

        if self._executor is not None:
            self._executor.submit(self._drain, key)
        elif not getattr(self._local, "draining", False):
            self._drain_inline()

    def _drain_inline(self) -> None:
        self._local.draining = True
        try:
            while True:
                with self._cond:
                    # Keys drained by another posting thread stay with that thread
                    key = next((k for k in self._active if k not in self._draining), None)
                    if key is None:
                        return
                self._drain(key)
        finally:
            self._local.draining = False

    def _drain(self, key: Hashable) -> None:
        with self._cond:
            if key in self._draining:
                return
            self._draining.add(key)
        while True:
            with self._cond:
                queue = self._queues.get(key)
                if not queue:
                    self._queues.pop(key, None)
                    self._active.discard(key)
                    self._draining.discard(key)
                    self._cond.notify_all()
                    return
                event = queue.popleft()
            try:
                self._handler(key, event)
            except Exception:
                # A failing handler must not stall the other events of its key
                logger.exception(f"Event handler failed for {key}")
                with self._cond:
                    self._failed += 1
            else:
                with self._cond:
                    self._handled += 1

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait until every posted event has been handled.

        Returns:
            False if the timeout expired first.
        """
        with self._cond:
            return self._cond.wait_for(lambda: not self._active, timeout=timeout)

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting events; optionally handle what is queued."""
        with self._cond:
            self._closed = True
        if wait:
            self.flush()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)

    def stats(self) -> dict[str, int]:
        with self._cond:
            pending = sum(len(q) for q in self._queues.values())
            return {"handled": self._handled, "failed": self._failed, "pending": pending}
