from __future__ import annotations

from collections import deque
from threading import Condition


class WorkQueue:
    """Rate-free work queue keyed by object identity.

    - a key that is already queued is not queued again (triggers coalesce)
    - a key handed out by ``get`` is not handed out again until ``done``
    - a key added while it is being processed is marked dirty and requeued
      once, when the in-flight reconcile calls ``done``
    """

    def __init__(self) -> None:
        self._cond = Condition()
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()
        self._processing: set[str] = set()
        self._dirty: set[str] = set()
        self._shutdown = False

    def add(self, key: str) -> bool:
        """Enqueue ``key``. Returns False when the trigger was coalesced."""
        with self._cond:
            if self._shutdown:
                return False
            if key in self._processing:
                if key in self._dirty:
                    return False
                self._dirty.add(key)
                return True
            if key in self._queued:
                return False
            self._queued.add(key)
            self._queue.append(key)
            self._cond.notify()
            return True

    def get(self, timeout: float | None = None) -> str | None:
        """Block until a key is available; None on timeout or shutdown."""
        with self._cond:
            if not self._queue and not self._shutdown:
                self._cond.wait(timeout)
            if self._shutdown or not self._queue:
                return None
            key = self._queue.popleft()
            self._queued.discard(key)
            self._processing.add(key)
            return key

    def done(self, key: str) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._dirty.discard(key)
                if key not in self._queued:
                    self._queued.add(key)
                    self._queue.append(key)
                    self._cond.notify()

    def in_flight(self, key: str) -> bool:
        with self._cond:
            return key in self._processing

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)
