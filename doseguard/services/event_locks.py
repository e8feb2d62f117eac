from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator


class EventLockRegistry:
    """Per-key mutual exclusion for dose event transitions within a process.

    Entries are reference counted so the registry does not grow with every
    dose event ever touched.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._locks: dict[str, tuple[threading.Lock, int]] = {}

    @contextmanager
    def hold(self, key) -> Iterator[None]:
        key = str(key)
        with self._lock:
            lock, refs = self._locks.get(key, (None, 0))
            if lock is None:
                lock = threading.Lock()
            self._locks[key] = (lock, refs + 1)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._lock:
                lock, refs = self._locks[key]
                if refs <= 1:
                    self._locks.pop(key, None)
                else:
                    self._locks[key] = (lock, refs - 1)

    def active_keys(self) -> int:
        with self._lock:
            return len(self._locks)


event_locks = EventLockRegistry()
