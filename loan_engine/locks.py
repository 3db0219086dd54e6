"""
Per-Entity Lock Registry

Serializes writers per key (loan id) so read-check-write sequences on the
same loan never interleave. Different keys never block each other.
"""

import threading
from contextlib import contextmanager
from typing import Dict


class KeyedLockRegistry:
    """Re-entrant locks keyed by entity id, dropped once nobody holds or waits on them"""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}
        self._users: Dict[str, int] = {}

    @contextmanager
    def hold(self, key: str):
        """Hold the lock for ``key`` for the duration of the block"""
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            self._users[key] = self._users.get(key, 0) + 1

        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                self._users[key] -= 1
                if self._users[key] == 0:
                    del self._users[key]
                    del self._locks[key]

    def active_keys(self) -> int:
        """Number of keys currently held or awaited"""
        with self._guard:
            return len(self._locks)
