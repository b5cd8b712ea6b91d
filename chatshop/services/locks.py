"""Keyed mutexes for in-process critical sections.

One re-entrant lock per key (customer id, product id). Locks are created on
first use and kept for the life of the process. Database-level guards in the
services cover the multi-process case; these locks keep threads of one
worker from racing each other before the database ever sees them.
"""

import threading
from contextlib import ExitStack, contextmanager


class KeyedLocks:
    def __init__(self, name: str = "locks"):
        self.name = name
        self._locks: dict = {}
        self._registry_lock = threading.Lock()

    def get(self, key) -> threading.RLock:
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key):
        """Hold the lock for a single key."""
        lock = self.get(key)
        with lock:
            yield

    @contextmanager
    def hold_many(self, keys):
        """Hold the locks for several keys, acquired in sorted order.

        Sorting gives every caller the same acquisition order, so two
        callers wanting overlapping key sets cannot deadlock.
        """
        with ExitStack() as stack:
            for key in sorted(set(keys)):
                stack.enter_context(self.hold(key))
            yield

    def __repr__(self):
        return f"<KeyedLocks {self.name} ({len(self._locks)} keys)>"
