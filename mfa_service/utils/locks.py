"""
Per-key locking.

Serializes all work on one key (a user id) while letting different keys
proceed in parallel. Lock objects are reference counted and dropped once no
thread holds or waits on them, so the table never grows with the user base.
"""
import threading
from contextlib import contextmanager
from typing import Dict, List


class KeyedLock:
    """
    Mutual exclusion keyed by an arbitrary string.

    Example usage:
        locks = KeyedLock()

        with locks.hold(user_id):
            session = store.get(user_id)
            ...
    """

    def __init__(self):
        self._mutex = threading.Lock()
        # key -> [lock, holders_and_waiters]
        self._locks: Dict[str, List] = {}

    @contextmanager
    def hold(self, key: str):
        with self._mutex:
            entry = self._locks.get(key)
            if entry is None:
                entry = [threading.RLock(), 0]
                self._locks[key] = entry
            entry[1] += 1

        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._mutex:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        with self._mutex:
            return len(self._locks)
