"""Advisory locks keyed by entity id."""
import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class KeyedLock:
    """One re-entrant lock per key, created on first use.

    Used to serialize allocation passes per book inside one process.
    Cross-process exclusion comes from the database write lock.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.RLock] = {}

    def _lock_for(self, key: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        with lock:
            yield


book_locks = KeyedLock()
