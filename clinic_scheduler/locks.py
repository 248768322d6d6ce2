"""Per-key mutual exclusion.

Schedule buckets are keyed by (provider_id, date) and waitlist queues by
(provider_id, service). Locks are re-entrant so an operation already holding
a bucket can call store methods that lock it again.

Multiple keys are always acquired in sorted order, which gives every caller
the same global order and rules out lock-order deadlocks.
"""
import threading
from contextlib import contextmanager
from typing import Dict, Hashable, Iterator, List


class KeyedLocks:
    """Lazily created RLock per key."""

    def __init__(self):
        self._locks: Dict[Hashable, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, *keys: Hashable) -> Iterator[None]:
        """
        Acquire every key's lock for the duration of the block.

        Args:
            *keys: Keys to lock; duplicates are ignored

        Example:
            >>> locks = KeyedLocks()
            >>> with locks.hold(("dr-a", "2024-06-10"), ("dr-b", "2024-06-10")):
            ...     pass
        """
        ordered = sorted(set(keys))
        acquired: List[threading.RLock] = []
        try:
            for key in ordered:
                lock = self._lock_for(key)
                lock.acquire()
                acquired.append(lock)
            yield
        finally:
            for lock in reversed(acquired):
                lock.release()
