"""
Per-item mutual exclusion.

Every mutation of a market item runs while holding that item's lock, so two
bids on the same auction can never both read a stale highest bid. Locks of
different items are independent, so cross-item operations run in parallel.
"""

import threading
from contextlib import contextmanager
from typing import Dict, Iterator


class ItemLockManager:
    """Lazily created re-entrant lock per item id."""

    def __init__(self):
        self._locks: Dict[int, threading.RLock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, item_id: int) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(item_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[item_id] = lock
            return lock

    @contextmanager
    def hold(self, item_id: int) -> Iterator[None]:
        """Serialize the enclosed block against other writers of ``item_id``."""
        lock = self._lock_for(item_id)
        with lock:
            yield

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
