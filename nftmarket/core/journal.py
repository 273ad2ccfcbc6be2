"""
Journal - compensating-action transactions.

Every mutation made by the ledger, engines, funds ledger and token registry
records an inverse action in the journal of the current thread. When an
operation fails part-way, ``atomic()`` replays the inverses newest-first,
so the operation either takes full effect or none at all.

Changes other threads could build on (spendable credits, a released token
slot) are not applied in place. They are queued with ``on_commit`` and only
become visible once the outermost block succeeds, so undoing an operation
never has to take back something another operation already used.

Journals are per-thread: two operations running in parallel on different
items never undo each other's work.
"""

import threading
from contextlib import contextmanager
from typing import Callable, Iterator, List

from nftmarket.utils.logger import get_logger

logger = get_logger("journal")

Undo = Callable[[], None]


class Journal:
    """Thread-local undo log shared by all marketplace components."""

    def __init__(self):
        self._local = threading.local()

    @property
    def active(self) -> bool:
        return getattr(self._local, "entries", None) is not None

    @contextmanager
    def atomic(self) -> Iterator[List[Undo]]:
        """
        Run the enclosed block as one transaction.

        Nested calls join the outermost transaction.
        """
        entries = getattr(self._local, "entries", None)
        if entries is not None:
            yield entries
            return

        entries = []
        commits = []
        self._local.entries = entries
        self._local.commits = commits
        try:
            yield entries
        except BaseException:
            self._close()
            self._rollback(entries)
            raise
        self._close()
        for action in commits:
            action()

    def record(self, undo: Undo) -> None:
        """Register the inverse of a mutation that just happened."""
        entries = getattr(self._local, "entries", None)
        if entries is not None:
            entries.append(undo)

    def on_commit(self, action: Callable[[], None]) -> None:
        """
        Run ``action`` when the current transaction commits.

        Outside a transaction the action runs immediately; on rollback it is
        dropped.
        """
        commits = getattr(self._local, "commits", None)
        if commits is None:
            action()
        else:
            commits.append(action)

    def _close(self) -> None:
        self._local.entries = None
        self._local.commits = None

    def _rollback(self, entries: List[Undo]) -> None:
        for undo in reversed(entries):
            undo()
        if entries:
            logger.debug(f"Rolled back {len(entries)} change(s)")
