"""
Account Locking Module

Per-account mutual exclusion for balance mutations. Multi-account operations
acquire their locks in lexical order of account id so two transfers moving
funds in opposite directions between the same pair cannot deadlock. Waits are
bounded; an operation that cannot get its locks in time fails with Busy.

Lock entries are reference counted: an id stays in the registry only while a
thread holds or waits for its lock, so ids of missing accounts and one-off
keys do not accumulate.
"""

import threading
import time
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional

from .errors import Busy
from .logging_config import get_logger


class _LockEntry:
    """Lock of one id plus the number of threads holding or waiting for it"""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.RLock()
        self.users = 0


class AccountLockManager:
    """Hands out one re-entrant lock per account id"""

    def __init__(self, timeout: float = 5.0):
        self.timeout = timeout
        self._locks: Dict[str, _LockEntry] = {}
        self._registry_lock = threading.Lock()
        self.logger = get_logger("ledger.locking")

    def _checkout(self, account_id: str) -> threading.RLock:
        with self._registry_lock:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = _LockEntry()
                self._locks[account_id] = entry
            entry.users += 1
            return entry.lock

    def _checkin(self, account_id: str) -> None:
        with self._registry_lock:
            entry = self._locks[account_id]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[account_id]

    def tracked(self) -> int:
        """Number of ids whose lock is currently held or awaited"""
        with self._registry_lock:
            return len(self._locks)

    @contextmanager
    def hold(self, *account_ids: str, timeout: Optional[float] = None) -> Iterator[List[str]]:
        """
        Hold the locks of all given accounts for the duration of the block.

        Args:
            account_ids: Accounts to lock; duplicates are ignored
            timeout: Total seconds to wait for all locks (defaults to the manager timeout)

        Yields:
            The account ids in acquisition order

        Raises:
            Busy: If the locks are not all acquired before the deadline; none are held then
        """
        ordered = sorted(set(account_ids))
        wait = self.timeout if timeout is None else timeout
        deadline = time.monotonic() + wait
        checked_out: List[str] = []
        acquired: List[threading.RLock] = []

        try:
            for account_id in ordered:
                lock = self._checkout(account_id)
                checked_out.append(account_id)
                remaining = max(0.0, deadline - time.monotonic())
                if not lock.acquire(timeout=remaining):
                    self.logger.warning(
                        f"Lock wait for account {account_id} exceeded {wait}s"
                    )
                    raise Busy(ordered, wait)
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()
            for account_id in reversed(checked_out):
                self._checkin(account_id)
