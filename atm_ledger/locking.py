"""
Per-Account Locking

Mutual exclusion for balance changes. Every ledger operation holds the locks
of the accounts it touches for the whole read/check/write cycle. Locks are
always taken in sorted account-id order and each wait is bounded.

A lock only exists while some caller holds or waits for it, so ids that never
resolve to an account leave nothing behind.
"""

from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional
import threading

from .errors import Unavailable


class _AccountLock:
    """A lock plus the number of callers currently using it"""
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


class AccountLockManager:
    """Lazily created, reference-counted lock per account id"""

    def __init__(self, timeout_seconds: float = 5.0):
        self.timeout_seconds = timeout_seconds
        self._locks: Dict[str, _AccountLock] = {}
        self._registry_lock = threading.Lock()

    def active_count(self) -> int:
        """Number of accounts currently locked or waited on"""
        with self._registry_lock:
            return len(self._locks)

    def _checkout(self, account_id: str) -> threading.Lock:
        with self._registry_lock:
            entry = self._locks.get(account_id)
            if entry is None:
                entry = self._locks[account_id] = _AccountLock()
            entry.users += 1
            return entry.lock

    def _checkin(self, account_id: str) -> None:
        with self._registry_lock:
            entry = self._locks[account_id]
            entry.users -= 1
            if entry.users == 0:
                del self._locks[account_id]

    @contextmanager
    def acquire(self, *account_ids: str, timeout: Optional[float] = None) -> Iterator[None]:
        """
        Hold the locks of ``account_ids`` for the duration of the block

        Raises:
            Unavailable: If a lock could not be taken within the timeout.
                Locks already taken are released first.
        """
        wait = self.timeout_seconds if timeout is None else timeout
        checked_out: List[str] = []
        held: List[threading.Lock] = []
        try:
            for account_id in sorted(set(account_ids), key=str):
                lock = self._checkout(account_id)
                checked_out.append(account_id)
                if not lock.acquire(timeout=wait):
                    raise Unavailable(
                        f"Timed out after {wait}s waiting for account {account_id}",
                        account_id=account_id
                    )
                held.append(lock)
            yield
        finally:
            for lock in reversed(held):
                lock.release()
            for account_id in checked_out:
                self._checkin(account_id)

    def is_locked(self, account_id: str) -> bool:
        with self._registry_lock:
            entry = self._locks.get(account_id)
            return entry is not None and entry.lock.locked()
