"""
Tests for per-account locking
"""

import threading
import time
import pytest

from atm_ledger.locking import AccountLockManager
from atm_ledger.errors import Unavailable


class TestAccountLockManager:
    """Test lock acquisition, ordering and timeouts"""

    def setup_method(self):
        self.locks = AccountLockManager(timeout_seconds=0.05)

    def test_locks_held_inside_block_only(self):
        """Test locks are released on exit"""
        with self.locks.acquire("a", "b"):
            assert self.locks.is_locked("a")
            assert self.locks.is_locked("b")
        assert not self.locks.is_locked("a")
        assert not self.locks.is_locked("b")

    def test_released_on_exception(self):
        """Test an error inside the block still releases"""
        with pytest.raises(RuntimeError):
            with self.locks.acquire("a"):
                raise RuntimeError("boom")
        assert not self.locks.is_locked("a")

    def test_duplicate_ids_taken_once(self):
        """Test the same account listed twice does not self-deadlock"""
        with self.locks.acquire("a", "a"):
            assert self.locks.is_locked("a")

    def test_timeout_raises_unavailable(self):
        """Test bounded wait"""
        with self.locks.acquire("a"):
            with pytest.raises(Unavailable, match="Timed out"):
                with self.locks.acquire("a"):
                    pass

    def test_partial_acquisition_released_on_timeout(self):
        """Test locks already taken are dropped when a later one times out"""
        holder_ready = threading.Event()
        release = threading.Event()

        def hold_b():
            with self.locks.acquire("b"):
                holder_ready.set()
                release.wait(5)

        thread = threading.Thread(target=hold_b)
        thread.start()
        holder_ready.wait(5)

        with pytest.raises(Unavailable):
            with self.locks.acquire("a", "b"):
                pass
        assert not self.locks.is_locked("a")

        release.set()
        thread.join()

    def test_opposite_order_requests_do_not_deadlock(self):
        """Test callers naming accounts in opposite orders both finish"""
        locks = AccountLockManager(timeout_seconds=5)
        finished = []

        def worker(first, second):
            for _ in range(50):
                with locks.acquire(first, second):
                    time.sleep(0.0005)
            finished.append((first, second))

        threads = [
            threading.Thread(target=worker, args=("a", "b")),
            threading.Thread(target=worker, args=("b", "a")),
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=30)

        assert len(finished) == 2

    def test_per_call_timeout_override(self):
        """Test an explicit timeout wins over the default"""
        locks = AccountLockManager(timeout_seconds=60)
        with locks.acquire("a"):
            started = time.monotonic()
            with pytest.raises(Unavailable):
                with locks.acquire("a", timeout=0.01):
                    pass
            assert time.monotonic() - started < 5

    def test_lock_table_empties_after_use(self):
        """Test entries only live while a caller holds or waits for them"""
        with self.locks.acquire("a", "b"):
            assert self.locks.active_count() == 2
        assert self.locks.active_count() == 0

        for i in range(100):
            with self.locks.acquire(f"account-{i}"):
                pass
        assert self.locks.active_count() == 0

    def test_lock_table_empties_after_timeout(self):
        """Test a timed out waiter leaves no entry behind"""
        with self.locks.acquire("a"):
            with pytest.raises(Unavailable):
                with self.locks.acquire("b", "a"):
                    pass
            assert self.locks.active_count() == 1
        assert self.locks.active_count() == 0

    def test_waiter_keeps_entry_alive(self):
        """Test a lock handed from holder to waiter stays the same lock"""
        locks = AccountLockManager(timeout_seconds=5)
        holder_ready = threading.Event()
        order = []

        def holder():
            with locks.acquire("a"):
                holder_ready.set()
                time.sleep(0.05)
                order.append("holder")

        thread = threading.Thread(target=holder)
        thread.start()
        holder_ready.wait(5)
        with locks.acquire("a"):
            order.append("waiter")
        thread.join()

        assert order == ["holder", "waiter"]
        assert locks.active_count() == 0
