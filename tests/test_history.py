"""
Test suite for history queries

Tests ordering, date windows, type filters, last-N retrieval and the
balance replay check.
"""

import threading
import pytest
from decimal import Decimal
from datetime import timedelta

from atm_ledger.storage import InMemoryStorage
from atm_ledger.accounts import AccountStore, AccountNumberGenerator, AccountType
from atm_ledger.transactions import TransactionLog, TransactionType
from atm_ledger.ledger import LedgerEngine
from atm_ledger.history import QueryService
from atm_ledger.errors import NotFound, InvalidArgument


class TestQueryService:
    """Test read-only history retrieval"""

    def setup_method(self):
        """Set up test fixtures"""
        self.storage = InMemoryStorage()
        self.accounts = AccountStore(self.storage)
        self.transactions = TransactionLog(self.storage)
        self.engine = LedgerEngine(self.storage, self.accounts, self.transactions)
        self.queries = QueryService(self.accounts, self.transactions)

        numbers = AccountNumberGenerator(self.accounts)
        self.account = self.accounts.open_account("owner-1", AccountType.CHECKING, numbers)
        self.other = self.accounts.open_account("owner-2", AccountType.SAVINGS, numbers)

    def test_history_is_newest_first(self):
        """Test full history ordering"""
        first = self.engine.deposit(self.account.id, Decimal('10.00'), "First")
        second = self.engine.withdraw(self.account.id, Decimal('5.00'), "Second")
        third = self.engine.deposit(self.account.id, Decimal('1.00'), "Third")

        history = self.queries.history(self.account.id)
        assert [t.id for t in history] == [third.id, second.id, first.id]

    def test_history_only_includes_account(self):
        """Test postings of other accounts are excluded"""
        self.engine.deposit(self.account.id, Decimal('10.00'), "Mine")
        self.engine.deposit(self.other.id, Decimal('10.00'), "Theirs")

        history = self.queries.history(self.account.id)
        assert len(history) == 1
        assert history[0].description == "Mine"

    def test_history_of_new_account_is_empty(self):
        """Test an account with no postings"""
        assert self.queries.history(self.account.id) == []

    def test_last_n_after_25_deposits(self):
        """Test last_n(20) returns exactly the 20 most recent, strictly descending"""
        posted = [self.engine.deposit(self.account.id, Decimal('1.00'), f"Deposit {i}")
                  for i in range(25)]

        recent = self.queries.last_n(self.account.id, 20)

        assert len(recent) == 20
        assert [t.id for t in recent] == [t.id for t in reversed(posted[5:])]
        timestamps = [t.created_at for t in recent]
        assert all(a > b for a, b in zip(timestamps, timestamps[1:]))

    def test_last_n_defaults_to_twenty(self):
        """Test the default limit"""
        for _ in range(22):
            self.engine.deposit(self.account.id, Decimal('1.00'), "Deposit")
        assert len(self.queries.last_n(self.account.id)) == 20

    def test_last_n_with_fewer_postings(self):
        """Test n larger than the history"""
        self.engine.deposit(self.account.id, Decimal('1.00'), "Only")
        assert len(self.queries.last_n(self.account.id, 5)) == 1

    def test_last_n_rejects_non_positive(self):
        """Test invalid n"""
        with pytest.raises(InvalidArgument):
            self.queries.last_n(self.account.id, 0)

    def test_history_window_is_inclusive(self):
        """Test window bounds include postings exactly on them"""
        posted = [self.engine.deposit(self.account.id, Decimal('1.00'), f"Deposit {i}")
                  for i in range(5)]

        window = self.queries.history_window(
            self.account.id, posted[1].created_at, posted[3].created_at
        )
        assert [t.id for t in window] == [posted[3].id, posted[2].id, posted[1].id]

    def test_history_window_filters_type(self):
        """Test type filter inside a window"""
        deposit = self.engine.deposit(self.account.id, Decimal('50.00'), "In")
        withdrawal = self.engine.withdraw(self.account.id, Decimal('20.00'), "Out")
        start = deposit.created_at - timedelta(seconds=1)
        end = withdrawal.created_at + timedelta(seconds=1)

        withdrawals = self.queries.history_window(
            self.account.id, start, end, TransactionType.WITHDRAWAL
        )
        assert [t.id for t in withdrawals] == [withdrawal.id]

        everything = self.queries.history_window(self.account.id, start, end)
        assert len(everything) == 2

    def test_history_window_accepts_naive_utc(self):
        """Test naive datetimes are read as UTC"""
        txn = self.engine.deposit(self.account.id, Decimal('1.00'), "Naive")
        naive = txn.created_at.replace(tzinfo=None)

        window = self.queries.history_window(self.account.id, naive, naive)
        assert [t.id for t in window] == [txn.id]

    def test_history_window_rejects_reversed_range(self):
        """Test start after end"""
        txn = self.engine.deposit(self.account.id, Decimal('1.00'), "Any")
        with pytest.raises(InvalidArgument, match="after its end"):
            self.queries.history_window(
                self.account.id, txn.created_at, txn.created_at - timedelta(days=1)
            )

    def test_transfer_legs_appear_in_both_histories(self):
        """Test each account sees its own leg"""
        self.engine.deposit(self.account.id, Decimal('30.00'), "Opening")
        withdrawal, deposit = self.engine.transfer(
            self.account.id, self.other.id, Decimal('30.00'), "Move"
        )

        assert self.queries.last_n(self.account.id, 1) == [withdrawal]
        assert self.queries.history(self.other.id) == [deposit]

    @pytest.mark.parametrize("query", ["history", "last_n", "balance", "verify_balance"])
    def test_queries_on_unknown_account(self, query):
        """Test every query resolves the account first"""
        with pytest.raises(NotFound):
            getattr(self.queries, query)("missing")

    def test_history_window_on_unknown_account(self):
        """Test window query on a missing account"""
        txn = self.engine.deposit(self.account.id, Decimal('1.00'), "Any")
        with pytest.raises(NotFound):
            self.queries.history_window("missing", txn.created_at, txn.created_at)

    def test_verify_balance_replays_log(self):
        """Test the sum of postings equals the stored balance"""
        self.engine.deposit(self.account.id, Decimal('100.00'), "In")
        self.engine.withdraw(self.account.id, Decimal('33.33'), "Out")
        self.engine.transfer(self.account.id, self.other.id, Decimal('16.67'), "Move")

        check = self.queries.verify_balance(self.account.id)
        assert check.consistent
        assert check.stored_balance == Decimal('50.00')
        assert check.replayed_balance == Decimal('50.00')
        assert check.transaction_count == 3
        assert self.queries.balance(self.other.id) == Decimal('16.67')

    def test_verify_balance_detects_drift(self):
        """Test a balance written around the engine is caught"""
        self.engine.deposit(self.account.id, Decimal('10.00'), "In")
        account = self.accounts.get(self.account.id)
        self.accounts.save(account.with_balance(Decimal('99.00')))

        assert not self.queries.verify_balance(self.account.id).consistent


class PausingStorage(InMemoryStorage):
    """In-memory storage that stops inside the first account write until released"""

    def __init__(self):
        super().__init__()
        self.armed = False
        self.reached = threading.Event()
        self.resume = threading.Event()

    def save(self, table, record_id, data):
        if self.armed and table == "accounts":
            self.armed = False
            self.reached.set()
            self.resume.wait(5)
        super().save(table, record_id, data)


class TestQueriesDuringPosting:
    """Test readers never see a posting whose balance change is not committed"""

    def setup_method(self):
        self.storage = PausingStorage()
        self.accounts = AccountStore(self.storage)
        self.transactions = TransactionLog(self.storage)
        self.engine = LedgerEngine(self.storage, self.accounts, self.transactions)
        self.queries = QueryService(self.accounts, self.transactions)

        numbers = AccountNumberGenerator(self.accounts)
        self.account = self.accounts.open_account("owner-1", AccountType.CHECKING, numbers)
        self.engine.deposit(self.account.id, Decimal('10.00'), "Opening")

    def test_verify_balance_consistent_while_deposit_in_flight(self):
        """Test a replay taken mid-deposit matches the stored balance"""
        self.storage.armed = True
        depositor = threading.Thread(
            target=self.engine.deposit, args=(self.account.id, Decimal('5.00'), "Paused")
        )
        depositor.start()
        assert self.storage.reached.wait(5)

        checks = []
        reader = threading.Thread(
            target=lambda: checks.append(self.queries.verify_balance(self.account.id))
        )
        reader.start()
        reader.join(timeout=0.1)
        # The appended posting is not visible until the balance is saved too
        assert checks == []

        self.storage.resume.set()
        depositor.join()
        reader.join()

        check = checks[0]
        assert check.consistent
        assert check.stored_balance == Decimal('15.00')
        assert check.transaction_count == 2

    def test_history_omits_rolled_back_posting(self):
        """Test a posting undone by a failed unit of work is never listed"""
        self.storage.armed = True
        errors = []

        def failing_deposit():
            try:
                with self.storage.atomic():
                    self.engine.deposit(self.account.id, Decimal('5.00'), "Undone")
                    raise RuntimeError("store failure after posting")
            except RuntimeError as e:
                errors.append(e)

        depositor = threading.Thread(target=failing_deposit)
        depositor.start()
        assert self.storage.reached.wait(5)

        seen = []
        reader = threading.Thread(target=lambda: seen.append(self.queries.history(self.account.id)))
        reader.start()
        self.storage.resume.set()
        depositor.join()
        reader.join()

        assert len(errors) == 1
        assert [t.description for t in seen[0]] == ["Opening"]
        assert self.queries.balance(self.account.id) == Decimal('10.00')
