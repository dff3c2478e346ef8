"""
Transaction History Queries

Read-only views over the transaction log. Every query resolves the account
first so a missing account always reports NotFound, whatever the log holds.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .accounts import AccountStore
from .errors import InvalidArgument
from .transactions import Transaction, TransactionLog, TransactionType, as_utc


@dataclass(frozen=True)
class BalanceCheck:
    """Stored balance compared with a replay of the account's postings"""
    account_id: str
    stored_balance: Decimal
    replayed_balance: Decimal
    transaction_count: int

    @property
    def consistent(self) -> bool:
        return self.stored_balance == self.replayed_balance


class QueryService:
    """History retrieval by account, date range, type and recency"""

    def __init__(self, accounts: AccountStore, transactions: TransactionLog,
                 default_limit: int = 20):
        self.accounts = accounts
        self.transactions = transactions
        self.default_limit = default_limit

    def history(self, account_id: str) -> List[Transaction]:
        """All postings of an account, newest first"""
        account = self.accounts.get(account_id)
        return self.transactions.for_account(account.id)

    def history_window(
        self,
        account_id: str,
        start: datetime,
        end: datetime,
        transaction_type: Optional[TransactionType] = None
    ) -> List[Transaction]:
        """Postings with start <= timestamp <= end, optionally of one type, newest first"""
        account = self.accounts.get(account_id)
        if as_utc(start) > as_utc(end):
            raise InvalidArgument("History window start is after its end", start=start, end=end)
        return self.transactions.for_account(
            account.id, start=start, end=end, transaction_type=transaction_type
        )

    def last_n(self, account_id: str, n: Optional[int] = None) -> List[Transaction]:
        """The ``n`` most recent postings (20 by default), newest first"""
        account = self.accounts.get(account_id)
        limit = self.default_limit if n is None else n
        if limit <= 0:
            raise InvalidArgument(f"n must be positive, got {limit}", n=limit)
        return self.transactions.for_account(account.id, limit=limit)

    def balance(self, account_id: str) -> Decimal:
        return self.accounts.get(account_id).balance

    def verify_balance(self, account_id: str) -> BalanceCheck:
        """Replay the log from account opening and compare with the balance"""
        account = self.accounts.get(account_id)
        postings = self.transactions.for_account(account.id)
        return BalanceCheck(
            account_id=account.id,
            stored_balance=account.balance,
            replayed_balance=sum((t.amount for t in postings), Decimal('0.00')),
            transaction_count=len(postings)
        )
