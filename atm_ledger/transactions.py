"""
Transaction Log Module

Append-only store of posted transactions. A transaction is written exactly
once, inside the same unit of work as the balance change it records; there is
no update or delete path.
"""

from decimal import Decimal
from datetime import datetime, timezone, timedelta
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional
from enum import Enum
import threading
import uuid

from .storage import StorageInterface
from .errors import NotFound, InvalidArgument, Internal
from .money import ZERO


class TransactionType(Enum):
    """Types of ledger postings"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so they compare with stored timestamps"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass(frozen=True)
class Transaction:
    """
    Immutable posting against one account

    The amount is signed: positive for a deposit, negative for a withdrawal.
    Both legs of a transfer share ``transfer_id``, description and timestamp.
    ``id``, ``created_at`` and ``sequence`` are assigned by the log on append.
    """
    account_id: str
    transaction_type: TransactionType
    amount: Decimal
    description: str = ""
    actor_user_id: Optional[str] = None
    transfer_id: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    sequence: Optional[int] = None

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            raise InvalidArgument("Transaction amount must be a Decimal")
        if self.transaction_type == TransactionType.DEPOSIT and self.amount <= ZERO:
            raise InvalidArgument("Deposit amount must be positive")
        if self.transaction_type == TransactionType.WITHDRAWAL and self.amount >= ZERO:
            raise InvalidArgument("Withdrawal amount must be negative")

    @property
    def is_transfer_leg(self) -> bool:
        return self.transfer_id is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'account_id': self.account_id,
            'transaction_type': self.transaction_type.value,
            'amount': str(self.amount),
            'description': self.description,
            'actor_user_id': self.actor_user_id,
            'transfer_id': self.transfer_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'sequence': self.sequence
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        return cls(
            id=data['id'],
            account_id=data['account_id'],
            transaction_type=TransactionType(data['transaction_type']),
            amount=Decimal(data['amount']),
            description=data.get('description', ''),
            actor_user_id=data.get('actor_user_id'),
            transfer_id=data.get('transfer_id'),
            created_at=datetime.fromisoformat(data['created_at']),
            sequence=data.get('sequence')
        )


class TransactionLog:
    """
    Append-only transaction store with filtered, newest-first reads
    """

    def __init__(self, storage: StorageInterface, table_name: str = "transactions"):
        self.storage = storage
        self.table_name = table_name
        self._lock = threading.Lock()
        self._last_timestamp: Optional[datetime] = None
        self._sequence = 0
        self._load_clock()

    def _load_clock(self) -> None:
        """Resume the clock and sequence after the newest stored posting"""
        for data in self.storage.load_all(self.table_name):
            created_at = datetime.fromisoformat(data['created_at'])
            if self._last_timestamp is None or created_at > self._last_timestamp:
                self._last_timestamp = created_at
            self._sequence = max(self._sequence, data.get('sequence') or 0)

    def _tick(self) -> datetime:
        now = datetime.now(timezone.utc)
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def next_timestamp(self) -> datetime:
        """UTC timestamp strictly later than any this log handed out before"""
        with self._lock:
            return self._tick()

    def append(self, transaction: Transaction) -> Transaction:
        """
        Persist a new transaction

        Fills in ``id``, ``created_at`` and ``sequence`` when absent. Writing
        an id that already exists would rewrite history and raises Internal.

        Returns:
            The transaction as stored
        """
        with self._lock:
            self._sequence += 1
            stored = replace(
                transaction,
                id=transaction.id or str(uuid.uuid4()),
                created_at=as_utc(transaction.created_at) if transaction.created_at else self._tick(),
                sequence=self._sequence
            )
            if self._last_timestamp is None or stored.created_at > self._last_timestamp:
                self._last_timestamp = stored.created_at

        if self.storage.exists(self.table_name, stored.id):
            raise Internal(f"Transaction {stored.id} already recorded", transaction_id=stored.id)

        self.storage.save(self.table_name, stored.id, stored.to_dict())
        return stored

    def get(self, transaction_id: str) -> Transaction:
        """Get transaction by ID"""
        data = self.storage.load(self.table_name, transaction_id)
        if not data:
            raise NotFound(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
        return Transaction.from_dict(data)

    def for_account(
        self,
        account_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        transaction_type: Optional[TransactionType] = None,
        limit: Optional[int] = None
    ) -> List[Transaction]:
        """
        Get transactions for an account with optional filters

        Args:
            account_id: Account ID
            start: Inclusive lower bound on the timestamp
            end: Inclusive upper bound on the timestamp
            transaction_type: Only postings of this type
            limit: Keep only the newest ``limit`` postings

        Returns:
            Transactions ordered newest first
        """
        transactions = [Transaction.from_dict(data)
                        for data in self.storage.find(self.table_name, {"account_id": account_id})]

        if start:
            start = as_utc(start)
            transactions = [t for t in transactions if t.created_at >= start]

        if end:
            end = as_utc(end)
            transactions = [t for t in transactions if t.created_at <= end]

        if transaction_type:
            transactions = [t for t in transactions if t.transaction_type == transaction_type]

        # Transfer legs share a timestamp; append order breaks the tie
        transactions.sort(key=lambda t: (t.created_at, t.sequence or 0), reverse=True)

        if limit is not None:
            transactions = transactions[:limit]

        return transactions

    def for_transfer(self, transfer_id: str) -> List[Transaction]:
        """Both legs of a transfer, withdrawal first"""
        legs = [Transaction.from_dict(data)
                for data in self.storage.find(self.table_name, {"transfer_id": transfer_id})]
        legs.sort(key=lambda t: t.sequence or 0)
        return legs

    def sum_for_account(self, account_id: str) -> Decimal:
        """Replay every posting of an account"""
        return sum((t.amount for t in self.for_account(account_id)), ZERO)

    def count(self) -> int:
        return self.storage.count(self.table_name)
