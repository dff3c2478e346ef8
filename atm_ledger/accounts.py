"""
Account Store Module

Holds account records: identity, unique account number, product type,
balance and owning user. Balances are only ever changed by the ledger engine,
which saves a fully-formed Account value; the store never patches fields.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, replace
from typing import Dict, List, Optional
from enum import Enum
import random
import threading
import uuid

from .storage import StorageInterface, StorageRecord
from .errors import NotFound, InvalidArgument, Unavailable
from .money import ZERO, to_amount
from .audit import AuditTrail, AuditEventType
from .logging_config import get_logger, log_action


class AccountType(Enum):
    """Banking product types"""
    CHECKING = "checking"
    SAVINGS = "savings"


@dataclass
class Account(StorageRecord):
    """
    Bank account value record

    ``owner_id`` refers to the owning user by id only. ``version`` is assigned
    by the store and increases with every save.
    """
    account_number: str
    account_type: AccountType
    balance: Decimal
    owner_id: str
    name: str = ""
    version: int = 0

    def __post_init__(self):
        self.balance = to_amount(self.balance)

    def with_balance(self, new_balance: Decimal) -> 'Account':
        """Return a copy of this account carrying ``new_balance``"""
        return replace(self, balance=new_balance)

    def has_funds_for(self, amount: Decimal) -> bool:
        """Exact sufficiency check, no tolerance"""
        return self.balance >= amount

    def to_dict(self) -> Dict:
        result = super().to_dict()
        result['account_type'] = self.account_type.value
        return result

    @classmethod
    def from_dict(cls, data: Dict) -> 'Account':
        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            account_number=data['account_number'],
            account_type=AccountType(data['account_type']),
            balance=Decimal(data['balance']),
            owner_id=data['owner_id'],
            name=data.get('name', ''),
            version=data.get('version', 0)
        )


class AccountStore:
    """
    Account persistence: lookup by id or number and full-record upsert
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        table_name: str = "accounts"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = table_name
        self.logger = get_logger("atm_ledger.accounts")
        # Serializes the account-number uniqueness check with the write
        self._lock = threading.Lock()

    def get(self, account_id: str) -> Account:
        """Get account by ID"""
        data = self.storage.load(self.table_name, account_id) if account_id else None
        if not data:
            raise NotFound(f"Account {account_id} not found", account_id=account_id)
        return Account.from_dict(data)

    def get_by_number(self, account_number: str) -> Account:
        """Get account by account number"""
        found = self.storage.find(self.table_name, {"account_number": account_number})
        if not found:
            raise NotFound(f"Account number {account_number} not found", account_number=account_number)
        return Account.from_dict(found[0])

    def exists_number(self, account_number: str) -> bool:
        return bool(self.storage.find(self.table_name, {"account_number": account_number}))

    def list_for_owner(self, owner_id: str) -> List[Account]:
        """Get all accounts owned by a user"""
        accounts = [Account.from_dict(data)
                    for data in self.storage.find(self.table_name, {"owner_id": owner_id})]
        accounts.sort(key=lambda a: a.created_at)
        return accounts

    def save(self, account: Account) -> Account:
        """
        Upsert a complete account record

        Assigns an id when the account has none, keeps the original
        ``created_at`` and bumps ``version``. A stale version (the record was
        saved by someone else since it was read) raises Unavailable so the
        caller can re-read and retry.

        Returns:
            The account as persisted
        """
        with self.storage.atomic(), self._lock:
            account_id = account.id or str(uuid.uuid4())
            now = datetime.now(timezone.utc)

            existing = self.storage.load(self.table_name, account_id)
            if existing and existing.get('version', 0) != account.version:
                raise Unavailable(
                    f"Account {account_id} was modified concurrently",
                    account_id=account_id
                )

            for other in self.storage.find(self.table_name, {"account_number": account.account_number}):
                if other['id'] != account_id:
                    raise InvalidArgument(
                        f"Account number {account.account_number} is already in use",
                        account_number=account.account_number
                    )

            persisted = replace(
                account,
                id=account_id,
                created_at=datetime.fromisoformat(existing['created_at']) if existing else account.created_at,
                updated_at=now,
                version=account.version + 1
            )
            self.storage.save(self.table_name, persisted.id, persisted.to_dict())
            return persisted

    def open_account(
        self,
        owner_id: str,
        account_type: AccountType,
        generator: 'AccountNumberGenerator',
        name: str = "",
        account_number: Optional[str] = None
    ) -> Account:
        """
        Open a new zero-balance account

        Money only enters through a ledger deposit, so replaying the
        transaction log from opening always reproduces the balance.

        Args:
            owner_id: ID of the owning user
            account_type: CHECKING or SAVINGS
            generator: Source of unique account numbers
            name: Display name of the account
            account_number: Specific account number (generated if not provided)

        Returns:
            Created Account object
        """
        if not owner_id:
            raise InvalidArgument("Account owner is required")

        now = datetime.now(timezone.utc)
        account = Account(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_number=account_number or generator.generate_unique_account_number(),
            account_type=account_type,
            balance=ZERO,
            owner_id=owner_id,
            name=name
        )
        account = self.save(account)

        log_action(
            self.logger, "info", f"Account opened: {account.account_number}",
            user_id=owner_id, action="open_account", resource=f"account:{account.id}",
            extra={"account_type": account_type.value}
        )

        if self.audit_trail:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_OPENED,
                entity_type="account",
                entity_id=account.id,
                metadata={
                    "account_number": account.account_number,
                    "owner_id": owner_id,
                    "account_type": account_type.value,
                    "name": name
                }
            )

        return account


class AccountNumberGenerator:
    """
    Random numeric account numbers, retried until unused
    """

    def __init__(self, account_store: AccountStore, length: int = 11,
                 max_attempts: int = 100, rng: Optional[random.Random] = None):
        self.account_store = account_store
        self.length = length
        self.max_attempts = max_attempts
        self._rng = rng or random.SystemRandom()

    def generate_account_number(self) -> str:
        return "".join(str(self._rng.randrange(10)) for _ in range(self.length))

    def generate_unique_account_number(self) -> str:
        """Generate an account number no stored account uses yet"""
        for _ in range(self.max_attempts):
            candidate = self.generate_account_number()
            if not self.account_store.exists_number(candidate):
                return candidate
        raise Unavailable(
            f"No free account number found after {self.max_attempts} attempts",
            attempts=self.max_attempts
        )
