"""
Ledger Wiring

Builds a ready-to-use ledger (storage, stores, engine, queries, audit trail)
from configuration.
"""

from dataclasses import dataclass
from typing import Optional

from .accounts import Account, AccountNumberGenerator, AccountStore, AccountType
from .audit import AuditTrail
from .config import LedgerConfig, get_config
from .history import QueryService
from .ledger import LedgerEngine
from .locking import AccountLockManager
from .logging_config import setup_logging
from .storage import StorageInterface, create_storage
from .transactions import TransactionLog


@dataclass
class LedgerContext:
    """Everything an outer layer needs to drive the ledger"""
    config: LedgerConfig
    storage: StorageInterface
    accounts: AccountStore
    account_numbers: AccountNumberGenerator
    transactions: TransactionLog
    engine: LedgerEngine
    queries: QueryService
    audit_trail: Optional[AuditTrail] = None

    def open_account(self, owner_id: str, account_type: AccountType = AccountType.CHECKING,
                     name: str = "") -> Account:
        """Open a zero-balance account with a freshly generated number"""
        return self.accounts.open_account(owner_id, account_type, self.account_numbers, name=name)

    def close(self) -> None:
        self.storage.close()


def create_ledger(
    config: Optional[LedgerConfig] = None,
    storage: Optional[StorageInterface] = None,
    configure_logging: bool = False
) -> LedgerContext:
    """
    Assemble a ledger

    Args:
        config: Settings to use (the global configuration when omitted)
        storage: Existing backend; built from ``config.database_url`` when omitted
        configure_logging: Install the structured log handler from config

    Returns:
        LedgerContext wired to a single storage backend
    """
    config = config or get_config()

    if configure_logging:
        setup_logging(level=config.log_level, log_format=config.log_format,
                      log_file=config.log_file)

    storage = storage or create_storage(config.database_url, lock_timeout=config.lock_timeout_seconds)
    audit_trail = AuditTrail(storage) if config.enable_audit_logging else None

    accounts = AccountStore(storage, audit_trail=audit_trail)
    account_numbers = AccountNumberGenerator(
        accounts,
        length=config.account_number_length,
        max_attempts=config.account_number_max_attempts
    )
    transactions = TransactionLog(storage)
    engine = LedgerEngine(
        storage,
        accounts,
        transactions,
        locks=AccountLockManager(timeout_seconds=config.lock_timeout_seconds),
        audit_trail=audit_trail
    )
    queries = QueryService(accounts, transactions, default_limit=config.default_history_limit)

    return LedgerContext(
        config=config,
        storage=storage,
        accounts=accounts,
        account_numbers=account_numbers,
        transactions=transactions,
        engine=engine,
        queries=queries,
        audit_trail=audit_trail
    )
