"""
Ledger Engine

Orchestrates deposits, withdrawals and transfers. Each operation is a single
unit of work: the account locks are taken in id order, the accounts are read,
the sufficiency check runs, the transaction records are appended and the new
balances saved, and everything commits together or not at all.

The engine keeps no state of its own between calls.
"""

from contextlib import contextmanager
from decimal import Decimal
from typing import Iterator, Optional, Tuple
import uuid

from .accounts import Account, AccountStore
from .audit import AuditTrail, AuditEventType
from .errors import (
    LedgerError, InvalidArgument, InsufficientFunds, Internal,
    NotFound, OperationResult, capture
)
from .locking import AccountLockManager
from .logging_config import get_logger, log_action
from .money import AmountLike, format_amount, to_positive_amount
from .storage import StorageInterface
from .transactions import Transaction, TransactionLog, TransactionType


class LedgerEngine:
    """
    Balance-mutating operations with per-account mutual exclusion
    """

    def __init__(
        self,
        storage: StorageInterface,
        accounts: AccountStore,
        transactions: TransactionLog,
        locks: Optional[AccountLockManager] = None,
        audit_trail: Optional[AuditTrail] = None
    ):
        self.storage = storage
        self.accounts = accounts
        self.transactions = transactions
        self.locks = locks or AccountLockManager()
        self.audit_trail = audit_trail
        self.logger = get_logger("atm_ledger.ledger")

    @contextmanager
    def _unit_of_work(self, operation: str, *account_ids: str) -> Iterator[None]:
        """
        Lock the accounts and run the block in one storage transaction

        Ledger errors pass through untouched. Anything else raised inside the
        block is a store failure: the writes are rolled back and it surfaces
        as Internal.
        """
        with self.locks.acquire(*account_ids):
            try:
                with self.storage.atomic():
                    yield
            except LedgerError:
                raise
            except Exception as e:
                self.logger.error(f"{operation} rolled back after store failure", exc_info=True)
                raise Internal(f"{operation} failed: {e}", operation=operation) from e

    def deposit(
        self,
        account_id: str,
        amount: AmountLike,
        description: str = "",
        actor_user_id: Optional[str] = None
    ) -> Transaction:
        """
        Credit an account

        Args:
            account_id: Account receiving the money
            amount: Strictly positive amount with at most two decimal places
            description: Free text stored on the transaction
            actor_user_id: User acting on behalf of the owner, if any

        Returns:
            The committed DEPOSIT transaction (amount positive)

        Raises:
            InvalidArgument: amount is not a positive exact amount
            NotFound: account does not exist
            Unavailable: the account lock could not be taken in time
            Internal: the store failed; nothing was written
        """
        try:
            value = to_positive_amount(amount)
            with self._unit_of_work("deposit", account_id):
                account = self.accounts.get(account_id)
                transaction = self.transactions.append(Transaction(
                    account_id=account.id,
                    transaction_type=TransactionType.DEPOSIT,
                    amount=value,
                    description=description,
                    actor_user_id=actor_user_id
                ))
                updated = self.accounts.save(account.with_balance(account.balance + value))
        except LedgerError as e:
            self._rejected("deposit", e, actor_user_id, account_id=account_id, amount=amount)
            raise

        self._posted(AuditEventType.DEPOSIT_POSTED, transaction, updated)
        return transaction

    def withdraw(
        self,
        account_id: str,
        amount: AmountLike,
        description: str = "",
        actor_user_id: Optional[str] = None
    ) -> Transaction:
        """
        Debit an account if it holds at least ``amount``

        Returns:
            The committed WITHDRAWAL transaction (amount negative)

        Raises:
            InsufficientFunds: balance is below amount; nothing was written
            InvalidArgument, NotFound, Unavailable, Internal: as for deposit
        """
        try:
            value = to_positive_amount(amount)
            with self._unit_of_work("withdraw", account_id):
                account = self.accounts.get(account_id)
                self._check_funds(account, value)
                transaction = self.transactions.append(Transaction(
                    account_id=account.id,
                    transaction_type=TransactionType.WITHDRAWAL,
                    amount=-value,
                    description=description,
                    actor_user_id=actor_user_id
                ))
                updated = self.accounts.save(account.with_balance(account.balance - value))
        except LedgerError as e:
            self._rejected("withdraw", e, actor_user_id, account_id=account_id, amount=amount)
            raise

        self._posted(AuditEventType.WITHDRAWAL_POSTED, transaction, updated)
        return transaction

    def transfer(
        self,
        from_account_id: str,
        to_account_id: str,
        amount: AmountLike,
        description: str = "",
        actor_user_id: Optional[str] = None
    ) -> Tuple[Transaction, Transaction]:
        """
        Move money between two accounts

        Both legs are written in one unit of work: a WITHDRAWAL on the source
        and a DEPOSIT on the destination, sharing description, timestamp and
        transfer id. Either both commit or neither does.

        Returns:
            (withdrawal leg, deposit leg)

        Raises:
            InvalidArgument: same account on both ends, or bad amount
            InsufficientFunds: source balance is below amount
            NotFound: either account does not exist
            Unavailable, Internal: as for deposit
        """
        try:
            value = to_positive_amount(amount)
            if from_account_id == to_account_id:
                raise InvalidArgument(
                    "Cannot transfer to the same account",
                    account_id=from_account_id
                )

            with self._unit_of_work("transfer", from_account_id, to_account_id):
                source = self.accounts.get(from_account_id)
                destination = self.accounts.get(to_account_id)
                self._check_funds(source, value)

                transfer_id = str(uuid.uuid4())
                timestamp = self.transactions.next_timestamp()
                withdrawal = self.transactions.append(Transaction(
                    account_id=source.id,
                    transaction_type=TransactionType.WITHDRAWAL,
                    amount=-value,
                    description=description,
                    actor_user_id=actor_user_id,
                    transfer_id=transfer_id,
                    created_at=timestamp
                ))
                deposit = self.transactions.append(Transaction(
                    account_id=destination.id,
                    transaction_type=TransactionType.DEPOSIT,
                    amount=value,
                    description=description,
                    actor_user_id=actor_user_id,
                    transfer_id=transfer_id,
                    created_at=timestamp
                ))
                updated_source = self.accounts.save(source.with_balance(source.balance - value))
                updated_destination = self.accounts.save(
                    destination.with_balance(destination.balance + value)
                )
        except LedgerError as e:
            self._rejected(
                "transfer", e, actor_user_id,
                account_id=from_account_id, to_account_id=to_account_id, amount=amount
            )
            raise

        log_action(
            self.logger, "info", f"Transfer posted: {format_amount(value)}",
            user_id=actor_user_id, action="transfer", resource=f"transfer:{transfer_id}",
            extra={
                "from_account": source.id,
                "to_account": destination.id,
                "amount": str(value),
                "from_balance": str(updated_source.balance),
                "to_balance": str(updated_destination.balance)
            }
        )
        self._audit(
            AuditEventType.TRANSFER_POSTED, "transfer", transfer_id, actor_user_id,
            {
                "from_account_id": source.id,
                "to_account_id": destination.id,
                "amount": value,
                "withdrawal_id": withdrawal.id,
                "deposit_id": deposit.id
            }
        )
        return withdrawal, deposit

    def try_deposit(self, *args, **kwargs) -> OperationResult[Transaction]:
        """deposit() returning an OperationResult instead of raising"""
        return capture(self.deposit, *args, **kwargs)

    def try_withdraw(self, *args, **kwargs) -> OperationResult[Transaction]:
        """withdraw() returning an OperationResult instead of raising"""
        return capture(self.withdraw, *args, **kwargs)

    def try_transfer(self, *args, **kwargs) -> OperationResult[Tuple[Transaction, Transaction]]:
        """transfer() returning an OperationResult instead of raising"""
        return capture(self.transfer, *args, **kwargs)

    def _check_funds(self, account: Account, amount: Decimal) -> None:
        if not account.has_funds_for(amount):
            raise InsufficientFunds(
                f"Insufficient funds: balance {format_amount(account.balance)}, "
                f"requested {format_amount(amount)}",
                account_id=account.id,
                balance=account.balance,
                requested=amount
            )

    def _posted(self, event_type: AuditEventType, transaction: Transaction, account: Account) -> None:
        log_action(
            self.logger, "info",
            f"{transaction.transaction_type.value.capitalize()} posted: {format_amount(transaction.amount)}",
            user_id=transaction.actor_user_id,
            action=transaction.transaction_type.value,
            resource=f"transaction:{transaction.id}",
            extra={
                "account_id": account.id,
                "amount": str(transaction.amount),
                "balance": str(account.balance)
            }
        )
        self._audit(
            event_type, "transaction", transaction.id, transaction.actor_user_id,
            {
                "account_id": account.id,
                "amount": transaction.amount,
                "balance_after": account.balance,
                "description": transaction.description
            }
        )

    def _rejected(self, operation: str, error: LedgerError, actor_user_id: Optional[str], **context) -> None:
        log_action(
            self.logger, "warning", f"{operation} rejected: {error.message}",
            user_id=actor_user_id, action=operation,
            extra={"code": error.code, "retryable": error.retryable, **{k: str(v) for k, v in context.items()}}
        )
        # Store and lock failures are not business outcomes; the log line is enough
        if isinstance(error, (InvalidArgument, InsufficientFunds, NotFound)):
            self._audit(
                AuditEventType.OPERATION_REJECTED, "account", str(context.get("account_id")),
                actor_user_id,
                {"operation": operation, "code": error.code, "reason": error.message,
                 **{k: str(v) for k, v in context.items()}}
            )

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               user_id: Optional[str], metadata: dict) -> None:
        if not self.audit_trail:
            return
        try:
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata,
                user_id=user_id
            )
        except Exception:
            # The ledger write already committed and stays authoritative
            self.logger.error(f"Audit write failed for {event_type.value} {entity_id}", exc_info=True)
