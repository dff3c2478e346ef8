"""
Ledger Error Taxonomy

Typed failures raised by the ledger engine, the stores and the query service,
plus ``OperationResult`` for callers that prefer result values to exceptions.

    NotFound           referenced account or record is absent
    InvalidArgument    non-positive amount, identical transfer endpoints, bad input
    InsufficientFunds  business-rule violation, never retryable
    Unavailable        lock contention or timeout, safe to retry
    Internal           store failure inside a unit of work, nothing was written
"""

from dataclasses import dataclass
from typing import Any, Callable, Generic, Optional, TypeVar


T = TypeVar("T")


class LedgerError(Exception):
    """Base class for all ledger failures"""
    code = "ledger_error"
    retryable = False

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
            "details": {k: str(v) for k, v in self.details.items()},
        }


class NotFound(LedgerError):
    code = "not_found"


class InvalidArgument(LedgerError, ValueError):
    code = "invalid_argument"


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"


class Unavailable(LedgerError):
    code = "unavailable"
    retryable = True


class Internal(LedgerError):
    code = "internal"


@dataclass(frozen=True)
class OperationResult(Generic[T]):
    """Outcome of a ledger call: a value or a typed error, never both"""
    value: Optional[T] = None
    error: Optional[LedgerError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the captured error"""
        if self.error is not None:
            raise self.error
        return self.value


def capture(fn: Callable[..., T], *args: Any, **kwargs: Any) -> OperationResult[T]:
    """Run ``fn`` and fold any LedgerError into an OperationResult"""
    try:
        return OperationResult(value=fn(*args, **kwargs))
    except LedgerError as e:
        return OperationResult(error=e)
