"""Error kinds and the typed result returned by checkout operations.

Orchestrators return `Result` values instead of raising for expected
failures, so the HTTP layer has to look at the error kind before it can
treat an outcome as success.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class PaymentError(Exception):
    """Base for every expected checkout/refund failure."""

    code = "payment_error"

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Convert the error to an API-friendly payload."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationError(PaymentError):
    """Price, stock, amount or ownership check failed before any gateway call.

    Surfaced verbatim to the caller and never retried.
    """

    code = "validation_error"


class GatewayError(PaymentError):
    """The gateway rejected an initiate, retrieve or refund call."""

    code = "gateway_error"


class ReconciliationError(PaymentError):
    """A payment session or refund target could not be located."""

    code = "reconciliation_error"


class PersistenceWarning(PaymentError):
    """A best-effort step after order commit failed; logged, never surfaced."""

    code = "persistence_warning"

    def __init__(self, action: str, message: str, details: Optional[dict[str, Any]] = None):
        self.action = action
        super().__init__(message, {"action": action, **(details or {})})


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or a `PaymentError`, never both."""

    value: Optional[T] = None
    error: Optional[PaymentError] = None

    @classmethod
    def success(cls, value: T) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: PaymentError) -> "Result[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the carried error."""
        if self.error is not None:
            raise self.error
        return self.value
