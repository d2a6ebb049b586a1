from __future__ import annotations


class CreditLedgerError(ValueError):
    """
    Base class for failures reported to ledger callers.

    Each subclass carries a stable ``code`` so HTTP layers can translate it
    without matching on message text.
    """

    code: str = "CREDIT_LEDGER_ERROR"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self)


class InvalidAmount(CreditLedgerError):
    """Credits must be a finite number greater than 0."""

    code = "INVALID_AMOUNT"


class SubscriptionRequired(CreditLedgerError):
    """Active subscription required."""

    code = "SUBSCRIPTION_REQUIRED"


class InsufficientCredits(CreditLedgerError):
    """Insufficient credits."""

    code = "INSUFFICIENT_CREDITS"


class Forbidden(CreditLedgerError):
    """Reservation belongs to another user."""

    code = "FORBIDDEN"


class NotFound(CreditLedgerError):
    """Resource not found."""

    code = "NOT_FOUND"


class Conflict(CreditLedgerError):
    """Reservation already linked to another external request."""

    code = "CONFLICT"


class DuplicateRequest(CreditLedgerError):
    """Request already processed."""

    code = "DUPLICATE_REQUEST"


class InvalidPlan(CreditLedgerError):
    """Unknown plan."""

    code = "INVALID_PLAN"


class IllegalTransition(CreditLedgerError):
    """Reservation is already finalized."""

    code = "ILLEGAL_TRANSITION"


class DuplicateRecordError(Exception):
    """Raised by stores when an insert collides with a unique field."""

    def __init__(self, collection: str, key: str) -> None:
        super().__init__(f"duplicate record in {collection}: {key}")
        self.collection = collection
        self.key = key


class StaleWriteError(Exception):
    """Raised by stores when a versioned write lost to a concurrent writer."""

    def __init__(self, collection: str, key: str, expected_version: int) -> None:
        super().__init__(
            f"stale write to {collection}:{key} (expected version {expected_version})"
        )
        self.collection = collection
        self.key = key
        self.expected_version = expected_version
