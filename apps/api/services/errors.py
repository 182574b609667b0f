"""Ledger error taxonomy shared by services and the HTTP boundary."""

from __future__ import annotations

from typing import Any, Dict


class LedgerError(RuntimeError):
    """Base class for failures raised by ledger workflows."""

    status_code = 500
    code = "ledger_error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra: Dict[str, Any] = extra

    def to_payload(self) -> Dict[str, Any]:
        return {"detail": self.message, "code": self.code, **self.extra}


class NotFoundError(LedgerError):
    """Raised when a user or plan cannot be resolved."""

    status_code = 404
    code = "not_found"


class NoActiveSubscriptionError(LedgerError):
    status_code = 400
    code = "no_active_subscription"

    def __init__(self, message: str = "No active subscription found"):
        super().__init__(message)


class InsufficientCreditsError(LedgerError):
    status_code = 400
    code = "insufficient_credits"

    def __init__(self, available: int, required: int):
        super().__init__(
            f"Insufficient credits. Available: {available}, Required: {required}",
            available=available,
            required=required,
        )
        self.available = available
        self.required = required


class DailyLimitExceededError(LedgerError):
    status_code = 400
    code = "daily_limit_exceeded"

    def __init__(self, used: int, limit: int):
        super().__init__(f"Daily limit exceeded. Used: {used}/{limit}", used=used, limit=limit)
        self.used = used
        self.limit = limit


class InvalidInputError(LedgerError):
    """Raised for malformed billing cycles, credit amounts or payment payloads."""

    status_code = 400
    code = "invalid_input"


class InvalidReferrerError(InvalidInputError):
    code = "invalid_referrer"


class TransactionFailureError(LedgerError):
    """Raised when the store rejects or aborts an atomic unit."""

    status_code = 500
    code = "transaction_failure"
