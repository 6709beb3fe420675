"""
Error types raised by the selection engine and the credit ledger.
Callers branch on these; everything else propagates as-is.
"""

from typing import Optional


class ValidationError(ValueError):
    """Missing or malformed input. Surface to the caller, never retry."""


class UnknownVisitingType(ValidationError):
    """A visiting_type label outside the known cadence categories."""

    def __init__(self, label: str):
        self.label = label
        super().__init__(f"Unknown visiting_type '{label}'")


class InsufficientCredits(Exception):
    """A reservation was declined because the account balance is too low."""

    def __init__(self, account_id: str, requested: int, available: int):
        self.account_id = account_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Account {account_id} has {available} credits available, {requested} requested"
        )


class NotFound(LookupError):
    """No matching account, client or holiday."""


class AccountNotFound(NotFound):
    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"No credit account for {account_id}")


class UpstreamUnavailable(RuntimeError):
    """The database (or another collaborator) failed. Retryable by the caller."""

    def __init__(self, message: str, cause: Optional[Exception] = None):
        self.cause = cause
        super().__init__(message)
