"""
Trust Ledger Domain Exceptions

All exceptions raised by the ledger, vouch, referral and monitor services.
"""

from typing import Optional


class LedgerServiceError(Exception):
    """Base exception for trust ledger errors"""
    pass


class StorageError(LedgerServiceError):
    """Raised when the backing store fails to read or write a record"""
    pass


class ConflictError(StorageError):
    """Raised when a conditional write finds a different stored value"""

    def __init__(self, key: str, expected, actual):
        super().__init__(f"Conflict on {key}: expected {expected}, found {actual}")
        self.key = key
        self.expected = expected
        self.actual = actual


class InvalidAmountError(LedgerServiceError):
    """Raised when a point amount is not a positive integer"""
    pass


class InsufficientFundsError(LedgerServiceError):
    """Raised when the sender cannot cover the requested amount"""
    pass


class SelfTransferError(LedgerServiceError):
    """Raised when a user tries to move points to (or vouch for) themselves"""
    pass


class ContentionError(LedgerServiceError):
    """Raised when compare-and-set retries are exhausted"""
    pass


class PartialFailureError(LedgerServiceError):
    """
    Raised when a multi-step operation failed midway and was compensated.

    The ledger is consistent again when this is raised; `compensated` is
    always True.
    """

    def __init__(self, message: str, compensated: bool = True):
        super().__init__(message)
        self.compensated = compensated


class UnrecoverableError(LedgerServiceError):
    """Raised when compensation itself failed and balances need manual reconciliation"""
    pass


class NotFoundError(LedgerServiceError):
    pass


class VouchNotFoundError(NotFoundError):
    pass


class ReferralNotFoundError(NotFoundError):
    pass


class SelfReferralError(LedgerServiceError):
    pass


class TooSoonError(LedgerServiceError):
    """Raised when a daily grant is claimed before the interval elapsed"""

    def __init__(self, message: str, hours_remaining: float):
        super().__init__(message)
        self.hours_remaining = hours_remaining


class InvalidStateTransitionError(LedgerServiceError):
    pass


class ExternalUnavailableError(LedgerServiceError):
    """Raised when an external collaborator times out or errors"""

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message)
        self.service = service


class InvalidIdentityError(LedgerServiceError):
    """Raised when an external identity is not a 0x-prefixed address"""
    pass
