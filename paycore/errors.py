"""
Error taxonomy for paycore.

Every failure the core reports is one of these typed exceptions. Each
carries a stable ``code`` that the HTTP layer turns into a response body.
"""

from typing import Optional


class PaycoreError(Exception):
    """Base exception for all paycore errors."""

    code = "PAYCORE_ERROR"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.__class__.__doc__ or self.code
        super().__init__(self.message)


class ValidationError(PaycoreError):
    """Malformed or missing input."""

    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: Optional[str] = None):
        self.field = field
        super().__init__(message or f"Invalid value for {field}")


class DuplicateIdentifier(PaycoreError):
    """An identifier is already registered to another account."""

    code = "DUPLICATE_IDENTIFIER"

    def __init__(self, namespace: str, message: Optional[str] = None):
        self.namespace = namespace
        super().__init__(message or f"{namespace} already registered")


class InvalidCredential(PaycoreError):
    """Wrong password or PIN, or unknown account."""

    code = "INVALID_CREDENTIAL"


class RateLimitExceeded(PaycoreError):
    """Too many failed attempts; try again later."""

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, retry_after: float, message: Optional[str] = None):
        self.retry_after = retry_after
        super().__init__(message or "Too many failed attempts")


class AccountNotFound(PaycoreError):
    """Account not found."""

    code = "ACCOUNT_NOT_FOUND"


class TransactionNotFound(PaycoreError):
    """Transaction not found."""

    code = "TRANSACTION_NOT_FOUND"


class InsufficientFunds(PaycoreError):
    """Transaction would drive the balance below zero."""

    code = "INSUFFICIENT_FUNDS"


class InvalidStateTransition(PaycoreError):
    """Transaction cannot move to the requested status."""

    code = "INVALID_STATE_TRANSITION"


class TokenInvalid(PaycoreError):
    """Session token is malformed or has a bad signature."""

    code = "TOKEN_INVALID"


class TokenExpired(TokenInvalid):
    """Session token has expired."""

    code = "TOKEN_EXPIRED"


class StorageUnavailable(PaycoreError):
    """Storage backend failed."""

    code = "STORAGE_UNAVAILABLE"
