"""
Error Taxonomy

Every failure the core reports to a caller is one of these exceptions. Each
carries an enum code so the HTTP layer can map it to a status without string
matching.
"""

from enum import Enum
from typing import Any, Dict, Optional


class AuthErrorCode(Enum):
    """Authentication failure reasons"""
    INVALID_CREDENTIALS = "invalid_credentials"
    LOCKED = "locked"
    EXPIRED = "expired"
    MALFORMED = "malformed"
    REVOKED = "revoked"
    REUSE_DETECTED = "reuse_detected"
    UNAVAILABLE = "unavailable"


class TxErrorCode(Enum):
    """Transaction engine failure reasons"""
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_ACCOUNT = "invalid_account"
    DUPLICATE_KEY = "duplicate_key"
    NOT_FOUND = "not_found"
    ALREADY_DECIDED = "already_decided"
    INVALID_TRANSITION = "invalid_transition"
    SETTLEMENT_FAILED = "settlement_failed"


class BankingError(Exception):
    """Base class for all errors raised by the core"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class AuthError(BankingError):
    """Authentication or token failure"""

    def __init__(self, code: AuthErrorCode, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message or code.value.replace("_", " ").capitalize(), details)
        self.code = code


class TxError(BankingError):
    """Transfer creation or decision failure"""

    def __init__(self, code: TxErrorCode, message: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message or code.value.replace("_", " ").capitalize(), details)
        self.code = code


class ValidationError(BankingError):
    """Malformed input, reported with the offending field"""

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}", {"field": field, "message": message})
        self.field = field


class OperationTimeout(BankingError):
    """The request deadline expired before the operation committed"""


class CacheUnavailable(BankingError):
    """The revocation cache could not answer within its timeout"""
