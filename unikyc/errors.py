"""
UniKYC Error Taxonomy

Every failure the core can surface carries a stable ErrorCode so outer
layers (HTTP, SDK, CLI) can render messaging without parsing free text.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    """Stable, caller-visible error codes."""
    RESOLUTION_NOT_FOUND = "RESOLUTION_NOT_FOUND"
    RESOLUTION_AMBIGUOUS = "RESOLUTION_AMBIGUOUS"
    CIPHER_INVALID_SCHEME = "CIPHER_INVALID_SCHEME"
    CIPHER_INSUFFICIENT_SHARES = "CIPHER_INSUFFICIENT_SHARES"
    CIPHER_CORRUPT_SHARE = "CIPHER_CORRUPT_SHARE"
    CIPHER_CORRUPT_CIPHERTEXT = "CIPHER_CORRUPT_CIPHERTEXT"
    TIMELOCK_INVALID_UNLOCK_HEIGHT = "TIMELOCK_INVALID_UNLOCK_HEIGHT"
    TIMELOCK_REGISTRATION_FAILED = "TIMELOCK_REGISTRATION_FAILED"
    TIMELOCK_UNKNOWN_REQUEST = "TIMELOCK_UNKNOWN_REQUEST"
    TIMELOCK_NETWORK_UNAVAILABLE = "TIMELOCK_NETWORK_UNAVAILABLE"
    STORAGE_UNAVAILABLE = "STORAGE_UNAVAILABLE"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
    RELEASE_DENIED = "RELEASE_DENIED"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    IDENTITY_MISMATCH = "IDENTITY_MISMATCH"
    VALIDATION_ERROR = "VALIDATION_ERROR"


class KycError(Exception):
    """Base class for all UniKYC core errors."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR
    retryable: bool = False

    def __init__(self, message: str, code: Optional[ErrorCode] = None, **details: Any):
        if code is not None:
            self.code = code
        self.message = message
        self.details = details
        super().__init__(f"{self.code.value}: {message}")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            d["details"] = self.details
        return d


class ValidationError(KycError):
    """Raised when caller input is malformed."""
    code = ErrorCode.VALIDATION_ERROR


class ResolutionError(KycError):
    """Identifier could not be resolved to a canonical account."""

    NOT_FOUND = ErrorCode.RESOLUTION_NOT_FOUND
    AMBIGUOUS = ErrorCode.RESOLUTION_AMBIGUOUS

    code = ErrorCode.RESOLUTION_NOT_FOUND

    @classmethod
    def not_found(cls, label: str) -> "ResolutionError":
        return cls(f"no forward record for '{label}'", cls.NOT_FOUND, label=label)

    @classmethod
    def ambiguous(cls, label: str, address: str) -> "ResolutionError":
        return cls(
            f"conflicting backward records for '{label}' -> {address}",
            cls.AMBIGUOUS,
            label=label,
            address=address,
        )


class CipherError(KycError):
    """Threshold cipher failure."""

    INVALID_SCHEME = ErrorCode.CIPHER_INVALID_SCHEME
    INSUFFICIENT_SHARES = ErrorCode.CIPHER_INSUFFICIENT_SHARES
    CORRUPT_SHARE = ErrorCode.CIPHER_CORRUPT_SHARE
    CORRUPT_CIPHERTEXT = ErrorCode.CIPHER_CORRUPT_CIPHERTEXT

    code = ErrorCode.CIPHER_INVALID_SCHEME


class TimeLockError(KycError):
    """Time-lock registration or lookup failure."""

    INVALID_UNLOCK_HEIGHT = ErrorCode.TIMELOCK_INVALID_UNLOCK_HEIGHT
    REGISTRATION_FAILED = ErrorCode.TIMELOCK_REGISTRATION_FAILED
    UNKNOWN_REQUEST = ErrorCode.TIMELOCK_UNKNOWN_REQUEST
    NETWORK_UNAVAILABLE = ErrorCode.TIMELOCK_NETWORK_UNAVAILABLE

    code = ErrorCode.TIMELOCK_REGISTRATION_FAILED

    @property
    def retryable(self) -> bool:  # type: ignore[override]
        return self.code in (ErrorCode.TIMELOCK_REGISTRATION_FAILED, ErrorCode.TIMELOCK_NETWORK_UNAVAILABLE)


class StorageUnavailable(KycError):
    """Content-addressed storage collaborator failed."""
    code = ErrorCode.STORAGE_UNAVAILABLE
    retryable = True


class InvalidTransition(KycError):
    """Requested status transition is not legal from the current state."""
    code = ErrorCode.INVALID_TRANSITION


class RecordNotFound(KycError):
    code = ErrorCode.RECORD_NOT_FOUND


class ReleaseDenied(KycError):
    """Payload release refused: wrong status or time-lock not yet decrypted."""
    code = ErrorCode.RELEASE_DENIED


class AuthenticationError(KycError):
    """Missing, unknown or expired session, or a caller acting for another account."""

    UNAUTHENTICATED = ErrorCode.UNAUTHENTICATED
    IDENTITY_MISMATCH = ErrorCode.IDENTITY_MISMATCH

    code = ErrorCode.UNAUTHENTICATED
