from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    UNAUTHENTICATED = "Unauthenticated"
    NOT_FOUND = "NotFound"
    BANNED = "Banned"
    RATE_LIMITED = "RateLimited"
    INVALID_OR_EXPIRED_TOKEN = "InvalidOrExpiredToken"
    QUOTA_EXCEEDED = "QuotaExceeded"
    ALREADY_CLAIMED = "AlreadyClaimed"
    CAPACITY_EXCEEDED = "CapacityExceeded"
    VERIFICATION_FAILED = "VerificationFailed"
    INSUFFICIENT_BALANCE = "InsufficientBalance"
    INVALID_INPUT = "InvalidInput"
    UPSTREAM_FAILURE = "UpstreamFailure"


class RewardsError(Exception):
    code: ErrorCode = ErrorCode.INVALID_INPUT
    status_code: int = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.message, "error_code": self.code.value}


class UnauthenticatedError(RewardsError):
    code = ErrorCode.UNAUTHENTICATED
    status_code = 401


class NotFoundError(RewardsError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class BannedError(RewardsError):
    code = ErrorCode.BANNED
    status_code = 403


class RateLimitedError(RewardsError):
    code = ErrorCode.RATE_LIMITED
    status_code = 429

    def __init__(self, message: str, retry_after_ms: int):
        super().__init__(message)
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retry_after_ms": self.retry_after_ms}


class InvalidOrExpiredTokenError(RewardsError):
    code = ErrorCode.INVALID_OR_EXPIRED_TOKEN
    status_code = 401


class QuotaExceededError(RewardsError):
    code = ErrorCode.QUOTA_EXCEEDED
    status_code = 403

    def __init__(self, message: str, retry_after_seconds: Optional[int] = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds

    def to_dict(self) -> dict:
        return {**super().to_dict(), "retry_after_seconds": self.retry_after_seconds}


class AlreadyClaimedError(RewardsError):
    code = ErrorCode.ALREADY_CLAIMED
    status_code = 409


class CapacityExceededError(RewardsError):
    code = ErrorCode.CAPACITY_EXCEEDED
    status_code = 403


class VerificationFailedError(RewardsError):
    code = ErrorCode.VERIFICATION_FAILED
    status_code = 400


class InsufficientBalanceError(RewardsError):
    code = ErrorCode.INSUFFICIENT_BALANCE
    status_code = 403


class InvalidInputError(RewardsError):
    code = ErrorCode.INVALID_INPUT
    status_code = 400


class UpstreamFailureError(RewardsError):
    """Store or oracle failure. Always logged; the caller may retry."""

    code = ErrorCode.UPSTREAM_FAILURE
    status_code = 503


class StoreError(Exception):
    """Raised by record stores when the backend fails or times out."""


class DuplicateRecordError(StoreError):
    """Raised when an insert violates a uniqueness constraint."""
