"""
Multipost Errors
================
Centralized error handling for the publish pipeline.

Every error raised by the core is a PublishError so the orchestrator can turn
it into persisted destination/job state with a human-readable message.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Standardized error codes for logging and API responses."""
    # Generic
    UNKNOWN = "UNKNOWN"
    INTERNAL = "INTERNAL"
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"

    # Configuration / integrity
    CONFIG_MISSING = "CONFIG_MISSING"
    INTEGRITY_FAILED = "INTEGRITY_FAILED"
    INVALID_STATE = "INVALID_STATE"

    # Credentials
    NOT_CONNECTED = "NOT_CONNECTED"
    MISSING_TOKEN = "MISSING_TOKEN"
    TOKEN_UNRECOVERABLE = "TOKEN_UNRECOVERABLE"
    REFRESH_FAILED = "REFRESH_FAILED"

    # Platform
    UNSUPPORTED_PLATFORM = "UNSUPPORTED_PLATFORM"
    NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
    PLATFORM_UPLOAD_FAILED = "PLATFORM_UPLOAD"
    PLATFORM_REJECTED = "PLATFORM_REJECTED"
    MEDIA_NOT_FOUND = "MEDIA_NOT_FOUND"
    UNSUPPORTED_MEDIA = "UNSUPPORTED_MEDIA"

    # Orchestration
    INVALID_TRANSITION = "INVALID_TRANSITION"
    NOT_FOUND = "NOT_FOUND"
    NO_DESTINATIONS = "NO_DESTINATIONS"
    ALL_DESTINATIONS_FAILED = "ALL_DESTINATIONS_FAILED"
    DB_ERROR = "DB_ERROR"


class PublishError(Exception):
    """
    Base error for the publish core.

    Attributes:
        code: Standardized error code
        message: Human-readable error message (safe to persist)
        details: Optional additional context
    """

    code: ErrorCode = ErrorCode.UNKNOWN

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        details: Optional[dict] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/API response."""
        return {
            "error_code": self.code.value,
            "error_message": self.message,
            "details": self.details,
        }


class ConfigError(PublishError):
    """Required configuration is missing or malformed. Raised at startup."""
    code = ErrorCode.CONFIG_MISSING


class CredentialIntegrityError(PublishError):
    """A stored credential failed authentication or could not be decoded."""
    code = ErrorCode.INTEGRITY_FAILED


class InvalidState(PublishError):
    """OAuth state token failed verification."""
    code = ErrorCode.INVALID_STATE


class NotConnected(PublishError):
    """No active connected account for this user/platform."""
    code = ErrorCode.NOT_CONNECTED


class MissingToken(PublishError):
    """Connected account exists but holds no access token."""
    code = ErrorCode.MISSING_TOKEN


class TokenUnrecoverable(PublishError):
    """Access token is stale and there is no refresh token to renew it."""
    code = ErrorCode.TOKEN_UNRECOVERABLE


class RefreshFailed(PublishError):
    """The identity provider rejected or failed the refresh exchange."""
    code = ErrorCode.REFRESH_FAILED


class UnsupportedPlatform(PublishError):
    """No adapter is registered for the platform identifier."""
    code = ErrorCode.UNSUPPORTED_PLATFORM


class PlatformNotImplemented(PublishError):
    """Adapter exists but publishing to that platform is not available yet."""
    code = ErrorCode.NOT_IMPLEMENTED


class PlatformPublishError(PublishError):
    """The platform API refused or failed the upload/publish call."""
    code = ErrorCode.PLATFORM_UPLOAD_FAILED


class MediaNotFound(PublishError):
    """The stored media object could not be read."""
    code = ErrorCode.MEDIA_NOT_FOUND


class InvalidTransition(PublishError):
    """A destination state change outside the allowed transitions."""
    code = ErrorCode.INVALID_TRANSITION


class FatalJobError(PublishError):
    """Data-integrity failure for a loaded job. Never retried."""
    code = ErrorCode.NOT_FOUND


class NoDestinations(FatalJobError):
    """The post has no destinations to publish."""
    code = ErrorCode.NO_DESTINATIONS


class RetryableJobError(PublishError):
    """The job run failed in a way that redelivery may fix."""
    code = ErrorCode.ALL_DESTINATIONS_FAILED


MAX_ERROR_MESSAGE_LENGTH = 500


def error_from_exception(e: Exception) -> PublishError:
    """Convert a generic exception to a PublishError."""
    if isinstance(e, PublishError):
        return e

    error_msg = str(e) or e.__class__.__name__
    lowered = error_msg.lower()

    if "timeout" in lowered or "timed out" in lowered:
        return PublishError(error_msg, code=ErrorCode.TIMEOUT)
    if "connection" in lowered or "network" in lowered:
        return PublishError(error_msg, code=ErrorCode.NETWORK_ERROR)

    return PublishError(error_msg, code=ErrorCode.UNKNOWN)


def safe_error_message(e: Exception) -> str:
    """Human-readable message for persistence. No traceback, bounded length."""
    message = error_from_exception(e).message.strip() or "Unknown error during publish"
    return message[:MAX_ERROR_MESSAGE_LENGTH]


# HTTP status code mapping
ERROR_HTTP_STATUS = {
    ErrorCode.UNKNOWN: 500,
    ErrorCode.INTERNAL: 500,
    ErrorCode.TIMEOUT: 504,
    ErrorCode.NETWORK_ERROR: 502,
    ErrorCode.CONFIG_MISSING: 500,
    ErrorCode.INTEGRITY_FAILED: 500,
    ErrorCode.INVALID_STATE: 400,
    ErrorCode.NOT_CONNECTED: 404,
    ErrorCode.MISSING_TOKEN: 409,
    ErrorCode.TOKEN_UNRECOVERABLE: 409,
    ErrorCode.REFRESH_FAILED: 502,
    ErrorCode.UNSUPPORTED_PLATFORM: 400,
    ErrorCode.NOT_IMPLEMENTED: 501,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.NO_DESTINATIONS: 400,
}


def get_http_status(code: ErrorCode) -> int:
    """Get HTTP status code for an error code."""
    return ERROR_HTTP_STATUS.get(code, 500)
