"""
Ceremony error taxonomy.

Every failure a caller can observe is a CeremonyError subclass carrying a stable
error code, an HTTP status for the boundary layer and a generic public message.
Internal details go into ``context`` for logging and never into the public message.
"""

from datetime import datetime, timezone
import functools
from typing import Any, Callable, Dict, Optional

from passkey_readiness.utils.logging_utils import log_error_with_context


class CeremonyError(Exception):
    """Base ceremony exception with enhanced context."""

    status_code: int = 400
    default_code: str = "CEREMONY_ERROR"
    public_message: str = "The request could not be completed."

    def __init__(self, message: Optional[str] = None, error_code: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        super().__init__(message or self.public_message)
        self.error_code = error_code or self.default_code
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    def to_response(self) -> Dict[str, Any]:
        return {"error": self.error_code, "message": self.public_message}


class InvalidInputError(CeremonyError):
    """Malformed handle or payload; raised before any state mutation."""

    default_code = "INVALID_INPUT"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, context={"field": field})
        # Validation messages only describe the caller's own input.
        self.public_message = message


class ConflictError(CeremonyError):
    status_code = 409
    default_code = "CONFLICT"
    public_message = "Email already in use. Please sign in or use a different email."


class NoCredentialsEnrolledError(CeremonyError):
    default_code = "NO_CREDENTIALS_ENROLLED"
    public_message = "No passkeys registered for this user. Please register a passkey first."


class ChallengeInvalidError(CeremonyError):
    default_code = "CHALLENGE_INVALID"
    public_message = "Invalid or expired challenge."


class CredentialNotFoundError(CeremonyError):
    status_code = 404
    default_code = "CREDENTIAL_NOT_FOUND"
    public_message = "Credential not recognised."


class VerificationFailedError(CeremonyError):
    status_code = 401
    default_code = "VERIFICATION_FAILED"
    public_message = "Verification failed."


class RateLimitedError(CeremonyError):
    status_code = 429
    default_code = "RATE_LIMITED"
    public_message = "Too many requests. Please try again later."

    def __init__(self, message: Optional[str] = None, error_code: Optional[str] = None, retry_after: Optional[int] = None):
        super().__init__(message, error_code, {"retry_after": retry_after})
        self.retry_after = retry_after


class InternalCeremonyError(CeremonyError):
    status_code = 500
    default_code = "INTERNAL"
    public_message = "An internal error occurred."


class DeliveryFailedError(CeremonyError):
    status_code = 502
    default_code = "DELIVERY_FAILED"
    public_message = "Failed to send verification code."


class TicketNotFoundError(CeremonyError):
    status_code = 404
    default_code = "TICKET_NOT_FOUND"
    public_message = "Invalid or expired code."


class CodeMismatchError(CeremonyError):
    default_code = "CODE_MISMATCH"
    public_message = "Invalid code."

    def __init__(self, attempts: int, max_attempts: int):
        super().__init__(
            "OTP code mismatch",
            context={"attempts": attempts, "max_attempts": max_attempts},
        )
        self.attempts_remaining = max(max_attempts - attempts, 0)

    def to_response(self) -> Dict[str, Any]:
        return {**super().to_response(), "attempts_remaining": self.attempts_remaining}


class MaxAttemptsExceededError(CeremonyError):
    status_code = 429
    default_code = "MAX_ATTEMPTS_EXCEEDED"
    public_message = "Maximum attempts exceeded."


def ceremony_boundary(operation: str) -> Callable:
    """
    Decorator for public ceremony steps.

    CeremonyErrors pass through untouched; anything else is logged with its stack
    trace and re-raised as InternalCeremonyError chained to the original exception.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs):
            try:
                return await func(*args, **kwargs)
            except CeremonyError:
                raise
            except Exception as e:
                log_error_with_context(e, operation=operation)
                raise InternalCeremonyError(context={"operation": operation}) from e

        return wrapper

    return decorator
