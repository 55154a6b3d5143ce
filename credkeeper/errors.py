"""credkeeper error hierarchy.

Every failure a caller can recover from at the request boundary is a
CredentialError subclass. Each class carries:

  - code:        stable machine-readable identifier returned to clients
  - status_code: HTTP status used by the exception handler in main.py

Messages are user-facing. They must never contain token values, key
material, password hashes or library tracebacks.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class CredentialError(Exception):
    """Base class for all credkeeper errors.

    HTTP mapping: status_code attribute, body {"error": {"message", "code"}}
    """

    code: str = "internal_error"
    status_code: int = 500
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class RateLimited(CredentialError):
    """Raised when an API key slot is still inside its cooldown window.

    Recoverable — the caller waits retry_after_seconds and tries again.
    HTTP mapping: 429 Too Many Requests + Retry-After header.
    """

    code = "rate_limited"
    status_code = 429
    default_message = "Too many requests. Please try again later."

    def __init__(self, message: Optional[str] = None, retry_after_seconds: int = 0) -> None:
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class InvalidCredential(CredentialError):
    """Wrong password, wrong current email, or unknown API key. Terminal for this attempt."""

    code = "invalid_credential"
    status_code = 401
    default_message = "Invalid credentials"


class VerificationFailure(str, Enum):
    """Why a signed token failed verification."""

    BAD_SIGNATURE = "bad_signature"
    EXPIRED = "expired"
    MALFORMED = "malformed"


class TokenError(CredentialError):
    """Base class for purpose-token failures. The caller must request a new token."""

    code = "token_invalid"
    status_code = 400
    default_message = "Invalid or expired link"

    def __init__(
        self,
        message: Optional[str] = None,
        failure: VerificationFailure = VerificationFailure.BAD_SIGNATURE,
    ) -> None:
        super().__init__(message)
        self.failure = failure


class TokenExpired(TokenError):
    code = "token_expired"
    default_message = "This link has expired. Please request a new one."

    def __init__(self, message: Optional[str] = None) -> None:
        super().__init__(message, failure=VerificationFailure.EXPIRED)


class TokenInvalid(TokenError):
    code = "token_invalid"
    default_message = "Invalid or expired link"


class TokenAlreadyConsumed(TokenError):
    """The token's signature is valid but it was used or superseded."""

    code = "token_consumed"
    default_message = "This link has already been used or was replaced by a newer one."


class CsrfMismatch(CredentialError):
    code = "csrf_mismatch"
    status_code = 403
    default_message = "CSRF token validation failed"


class Unauthorized(CredentialError):
    """No session credential was presented."""

    code = "unauthorized"
    status_code = 401
    default_message = "Unauthorized"


class Forbidden(CredentialError):
    """A credential was presented but is invalid, expired or lacks privileges."""

    code = "forbidden"
    status_code = 403
    default_message = "Invalid token"


class EmailNotVerified(Forbidden):
    code = "email_not_verified"
    default_message = (
        "Email not verified. Please check your inbox and verify your email before logging in."
    )


class AccountStateError(CredentialError):
    """The request conflicts with the account's current state (e.g. email already in use)."""

    code = "account_state"
    status_code = 400
    default_message = "Request cannot be applied to this account"


class NotFound(CredentialError):
    code = "not_found"
    status_code = 404
    default_message = "Not found"


class StoreError(CredentialError):
    """Persistence-layer failure. Surfaced as a generic internal error; never retried here."""

    code = "internal_error"
    status_code = 500
    default_message = "Internal server error"
