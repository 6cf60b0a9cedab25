from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    machine-readable error_code. Clients branch on error_code, never on the
    message text.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown principal, inactive principal, or wrong password (401)."""
    error_code = "invalid_credentials"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


# =========================================================================
# Token verification outcomes
# =========================================================================


class TokenError(AuthenticationError):
    """A presented token was rejected."""


class MalformedTokenError(TokenError):
    """Bad structure, signature, issuer/audience, or claims."""
    error_code = "token_malformed"


class WrongTokenKindError(TokenError):
    """An access token was presented where a refresh token is required, or vice versa."""
    error_code = "token_wrong_kind"


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class TokenRevokedError(TokenError):
    error_code = "token_revoked"


# =========================================================================
# OTP verification outcomes
# =========================================================================


class OTPError(ServiceError):
    """An OTP verify transition did not succeed."""
    status_code = 400


class OTPNotFoundError(OTPError):
    error_code = "otp_not_found"


class OTPAlreadyUsedError(OTPError):
    error_code = "otp_already_used"


class OTPExpiredError(OTPError):
    error_code = "otp_expired"


class OTPLockedError(OTPError):
    """Attempt limit reached; a new code must be requested (423)."""
    status_code = 423
    error_code = "otp_locked"


class OTPInvalidError(OTPError):
    error_code = "otp_invalid"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "RateLimitedError",
    "TokenError",
    "MalformedTokenError",
    "WrongTokenKindError",
    "TokenExpiredError",
    "TokenRevokedError",
    "OTPError",
    "OTPNotFoundError",
    "OTPAlreadyUsedError",
    "OTPExpiredError",
    "OTPLockedError",
    "OTPInvalidError",
    "ServerError",
]
