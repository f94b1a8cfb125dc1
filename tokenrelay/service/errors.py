from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that clients can branch on:

    - validation_error (400)
    - invalid_credentials (401)
    - token_malformed / token_signature_invalid / token_expired /
      token_kind_mismatch (401)
    - no_session / token_reuse_detected (401)
    - session_expired (401, client side)
    - server_error (500)
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


class InvalidInputError(ServiceError):
    """Malformed input handed to a service primitive (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Login rejected; the only user-correctable auth failure."""
    error_code = "invalid_credentials"


class TokenError(AuthenticationError):
    """A presented token failed validation; callers treat it as unauthenticated."""
    error_code = "token_invalid"


class MalformedTokenError(TokenError):
    error_code = "token_malformed"


class SignatureInvalidError(TokenError):
    error_code = "token_signature_invalid"


class TokenExpiredError(TokenError):
    error_code = "token_expired"


class KindMismatchError(TokenError):
    """An access token was presented where a refresh token is required, or vice versa."""
    error_code = "token_kind_mismatch"


class RefreshRejectedError(AuthenticationError):
    """Refresh-specific failures; both end the session for that subject."""
    error_code = "refresh_rejected"


class NoSessionError(RefreshRejectedError):
    error_code = "no_session"


class TokenReuseDetectedError(RefreshRejectedError):
    """A superseded refresh token was presented; the session has been ended."""
    error_code = "token_reuse_detected"


class SessionExpiredError(AuthenticationError):
    """Client-surfaced terminal state: the user must sign in again."""
    error_code = "session_expired"

    def __init__(
        self,
        message: str = "session expired, please sign in again",
        *,
        reason: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


def error_types() -> list[type[ServiceError]]:
    """The service error hierarchy, breadth first from :class:`ServiceError`."""
    found: list[type[ServiceError]] = []
    pending: list[type[ServiceError]] = [ServiceError]
    while pending:
        cls = pending.pop(0)
        found.append(cls)
        pending.extend(cls.__subclasses__())
    return found


__all__ = [
    "ServiceError",
    "InvalidInputError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenError",
    "MalformedTokenError",
    "SignatureInvalidError",
    "TokenExpiredError",
    "KindMismatchError",
    "RefreshRejectedError",
    "NoSessionError",
    "TokenReuseDetectedError",
    "SessionExpiredError",
    "ServerError",
    "error_types",
]
