from __future__ import annotations

from datetime import datetime
from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``.
    Credential failures share one generic message so callers cannot tell an
    unknown identifier from a wrong password.
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


class InvalidCredentials(AuthenticationError):
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid credentials", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLocked(ServiceError):
    """Too many failed logins; ``locked_until`` is disclosed to the caller."""

    status_code = 423
    error_code = "account_locked"

    def __init__(self, locked_until: datetime, message: str = "account locked") -> None:
        super().__init__(message, detail={"locked_until": locked_until.isoformat()})
        self.locked_until = locked_until


class AccountInactive(ServiceError):
    status_code = 403
    error_code = "account_inactive"

    def __init__(self, message: str = "account inactive", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidToken(AuthenticationError):
    """Malformed token or bad signature."""
    error_code = "invalid_token"

    def __init__(self, message: str = "invalid token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ExpiredToken(AuthenticationError):
    error_code = "expired_token"

    def __init__(self, message: str = "token expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UnknownKey(AuthenticationError):
    """The token's key id is not a current verification key."""
    error_code = "unknown_key"

    def __init__(self, message: str = "unknown signing key", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionNotFound(AuthenticationError):
    error_code = "session_not_found"

    def __init__(self, message: str = "session not found", **kwargs) -> None:
        super().__init__(message, **kwargs)


class SessionInvalid(AuthenticationError):
    error_code = "session_invalid"

    def __init__(self, message: str = "session invalid", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictingIdentity(ServiceError):
    """Duplicate email or username at registration (409)."""
    status_code = 409
    error_code = "conflict"


class MfaRequired(AuthenticationError):
    error_code = "mfa_required"

    def __init__(self, message: str = "mfa code required", **kwargs) -> None:
        super().__init__(message, **kwargs)


class MfaInvalidCode(AuthenticationError):
    error_code = "mfa_invalid_code"

    def __init__(self, message: str = "invalid mfa code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class BadRequestError(ServiceError):
    status_code = 400
    error_code = "validation_error"


class NotFoundError(ServiceError):
    status_code = 404
    error_code = "not_found"


class ForbiddenError(ServiceError):
    status_code = 403
    error_code = "forbidden"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NoActiveKey(ServerError):
    """No non-expired signing key is loaded; fatal at startup."""
    error_code = "no_active_key"

    def __init__(self, message: str = "no active signing key", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidConfiguration(ServerError):
    """Malformed duration strings or missing secrets."""
    error_code = "invalid_configuration"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "InvalidCredentials",
    "AccountLocked",
    "AccountInactive",
    "InvalidToken",
    "ExpiredToken",
    "UnknownKey",
    "SessionNotFound",
    "SessionInvalid",
    "ConflictingIdentity",
    "MfaRequired",
    "MfaInvalidCode",
    "BadRequestError",
    "NotFoundError",
    "ForbiddenError",
    "ServerError",
    "NoActiveKey",
    "InvalidConfiguration",
]
