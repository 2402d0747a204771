from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable snake_case
    ``error_code`` that clients can branch on. Messages are safe to show to
    callers; they never contain token, code or state values.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    # Set when the raiser already emitted the audit event for this failure
    audited: bool = False

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


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class BadRequestError(ValidationError):
    """Request is malformed or missing required fields."""
    error_code = "bad_request"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"


class ConflictError(ServiceError):
    """Resource conflict (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


# Local login


class InvalidCredentials(AuthenticationError):
    """Unknown email or wrong password; the two are indistinguishable."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountInactive(ForbiddenError):
    error_code = "account_inactive"

    def __init__(self, message: str = "account is disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Refresh tokens


class TokenNotFound(AuthenticationError):
    error_code = "token_not_found"

    def __init__(self, message: str = "refresh token not recognized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenExpiredOrRevoked(AuthenticationError):
    error_code = "token_expired_or_revoked"

    def __init__(self, message: str = "refresh token expired or revoked", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenReuseDetected(AuthenticationError):
    """A used refresh token was presented again; its chain has been revoked."""
    error_code = "token_reuse_detected"

    def __init__(self, message: str = "refresh token reuse detected", **kwargs) -> None:
        super().__init__(message, **kwargs)


# SSO state


class StateNotFound(ValidationError):
    error_code = "state_not_found"

    def __init__(self, message: str = "sso state not recognized", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StateExpired(ValidationError):
    error_code = "state_expired"

    def __init__(self, message: str = "sso state expired", **kwargs) -> None:
        super().__init__(message, **kwargs)


class StateAlreadyUsed(ValidationError):
    error_code = "state_already_used"

    def __init__(self, message: str = "sso state already used", **kwargs) -> None:
        super().__init__(message, **kwargs)


# Identity provider


class ProviderError(ValidationError):
    """The provider redirected back with an ``error`` parameter."""
    error_code = "provider_error"

    def __init__(
        self, error: str, description: Optional[str] = None, **kwargs
    ) -> None:
        message = f"identity provider returned error: {error}"
        if description:
            message = f"{message} ({description})"
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("provider_error", error)
        if description:
            detail.setdefault("provider_error_description", description)
        super().__init__(message, detail=detail, **kwargs)
        self.error = error
        self.description = description


class TokenExchangeFailed(AuthenticationError):
    error_code = "token_exchange_failed"

    def __init__(self, message: str = "authorization code exchange failed", **kwargs) -> None:
        super().__init__(message, **kwargs)


class UserInfoUnavailable(AuthenticationError):
    error_code = "userinfo_unavailable"

    def __init__(self, message: str = "could not retrieve user info", **kwargs) -> None:
        super().__init__(message, **kwargs)


class LinkingRequired(ConflictError):
    """An SSO identity matches a local account that may not be linked automatically."""
    error_code = "linking_required"

    def __init__(
        self, message: str = "account must be linked before SSO login", **kwargs
    ) -> None:
        super().__init__(message, **kwargs)


class UpstreamServiceError(ServiceError):
    """Unexpected network or protocol fault talking to the provider (502)."""
    status_code = 502
    error_code = "upstream_error"

    def __init__(self, message: str = "identity provider unavailable", **kwargs) -> None:
        super().__init__(message, **kwargs)


__all__ = [
    "ServiceError",
    "ValidationError",
    "BadRequestError",
    "AuthenticationError",
    "ForbiddenError",
    "ConflictError",
    "ServerError",
    "InvalidCredentials",
    "AccountInactive",
    "TokenNotFound",
    "TokenExpiredOrRevoked",
    "TokenReuseDetected",
    "StateNotFound",
    "StateExpired",
    "StateAlreadyUsed",
    "ProviderError",
    "TokenExchangeFailed",
    "UserInfoUnavailable",
    "LinkingRequired",
    "UpstreamServiceError",
]
