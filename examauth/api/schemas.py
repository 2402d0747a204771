from __future__ import annotations

import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from examauth.service import errors as service_errors

_VALID_ERROR_CODES = frozenset(
    {
        getattr(service_errors, name).error_code
        for name in service_errors.__all__
    }
    | {"not_found", "server_error"}
)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize after stripping zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class LoginRequest(BaseModel):
    # Format is not validated here: malformed and unknown emails must fail alike
    email: str = Field(..., max_length=320)
    password: str = Field(..., max_length=1024)

    @field_validator("email")
    @classmethod
    def _normalize_email(cls, value: str) -> str:
        return _normalize_unicode(value.strip().lower())


class _RefreshTokenBody(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=2048)

    @field_validator("refresh_token")
    @classmethod
    def _reject_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("refresh_token must not be blank")
        return value.strip()


class TokenRefreshRequest(_RefreshTokenBody):
    pass


class LogoutRequest(_RefreshTokenBody):
    pass


class SsoStartRequest(BaseModel):
    redirect_uri: Optional[str] = Field(default=None, max_length=2048)


class SsoStartResponse(BaseModel):
    authorization_url: str
    state: str


class UserSummary(BaseModel):
    id: int
    email: str
    display_name: Optional[str] = None
    roles: List[str] = Field(default_factory=list)
    email_verified: bool = False
    is_active: bool = True
    last_login_at: Optional[datetime] = None


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "Bearer"
    expires_in: int
    expires_at: datetime
    refresh_expires_at: datetime
    user: UserSummary
