from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    email: str
    display_name: Optional[str] = None
    roles: List[str] = field(default_factory=list)
    email_verified: bool = False
    is_active: bool = True
    created_at: datetime = field(default_factory=_utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class UserAuthProvider:
    id: int
    user_id: int
    provider: str
    subject: str
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class RefreshToken:
    """Stored half of an opaque refresh token.

    Only ``token_hash`` is persisted; the raw value exists solely in the
    response that issued it. Ancestors in a chain keep ``used_at`` set
    forever so a replayed ancestor is always recognizable.
    """

    id: str
    token_hash: str
    user_id: int
    chain_id: str
    issued_at: datetime
    expires_at: datetime
    chain_expires_at: datetime
    used_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None
    replaced_by_id: Optional[str] = None
    client_ip: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def used(self) -> bool:
        return self.used_at is not None

    @property
    def revoked(self) -> bool:
        return self.revoked_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @classmethod
    def new(
        cls,
        token_hash: str,
        user_id: int,
        *,
        chain_id: str,
        issued_at: datetime,
        expires_at: datetime,
        chain_expires_at: datetime,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            token_hash=token_hash,
            user_id=user_id,
            chain_id=chain_id,
            issued_at=issued_at,
            expires_at=min(expires_at, chain_expires_at),
            chain_expires_at=chain_expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
        )


@dataclass
class SsoState:
    state: str
    redirect_uri: str
    created_at: datetime
    expires_at: datetime
    code_verifier: Optional[str] = None
    consumed_at: Optional[datetime] = None

    @property
    def consumed(self) -> bool:
        return self.consumed_at is not None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    @classmethod
    def new(
        cls,
        state: str,
        redirect_uri: str,
        ttl_seconds: int,
        *,
        code_verifier: str | None = None,
        now: datetime | None = None,
    ) -> "SsoState":
        created = now or _utcnow()
        return cls(
            state=state,
            redirect_uri=redirect_uri,
            created_at=created,
            expires_at=created + timedelta(seconds=ttl_seconds),
            code_verifier=code_verifier,
        )


@dataclass
class SsoCallbackData:
    """Query parameters the provider sent back to the callback endpoint."""

    code: Optional[str] = None
    state: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None
    redirect_uri: Optional[str] = None


@dataclass
class OidcTokenResponse:
    access_token: Optional[str] = None
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    token_type: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    error: Optional[str] = None
    error_description: Optional[str] = None


@dataclass
class OidcUserInfo:
    subject: str
    email: Optional[str] = None
    email_verified: bool = False
    name: Optional[str] = None
    given_name: Optional[str] = None
    family_name: Optional[str] = None
    preferred_username: Optional[str] = None
    locale: Optional[str] = None

    @property
    def display_name(self) -> Optional[str]:
        if self.name:
            return self.name
        parts = [p for p in (self.given_name, self.family_name) if p]
        if parts:
            return " ".join(parts)
        return self.preferred_username


@dataclass
class AuditEvent:
    id: str
    category: str
    severity: str
    action: str
    actor: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    correlation_id: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
