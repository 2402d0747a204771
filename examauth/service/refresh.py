from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from examauth.config import Settings
from examauth.logging import get_logger
from examauth.service.audit import AuditCategory, AuditSeverity, AuditSink
from examauth.service.errors import (
    AccountInactive,
    TokenExpiredOrRevoked,
    TokenNotFound,
    TokenReuseDetected,
)
from examauth.service.tokens import (
    IssuedAccessToken,
    IssuedRefreshToken,
    TokenIssuer,
    hash_refresh_token,
)
from examauth.storage.models import RefreshToken, User

logger = get_logger(__name__)

REASON_REUSE = "reuse_detected"
REASON_LOGOUT = "logout"
REASON_LOGOUT_ALL = "logout_all"
REASON_INACTIVE = "account_inactive"
REASON_CHAIN_LIMIT = "chain_limit"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshTokenStore(Protocol):
    def add_refresh_token(self, record: RefreshToken) -> None: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def get_chain_expiry(self, chain_id: str) -> Optional[datetime]: ...

    def rotate_refresh_token(
        self, old_id: str, successor: RefreshToken, *, now: datetime | None = None
    ) -> bool: ...

    def revoke_refresh_chain(
        self, chain_id: str, reason: str, *, now: datetime | None = None
    ) -> int: ...

    def revoke_user_refresh_tokens(
        self, user_id: int, reason: str, *, now: datetime | None = None
    ) -> int: ...

    def list_active_refresh_tokens(
        self, user_id: int, *, now: datetime | None = None
    ) -> List[RefreshToken]: ...

    def get_user(self, user_id: int) -> Optional[User]: ...


@dataclass
class RotationResult:
    user: User
    access: IssuedAccessToken
    refresh: IssuedRefreshToken


class RefreshTokenService:
    """Rotation, replay detection and revocation for refresh-token chains.

    A chain is the lineage of tokens descending from one login. Exactly one
    member is live at a time; presenting any consumed ancestor revokes the
    whole chain.
    """

    def __init__(
        self,
        store: RefreshTokenStore,
        issuer: TokenIssuer,
        audit: AuditSink,
        settings: Settings,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.audit = audit
        self.settings = settings
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    def start_chain(
        self,
        user: User,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedRefreshToken:
        """Open a new rotation chain, evicting the oldest beyond the per-user limit."""
        limit = self.settings.max_active_chains_per_user
        if limit > 0:
            active = self.store.list_active_refresh_tokens(user.id, now=self._now())
            excess = len(active) - limit + 1
            for record in active[: max(0, excess)]:
                self.store.revoke_refresh_chain(
                    record.chain_id, REASON_CHAIN_LIMIT, now=self._now()
                )
                logger.info(
                    "refresh_chain_evicted", user_id=user.id, chain_id=record.chain_id
                )
        return self.issuer.issue_refresh_token(
            user, client_ip=client_ip, user_agent=user_agent
        )

    def _reuse_detected(self, record: RefreshToken, *, source: str) -> TokenReuseDetected:
        revoked = self.store.revoke_refresh_chain(
            record.chain_id, REASON_REUSE, now=self._now()
        )
        logger.warning(
            "refresh_token_reuse_detected",
            user_id=record.user_id,
            chain_id=record.chain_id,
            token_id=record.id,
            revoked=revoked,
            source=source,
        )
        self.audit.record(
            AuditCategory.SECURITY,
            AuditSeverity.HIGH,
            "refresh_token_reuse_detected",
            actor=str(record.user_id),
            details={
                "chain_id": record.chain_id,
                "token_id": record.id,
                "revoked_tokens": revoked,
                "source": source,
            },
        )
        error = TokenReuseDetected(detail={"chain_id": record.chain_id})
        error.audited = True
        return error

    def _lookup(self, presented: str) -> RefreshToken:
        if not presented:
            raise TokenNotFound()
        record = self.store.get_refresh_token_by_hash(hash_refresh_token(presented))
        if record is None:
            raise TokenNotFound()
        return record

    def rotate(
        self,
        presented: str,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> RotationResult:
        """Exchange a live refresh token for a new access/refresh pair.

        Raises:
            TokenNotFound: the value matches no stored token.
            TokenExpiredOrRevoked: the token is past its expiry or was revoked
                without being consumed.
            TokenReuseDetected: the token was already consumed, or a concurrent
                rotation consumed it first. The chain is revoked and audited.
            AccountInactive: the owner is gone or disabled; the chain is revoked.
        """
        record = self._lookup(presented)
        now = self._now()
        if record.is_expired(now):
            raise TokenExpiredOrRevoked(detail={"reason": "expired"})
        if record.used:
            raise self._reuse_detected(record, source="presented_used")
        if record.revoked:
            raise TokenExpiredOrRevoked(detail={"reason": record.revoked_reason or "revoked"})

        user = self.store.get_user(record.user_id)
        if user is None or not user.is_active:
            self.store.revoke_refresh_chain(record.chain_id, REASON_INACTIVE, now=now)
            raise AccountInactive()

        raw, successor = self.issuer.mint_refresh_token(
            user.id,
            chain_id=record.chain_id,
            chain_expires_at=record.chain_expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        if not self.store.rotate_refresh_token(record.id, successor, now=now):
            current = self.store.get_refresh_token_by_hash(record.token_hash) or record
            if current.used:
                raise self._reuse_detected(current, source="concurrent_rotation")
            raise TokenExpiredOrRevoked(detail={"reason": current.revoked_reason or "revoked"})

        access = self.issuer.issue_access_token(user)
        logger.info(
            "refresh_token_rotated",
            user_id=user.id,
            chain_id=record.chain_id,
            previous_id=record.id,
            token_id=successor.id,
        )
        return RotationResult(
            user=user, access=access, refresh=IssuedRefreshToken(token=raw, record=successor)
        )

    def logout(self, presented: str) -> Optional[RefreshToken]:
        """Revoke the presented token's chain. Unknown or dead tokens are a no-op."""
        if not presented:
            return None
        record = self.store.get_refresh_token_by_hash(hash_refresh_token(presented))
        if record is None:
            logger.info("logout_unknown_token")
            return None
        revoked = self.store.revoke_refresh_chain(
            record.chain_id, REASON_LOGOUT, now=self._now()
        )
        logger.info(
            "refresh_chain_logged_out",
            user_id=record.user_id,
            chain_id=record.chain_id,
            revoked=revoked,
        )
        return record

    def logout_all(self, user_id: int) -> int:
        revoked = self.store.revoke_user_refresh_tokens(
            user_id, REASON_LOGOUT_ALL, now=self._now()
        )
        logger.info("refresh_chains_logged_out_all", user_id=user_id, revoked=revoked)
        return revoked
