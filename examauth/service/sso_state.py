from __future__ import annotations

import base64
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol
from urllib.parse import urlparse

from examauth.config import Settings
from examauth.logging import get_logger
from examauth.service.errors import (
    BadRequestError,
    StateAlreadyUsed,
    StateExpired,
    StateNotFound,
)
from examauth.storage.models import SsoState
from examauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def pkce_challenge(verifier: str) -> str:
    """S256 code challenge for a PKCE verifier."""
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class SsoStateStore(Protocol):
    def save_sso_state(self, record: SsoState) -> None: ...

    def get_sso_state(self, state: str) -> Optional[SsoState]: ...

    def mark_sso_state_consumed(self, state: str, now: datetime) -> Optional[SsoState]: ...

    def purge_sso_states(self, before: datetime) -> int: ...


class SsoStateManager:
    """Issues anti-forgery state values and consumes each one at most once.

    States live in Redis when a cache is configured so every instance sees
    the same record; otherwise the primary store holds them.
    """

    def __init__(
        self,
        settings: Settings,
        store: SsoStateStore,
        cache: Optional[RedisCache] = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.cache = cache
        self._clock = clock or _utcnow

    def _now(self) -> datetime:
        return self._clock()

    def validate_redirect_uri(self, redirect_uri: str) -> str:
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in {"https", "http"}:
            raise BadRequestError("SSO redirect URI must be http(s)")
        if not parsed.netloc or not parsed.hostname:
            raise BadRequestError("SSO redirect URI must include host")
        if parsed.scheme == "http" and parsed.hostname not in _LOCAL_HOSTS:
            raise BadRequestError("Insecure redirect URI not allowed outside localhost")
        allowed = self.settings.allowed_redirect_hosts
        if allowed and parsed.hostname.lower() not in allowed:
            raise BadRequestError(
                "SSO redirect URI host is not allowed", detail={"host": parsed.hostname}
            )
        return redirect_uri

    async def _save(self, record: SsoState) -> None:
        if self.cache:
            await self.cache.save_sso_state(record)
        else:
            self.store.save_sso_state(record)

    async def _get(self, state: str) -> Optional[SsoState]:
        if self.cache:
            return await self.cache.get_sso_state(state)
        return self.store.get_sso_state(state)

    async def _mark_consumed(self, state: str, now: datetime) -> Optional[SsoState]:
        if self.cache:
            return await self.cache.mark_sso_state_consumed(state, now)
        return self.store.mark_sso_state_consumed(state, now)

    async def issue_state(self, redirect_uri: str | None = None) -> SsoState:
        target = self.validate_redirect_uri(redirect_uri or self.settings.sso_redirect_uri)
        record = SsoState.new(
            secrets.token_urlsafe(32),
            target,
            self.settings.sso_state_ttl_seconds,
            code_verifier=secrets.token_urlsafe(48) if self.settings.oidc_use_pkce else None,
            now=self._now(),
        )
        await self._save(record)
        logger.info(
            "sso_state_issued",
            expires_at=record.expires_at.isoformat(),
            backend="redis" if self.cache else "store",
        )
        return record

    async def consume(self, state: str) -> SsoState:
        """Validate and consume ``state`` exactly once.

        Raises:
            StateNotFound: never issued, or purged after retention.
            StateExpired: issued but past its TTL.
            StateAlreadyUsed: consumed earlier, or by a concurrent callback.
        """
        if not state:
            raise StateNotFound()
        now = self._now()
        existing = await self._get(state)
        if existing is None:
            raise StateNotFound()
        if existing.consumed:
            raise StateAlreadyUsed()
        if existing.is_expired(now):
            raise StateExpired()
        consumed = await self._mark_consumed(state, now)
        if consumed is None:
            # Lost the race to another callback, or expired in between
            current = await self._get(state)
            if current is not None and not current.consumed and current.is_expired(now):
                raise StateExpired()
            raise StateAlreadyUsed()
        logger.info("sso_state_consumed")
        return consumed

    def purge_expired(self) -> int:
        """Drop states past retention from the primary store."""
        before = self._now() - timedelta(seconds=self.settings.sso_state_retention_seconds)
        removed = self.store.purge_sso_states(before)
        if removed:
            logger.info("sso_states_purged", removed=removed)
        return removed
