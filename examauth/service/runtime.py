from __future__ import annotations

import asyncio
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from examauth.config import get_settings, reset_settings_cache
from examauth.logging import get_logger
from examauth.service.audit import StoreAuditSink
from examauth.service.credentials import CredentialVerifier
from examauth.service.oidc import HttpOidcProvider, OidcClient
from examauth.service.refresh import RefreshTokenService
from examauth.service.sessions import SessionOrchestrator
from examauth.service.sso_state import SsoStateManager
from examauth.service.tokens import TokenIssuer
from examauth.storage.memory import MemoryStore
from examauth.storage.postgres import PostgresStore
from examauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    if parsed.username:
        netloc = f"{parsed.username}:***@{netloc}"
    else:
        netloc = f":***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(self.settings.database_url)
            )
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Optional[RedisCache] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    retention_seconds=self.settings.sso_state_retention_seconds,
                )
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

            if not self.cache:
                if not self.settings.test_mode and not self.settings.allow_redis_fallback_dev:
                    raise RuntimeError(
                        "REDIS_URL is set but Redis is unreachable; start Redis, unset REDIS_URL, "
                        "or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                    ) from redis_error
                logger.warning(
                    "redis_disabled_fallback",
                    redis_url=_mask_url_password(self.settings.redis_url),
                    error=str(redis_error) if redis_error else None,
                    mode="TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV",
                )

        self.audit = StoreAuditSink(self.store)
        self.credentials = CredentialVerifier(self.store)
        self.issuer = TokenIssuer(self.settings, self.store)
        self.refresh = RefreshTokenService(
            self.store, self.issuer, self.audit, self.settings
        )
        self.sso_states = SsoStateManager(self.settings, self.store, self.cache)
        self.identity_provider = HttpOidcProvider(self.settings)
        self.oidc = OidcClient(
            self.identity_provider,
            self.sso_states,
            self.store,
            self.credentials,
            self.settings,
        )
        self.sessions = SessionOrchestrator(
            self.credentials,
            self.issuer,
            self.refresh,
            self.oidc,
            self.audit,
            self.store,
        )

        logger.info(
            "runtime_initialized",
            store_type=store_type,
            redis_enabled=self.cache is not None,
            sso_provider=self.identity_provider.name,
            linking_policy=self.settings.sso_linking_policy.value,
            oidc_configured=bool(self.settings.oidc_client_id),
        )

    def cleanup_expired(self) -> dict[str, int]:
        """Purge SSO states past retention and refresh chains past the forensic window."""
        now = datetime.now(timezone.utc)
        removed_states = self.sso_states.purge_expired()
        removed_tokens = self.store.purge_refresh_tokens(
            now - timedelta(days=self.settings.refresh_token_retention_days)
        )
        if removed_tokens:
            logger.info("refresh_tokens_purged", removed=removed_tokens)
        return {"sso_states": removed_states, "refresh_tokens": removed_tokens}


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: a lock-free fast path once the runtime exists,
    and a locked re-check while creating it.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def _close_cache(cache: RedisCache) -> None:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(cache.close())
    else:
        loop.create_task(cache.close())


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and runtime.cache is not None:
            _close_cache(runtime.cache)

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
