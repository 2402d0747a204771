from __future__ import annotations

import os
import secrets
import tempfile
from enum import Enum
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from examauth.logging import get_logger

logger = get_logger(__name__)


class LinkingPolicy(str, Enum):
    """What to do when an SSO identity matches no linked local account."""

    AUTO_PROVISION = "auto_provision"
    REQUIRE_LINK = "require_link"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the credential and SSO service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/examauth", "DATABASE_URL"
    )
    redis_url: str | None = env_field(None, "REDIS_URL")
    state_dir: str = env_field("/srv/examauth", "STATE_DIR")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    allow_redis_fallback_dev: bool = env_field(False, "ALLOW_REDIS_FALLBACK_DEV")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors (ephemeral secrets, memory fallbacks).",
    )
    cors_allow_origins: str = env_field("", "CORS_ALLOW_ORIGINS")

    # Token settings
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_issuer: str = env_field("examauth", "JWT_ISSUER")
    jwt_audience: str = env_field("exam-clients", "JWT_AUDIENCE")
    access_token_ttl_minutes: int = env_field(
        15, "ACCESS_TOKEN_TTL_MINUTES", gt=0
    )
    refresh_token_ttl_minutes: int = env_field(
        24 * 60,
        "REFRESH_TOKEN_TTL_MINUTES",
        gt=0,
        description="Lifetime of a single refresh token before it must be rotated",
    )
    refresh_chain_ttl_minutes: int = env_field(
        7 * 24 * 60,
        "REFRESH_CHAIN_TTL_MINUTES",
        gt=0,
        description="Outer bound of a rotation chain; rotation never extends it",
    )
    max_active_chains_per_user: int = env_field(
        5,
        "MAX_ACTIVE_CHAINS_PER_USER",
        ge=0,
        description="Concurrent sessions per user; 0 disables the limit",
    )
    refresh_token_retention_days: int = env_field(
        30,
        "REFRESH_TOKEN_RETENTION_DAYS",
        ge=0,
        description="How long expired chains are kept for replay forensics",
    )
    cleanup_interval_seconds: int = env_field(300, "CLEANUP_INTERVAL_SECONDS", gt=0)

    # SSO settings
    sso_provider_name: str = env_field("oidc", "SSO_PROVIDER_NAME")
    sso_state_ttl_seconds: int = env_field(600, "SSO_STATE_TTL_SECONDS", gt=0)
    sso_state_retention_seconds: int = env_field(
        3600,
        "SSO_STATE_RETENTION_SECONDS",
        gt=0,
        description="How long consumed or expired states stay distinguishable from unknown ones",
    )
    sso_redirect_uri: str = env_field(
        "http://localhost:8000/v1/auth/sso/callback", "SSO_REDIRECT_URI"
    )
    sso_allowed_redirect_hosts: str = env_field("", "SSO_ALLOWED_REDIRECT_HOSTS")
    sso_linking_policy: LinkingPolicy = env_field(
        LinkingPolicy.AUTO_PROVISION, "SSO_LINKING_POLICY"
    )
    sso_default_roles: str = env_field("student", "SSO_DEFAULT_ROLES")
    sso_failure_redirect_url: str | None = env_field(None, "SSO_FAILURE_REDIRECT_URL")

    # OIDC provider endpoints (pre-configured, no discovery)
    oidc_authorization_endpoint: str = env_field(
        "https://idp.example.com/oauth2/authorize", "OIDC_AUTHORIZATION_ENDPOINT"
    )
    oidc_token_endpoint: str = env_field(
        "https://idp.example.com/oauth2/token", "OIDC_TOKEN_ENDPOINT"
    )
    oidc_userinfo_endpoint: str = env_field(
        "https://idp.example.com/oauth2/userinfo", "OIDC_USERINFO_ENDPOINT"
    )
    oidc_client_id: str | None = env_field(None, "OIDC_CLIENT_ID")
    oidc_client_secret: str | None = env_field(None, "OIDC_CLIENT_SECRET")
    oidc_scopes: str = env_field("openid email profile", "OIDC_SCOPES")
    oidc_use_pkce: bool = env_field(True, "OIDC_USE_PKCE")
    oidc_timeout_seconds: float = env_field(10.0, "OIDC_TIMEOUT_SECONDS", gt=0)

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def default_roles(self) -> list[str]:
        return [role.strip() for role in self.sso_default_roles.split(",") if role.strip()]

    @property
    def allowed_redirect_hosts(self) -> set[str]:
        return {
            host.strip().lower()
            for host in self.sso_allowed_redirect_hosts.split(",")
            if host.strip()
        }

    @field_validator("sso_linking_policy")
    @classmethod
    def _validate_linking_policy(cls, value: LinkingPolicy) -> LinkingPolicy:
        return LinkingPolicy(value)

    @field_validator("redis_url")
    @classmethod
    def _blank_redis_url(cls, value: str | None) -> str | None:
        return value or None

    @model_validator(mode="after")
    def _retention_covers_state_ttl(self) -> "Settings":
        # Redis drops the key after the retention window; a shorter one
        # would lose states that are still valid.
        if self.sso_state_retention_seconds < self.sso_state_ttl_seconds:
            raise ValueError(
                "SSO_STATE_RETENTION_SECONDS must be at least SSO_STATE_TTL_SECONDS"
            )
        return self

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None) -> str:
        if value:
            if len(value) < 32:
                raise ValueError("JWT_SECRET must be at least 32 characters")
            return value
        # Persist a generated secret so issued tokens survive restarts
        state_dir = Path(os.getenv("STATE_DIR", "/srv/examauth"))
        secret_path = state_dir / ".jwt_secret"

        try:
            state_dir.mkdir(parents=True, exist_ok=True)
            os.chmod(state_dir, 0o700)
        except PermissionError:
            # Directory may already exist with different ownership (containers)
            pass
        except OSError as exc:
            logger.warning(
                "jwt_secret_dir_setup", error=str(exc), path=str(state_dir)
            )

        if secret_path.exists() and not secret_path.is_symlink():
            try:
                persisted = secret_path.read_text().strip()
                if persisted and len(persisted) >= 32:
                    return persisted
            except OSError as exc:
                logger.error(
                    "jwt_secret_read_failed", error=str(exc), path=str(secret_path)
                )

        generated = secrets.token_urlsafe(64)
        tmp_path: str | None = None
        try:
            fd, tmp_path = tempfile.mkstemp(
                dir=str(state_dir), prefix=".jwt_secret_", suffix=".tmp"
            )
            try:
                os.write(fd, generated.encode())
                os.fchmod(fd, 0o600)
            finally:
                os.close(fd)
            os.rename(tmp_path, str(secret_path))
        except OSError as exc:
            if tmp_path and os.path.exists(tmp_path):
                os.unlink(tmp_path)
            logger.error(
                "jwt_secret_persist_failed", error=str(exc), path=str(secret_path)
            )
            raise RuntimeError(
                "Unable to persist JWT secret; set JWT_SECRET or make STATE_DIR writable"
            ) from exc
        return generated


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
