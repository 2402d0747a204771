from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional, Protocol

from examauth.config import Settings
from examauth.logging import get_logger
from examauth.service.errors import TokenNotFound
from examauth.storage.models import RefreshToken, User

logger = get_logger(__name__)

TOKEN_TYPE = "Bearer"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def hash_refresh_token(raw: str) -> str:
    """Lookup key for an opaque refresh token; raw values are never stored."""
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class RefreshTokenWriter(Protocol):
    def add_refresh_token(self, record: RefreshToken) -> None: ...

    def get_chain_expiry(self, chain_id: str) -> Optional[datetime]: ...


@dataclass
class IssuedAccessToken:
    token: str
    expires_at: datetime
    expires_in: int
    jti: str


@dataclass
class IssuedRefreshToken:
    token: str
    record: RefreshToken

    @property
    def chain_id(self) -> str:
        return self.record.chain_id

    @property
    def expires_at(self) -> datetime:
        return self.record.expires_at


class TokenIssuer:
    """Mints HS256 access tokens and opaque, chain-bound refresh tokens."""

    def __init__(
        self,
        settings: Settings,
        store: RefreshTokenWriter | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self._clock = clock or _utcnow
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = timedelta(seconds=120)

    def _now(self) -> datetime:
        return self._clock()

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    @property
    def chain_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_chain_ttl_minutes)

    # jwt
    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Pin the algorithm to block alg confusion ("none", RS256 with HMAC key)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(
            self._sign(signing_input).encode("utf-8"), sig_b64.encode("utf-8")
        ):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp() - self._clock_skew_leeway.total_seconds():
            return None
        return payload

    def issue_access_token(self, user: User) -> IssuedAccessToken:
        """Sign a short-lived access token carrying the user's claims."""
        now = self._now()
        expires_at = now + self.access_ttl
        jti = str(uuid.uuid4())
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": str(user.id),
            "email": user.email,
            "name": user.display_name,
            "email_verified": user.email_verified,
            "roles": list(user.roles),
            "token_type": "access",
            "jti": jti,
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return IssuedAccessToken(
            token=self._encode_jwt(payload),
            expires_at=expires_at,
            expires_in=int(self.access_ttl.total_seconds()),
            jti=jti,
        )

    def decode_access_token(self, token: str) -> Optional[dict[str, Any]]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        return payload

    # refresh tokens
    def mint_refresh_token(
        self,
        user_id: int,
        *,
        chain_id: str | None = None,
        chain_expires_at: datetime | None = None,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[str, RefreshToken]:
        """Create a refresh token value and its record without persisting it.

        A missing ``chain_id`` starts a new chain whose outer expiry is fixed
        now; successors inherit it, so a token never outlives its chain.
        """
        now = self._now()
        if chain_id is None:
            chain_id = uuid.uuid4().hex
            chain_expires_at = now + self.chain_ttl
        elif chain_expires_at is None:
            raise ValueError("chain_expires_at is required when extending a chain")
        raw = secrets.token_urlsafe(32)
        record = RefreshToken.new(
            hash_refresh_token(raw),
            user_id,
            chain_id=chain_id,
            issued_at=now,
            expires_at=now + self.refresh_ttl,
            chain_expires_at=chain_expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        return raw, record

    def issue_refresh_token(
        self,
        user: User,
        chain_id: str | None = None,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> IssuedRefreshToken:
        """Mint and persist a refresh token, starting or extending a chain."""
        if self.store is None:
            raise RuntimeError("TokenIssuer has no refresh token store")
        chain_expires_at = None
        if chain_id is not None:
            chain_expires_at = self.store.get_chain_expiry(chain_id)
            if chain_expires_at is None:
                raise TokenNotFound("refresh token chain not recognized")
        raw, record = self.mint_refresh_token(
            user.id,
            chain_id=chain_id,
            chain_expires_at=chain_expires_at,
            client_ip=client_ip,
            user_agent=user_agent,
        )
        self.store.add_refresh_token(record)
        logger.info(
            "refresh_token_issued",
            user_id=user.id,
            chain_id=record.chain_id,
            expires_at=record.expires_at.isoformat(),
        )
        return IssuedRefreshToken(token=raw, record=record)
