from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from examauth.logging import get_logger, log_session_trace
from examauth.service.audit import AuditCategory, AuditSeverity, AuditSink
from examauth.service.credentials import CredentialVerifier
from examauth.service.errors import ServiceError
from examauth.service.flow import SessionFlow, SessionPhase
from examauth.service.oidc import OidcClient
from examauth.service.refresh import RefreshTokenService
from examauth.service.tokens import TOKEN_TYPE, IssuedAccessToken, IssuedRefreshToken, TokenIssuer
from examauth.storage.models import SsoCallbackData, User

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LoginRecorder(Protocol):
    def record_login(self, user_id: int, at: datetime) -> None: ...


@dataclass
class SessionTokens:
    access_token: str
    refresh_token: str
    expires_in: int
    expires_at: datetime
    refresh_expires_at: datetime
    user: User
    token_type: str = TOKEN_TYPE
    trace: list[str] = field(default_factory=list)

    @classmethod
    def from_issued(
        cls,
        user: User,
        access: IssuedAccessToken,
        refresh: IssuedRefreshToken,
        flow: SessionFlow,
    ) -> "SessionTokens":
        return cls(
            access_token=access.token,
            refresh_token=refresh.token,
            expires_in=access.expires_in,
            expires_at=access.expires_at,
            refresh_expires_at=refresh.expires_at,
            user=user,
            trace=list(flow.trace),
        )


@dataclass
class SsoStart:
    authorization_url: str
    state: str


_FAILURE_SEVERITY = {
    SessionPhase.LOGIN_FAILED: AuditSeverity.MEDIUM,
    SessionPhase.SSO_FAILED: AuditSeverity.MEDIUM,
    SessionPhase.ROTATION_FAILED: AuditSeverity.LOW,
    SessionPhase.REPLAY_DETECTED: AuditSeverity.HIGH,
}


class SessionOrchestrator:
    """Drives login, refresh, SSO and logout through the session state machine.

    Each public operation owns one ``SessionFlow``. A failing flow moves to
    its failure terminal and produces exactly one audit event; errors that
    were already audited where they were raised are not recorded twice.
    """

    def __init__(
        self,
        credentials: CredentialVerifier,
        issuer: TokenIssuer,
        refresh: RefreshTokenService,
        oidc: OidcClient,
        audit: AuditSink,
        users: LoginRecorder,
        *,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.credentials = credentials
        self.issuer = issuer
        self.refresh_tokens = refresh
        self.oidc = oidc
        self.audit = audit
        self.users = users
        self._clock = clock or _utcnow

    def _fail(
        self,
        flow: SessionFlow,
        error: Exception,
        action: str,
        *,
        actor: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        phase = flow.fail(error)
        log_session_trace(flow.trace, logger)
        if getattr(error, "audited", False):
            return
        payload = {
            "phase": phase.value,
            "error_code": flow.error_code,
            "trace": list(flow.trace),
        }
        if isinstance(error, ServiceError) and error.detail:
            payload["error_detail"] = dict(error.detail)
        payload.update(details or {})
        category = (
            AuditCategory.SECURITY
            if phase == SessionPhase.REPLAY_DETECTED
            else AuditCategory.AUTHENTICATION
        )
        self.audit.record(category, _FAILURE_SEVERITY[phase], action, actor, payload)

    def _issue(
        self,
        user: User,
        flow: SessionFlow,
        *,
        client_ip: str | None,
        user_agent: str | None,
    ) -> SessionTokens:
        # start_chain persists and may evict an older session; it must run last
        self.users.record_login(user.id, self._clock())
        access = self.issuer.issue_access_token(user)
        refresh = self.refresh_tokens.start_chain(
            user, client_ip=client_ip, user_agent=user_agent
        )
        flow.advance(SessionPhase.TOKENS_ISSUED)
        return SessionTokens.from_issued(user, access, refresh, flow)

    def login(
        self,
        email: str,
        password: str,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionTokens:
        flow = SessionFlow()
        flow.advance(SessionPhase.CREDENTIALS_SUBMITTED)
        user: Optional[User] = None
        try:
            user = self.credentials.verify(email, password)
            flow.advance(SessionPhase.VERIFIED)
            tokens = self._issue(user, flow, client_ip=client_ip, user_agent=user_agent)
        except Exception as exc:
            # No email in audit details for unknown accounts
            self._fail(
                flow,
                exc,
                "login_failed",
                actor=str(user.id) if user else None,
                details={"client_ip": client_ip},
            )
            raise
        self.audit.record(
            AuditCategory.AUTHENTICATION,
            AuditSeverity.LOW,
            "login_succeeded",
            str(user.id),
            {"method": "password", "client_ip": client_ip},
        )
        logger.info("login_succeeded", user_id=user.id)
        return tokens

    def refresh(
        self,
        refresh_token: str,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionTokens:
        flow = SessionFlow.for_refresh()
        flow.advance(SessionPhase.ROTATION_REQUESTED)
        try:
            result = self.refresh_tokens.rotate(
                refresh_token, client_ip=client_ip, user_agent=user_agent
            )
        except Exception as exc:
            self._fail(flow, exc, "refresh_failed", details={"client_ip": client_ip})
            raise
        flow.advance(SessionPhase.ROTATION_SUCCEEDED)
        return SessionTokens.from_issued(result.user, result.access, result.refresh, flow)

    async def start_sso(self, redirect_uri: str | None = None) -> SsoStart:
        flow = SessionFlow()
        url, state = await self.oidc.start(redirect_uri)
        flow.advance(SessionPhase.STATE_ISSUED)
        logger.info("sso_started", provider=self.oidc.provider.name)
        return SsoStart(authorization_url=url, state=state)

    async def complete_sso(
        self,
        callback: SsoCallbackData,
        *,
        client_ip: str | None = None,
        user_agent: str | None = None,
    ) -> SessionTokens:
        flow = SessionFlow.for_callback()
        flow.advance(SessionPhase.CALLBACK_RECEIVED)
        provider = self.oidc.provider.name
        try:
            resolved = await self.oidc.handle_callback(callback, flow)
            tokens = self._issue(
                resolved.user, flow, client_ip=client_ip, user_agent=user_agent
            )
        except Exception as exc:
            self._fail(
                flow,
                exc,
                "sso_login_failed",
                details={"provider": provider, "client_ip": client_ip},
            )
            raise
        self.audit.record(
            AuditCategory.AUTHENTICATION,
            AuditSeverity.LOW,
            "sso_login_succeeded",
            str(resolved.user.id),
            {
                "method": "sso",
                "provider": provider,
                "subject": resolved.userinfo.subject,
                "matched_by": resolved.matched_by,
                "client_ip": client_ip,
            },
        )
        logger.info(
            "sso_login_succeeded",
            provider=provider,
            user_id=resolved.user.id,
            matched_by=resolved.matched_by,
        )
        return tokens

    def logout(self, refresh_token: str) -> None:
        """Revoke the chain behind ``refresh_token``; always succeeds."""
        flow = SessionFlow()
        record = self.refresh_tokens.logout(refresh_token)
        flow.advance(SessionPhase.LOGGED_OUT)
        if record is not None:
            self.audit.record(
                AuditCategory.AUTHENTICATION,
                AuditSeverity.LOW,
                "logout",
                str(record.user_id),
                {"chain_id": record.chain_id},
            )

    def logout_all(self, user_id: int) -> int:
        flow = SessionFlow()
        revoked = self.refresh_tokens.logout_all(user_id)
        flow.advance(SessionPhase.LOGGED_OUT)
        self.audit.record(
            AuditCategory.AUTHENTICATION,
            AuditSeverity.MEDIUM,
            "logout_all",
            str(user_id),
            {"revoked_tokens": revoked},
        )
        return revoked
