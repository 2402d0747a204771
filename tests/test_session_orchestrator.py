"""End-to-end session flows through the orchestrator, with audit accounting."""

import httpx
import pytest

from examauth.service.audit import StoreAuditSink
from examauth.service.credentials import CredentialVerifier
from examauth.service.errors import (
    AccountInactive,
    InvalidCredentials,
    StateExpired,
    TokenNotFound,
    TokenReuseDetected,
)
from examauth.service.oidc import HttpOidcProvider, OidcClient
from examauth.service.refresh import RefreshTokenService
from examauth.service.sessions import SessionOrchestrator
from examauth.service.sso_state import SsoStateManager
from examauth.service.tokens import TokenIssuer, hash_refresh_token
from examauth.storage.models import SsoCallbackData


def _idp(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/token":
        return httpx.Response(200, json={"access_token": "idp-access"})
    return httpx.Response(
        200,
        json={"sub": "idp-7", "email": "sso.user@example.com", "email_verified": True},
    )


@pytest.fixture
def sessions(settings, memory_store, clock):
    audit = StoreAuditSink(memory_store)
    credentials = CredentialVerifier(memory_store)
    issuer = TokenIssuer(settings, memory_store, clock=clock)
    refresh = RefreshTokenService(memory_store, issuer, audit, settings, clock=clock)
    oidc = OidcClient(
        HttpOidcProvider(settings, transport=httpx.MockTransport(_idp)),
        SsoStateManager(settings, memory_store, clock=clock),
        memory_store,
        credentials,
        settings,
    )
    return SessionOrchestrator(
        credentials, issuer, refresh, oidc, audit, memory_store, clock=clock
    )


@pytest.fixture
def examiner(memory_store, sessions):
    user = memory_store.create_user("examiner@example.com", "Ex Aminer", roles=["examiner"])
    sessions.credentials.save_password(user.id, "Sup3r-Secret!")
    return user


def _events(store, action=None):
    return store.list_audit_events(action=action)


class TestLogin:
    def test_success_issues_tokens_and_audits(self, sessions, examiner, memory_store, clock):
        tokens = sessions.login("examiner@example.com", "Sup3r-Secret!", client_ip="10.0.0.5")

        assert tokens.user.id == examiner.id
        assert tokens.token_type == "Bearer"
        assert tokens.trace == ["idle", "credentials_submitted", "verified", "tokens_issued"]
        assert memory_store.get_user(examiner.id).last_login_at == clock.now
        events = _events(memory_store)
        assert [e.action for e in events] == ["login_succeeded"]
        assert events[0].details["client_ip"] == "10.0.0.5"

    def test_unknown_email_audits_once_without_email(self, sessions, memory_store):
        with pytest.raises(InvalidCredentials):
            sessions.login("nobody@example.com", "whatever")

        events = _events(memory_store)
        assert len(events) == 1
        assert events[0].action == "login_failed"
        assert events[0].actor is None
        assert events[0].details["error_code"] == "invalid_credentials"
        assert events[0].details["phase"] == "login_failed"
        assert "nobody@example.com" not in str(events[0].details)

    def test_wrong_password_audits_once(self, sessions, examiner, memory_store):
        with pytest.raises(InvalidCredentials):
            sessions.login("examiner@example.com", "wrong")

        assert [e.action for e in _events(memory_store)] == ["login_failed"]

    def test_inactive_account(self, sessions, examiner, memory_store):
        memory_store.set_user_active(examiner.id, False)

        with pytest.raises(AccountInactive):
            sessions.login("examiner@example.com", "Sup3r-Secret!")

        events = _events(memory_store)
        assert len(events) == 1
        assert events[0].details["error_code"] == "account_inactive"

    def test_store_fault_leaves_existing_sessions_intact(
        self, sessions, examiner, memory_store, settings, monkeypatch
    ):
        sessions.refresh_tokens.settings = settings.model_copy(
            update={"max_active_chains_per_user": 1}
        )
        first = sessions.login("examiner@example.com", "Sup3r-Secret!")

        def broken_record_login(user_id, at):
            raise RuntimeError("database unavailable")

        monkeypatch.setattr(memory_store, "record_login", broken_record_login)
        with pytest.raises(RuntimeError):
            sessions.login("examiner@example.com", "Sup3r-Secret!")

        active = memory_store.list_active_refresh_tokens(examiner.id)
        assert [r.chain_id for r in active] == [
            memory_store.get_refresh_token_by_hash(
                hash_refresh_token(first.refresh_token)
            ).chain_id
        ]
        assert sessions.refresh(first.refresh_token).user.id == examiner.id
        assert [e.action for e in _events(memory_store)][:2] == [
            "login_succeeded",
            "login_failed",
        ]


class TestRefresh:
    def test_rotation_trace(self, sessions, examiner):
        tokens = sessions.login("examiner@example.com", "Sup3r-Secret!")

        rotated = sessions.refresh(tokens.refresh_token)

        assert rotated.refresh_token != tokens.refresh_token
        assert rotated.trace == ["tokens_issued", "rotation_requested", "rotation_succeeded"]

    def test_replay_produces_single_security_event(self, sessions, examiner, memory_store):
        tokens = sessions.login("examiner@example.com", "Sup3r-Secret!")
        sessions.refresh(tokens.refresh_token)
        before = len(_events(memory_store))

        with pytest.raises(TokenReuseDetected):
            sessions.refresh(tokens.refresh_token)

        new_events = _events(memory_store)[before:]
        assert [e.action for e in new_events] == ["refresh_token_reuse_detected"]
        assert new_events[0].category == "security"

    def test_unknown_token_audited_as_rotation_failure(self, sessions, memory_store):
        with pytest.raises(TokenNotFound):
            sessions.refresh("bogus")

        events = _events(memory_store, "refresh_failed")
        assert len(events) == 1
        assert events[0].details["phase"] == "rotation_failed"
        assert events[0].details["error_code"] == "token_not_found"


class TestSso:
    async def test_complete_sso_provisions_and_issues(self, sessions, memory_store):
        start = await sessions.start_sso()

        tokens = await sessions.complete_sso(
            SsoCallbackData(code="auth-code", state=start.state)
        )

        assert tokens.user.email == "sso.user@example.com"
        assert tokens.trace == [
            "state_issued",
            "callback_received",
            "state_validated",
            "code_exchanged",
            "user_resolved",
            "tokens_issued",
        ]
        events = _events(memory_store, "sso_login_succeeded")
        assert len(events) == 1
        assert events[0].details["matched_by"] == "provisioned"
        assert events[0].details["subject"] == "idp-7"

    async def test_expired_state_fails_once(self, sessions, memory_store, clock):
        start = await sessions.start_sso()
        clock.advance(minutes=11)

        with pytest.raises(StateExpired):
            await sessions.complete_sso(SsoCallbackData(code="auth-code", state=start.state))

        events = _events(memory_store)
        assert [e.action for e in events] == ["sso_login_failed"]
        assert events[0].details["phase"] == "sso_failed"
        assert events[0].details["error_code"] == "state_expired"
        assert start.state not in str(events[0].details)

    async def test_sso_tokens_rotate(self, sessions):
        start = await sessions.start_sso()
        tokens = await sessions.complete_sso(
            SsoCallbackData(code="auth-code", state=start.state)
        )

        assert sessions.refresh(tokens.refresh_token).user.id == tokens.user.id


class TestLogout:
    def test_logout_audits_chain(self, sessions, examiner, memory_store):
        tokens = sessions.login("examiner@example.com", "Sup3r-Secret!")

        sessions.logout(tokens.refresh_token)

        events = _events(memory_store, "logout")
        assert len(events) == 1
        assert events[0].actor == str(examiner.id)

    def test_logout_unknown_token_is_silent(self, sessions, memory_store):
        sessions.logout("never-issued")
        assert _events(memory_store) == []

    def test_logout_all(self, sessions, examiner, memory_store):
        for _ in range(2):
            sessions.login("examiner@example.com", "Sup3r-Secret!")

        assert sessions.logout_all(examiner.id) == 2
        assert _events(memory_store, "logout_all")[0].details["revoked_tokens"] == 2
