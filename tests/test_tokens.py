"""Unit tests for access and refresh token minting."""

import base64
import json
from datetime import timedelta

import pytest

from examauth.service.errors import TokenNotFound
from examauth.service.tokens import TOKEN_TYPE, TokenIssuer, hash_refresh_token


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def issuer(settings, memory_store, clock):
    return TokenIssuer(settings, memory_store, clock=clock)


@pytest.fixture
def user(memory_store):
    return memory_store.create_user(
        "proctor@example.com", "Pat Proctor", roles=["proctor"], email_verified=True
    )


class TestAccessTokens:
    def test_claims_reflect_user(self, issuer, user, settings, clock):
        issued = issuer.issue_access_token(user)
        payload = issuer.decode_access_token(issued.token)

        assert payload["sub"] == str(user.id)
        assert payload["email"] == "proctor@example.com"
        assert payload["roles"] == ["proctor"]
        assert payload["email_verified"] is True
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["jti"] == issued.jti
        assert issued.expires_in == 15 * 60
        assert issued.expires_at == clock.now + timedelta(minutes=15)
        assert TOKEN_TYPE == "Bearer"

    def test_expired_token_rejected_after_leeway(self, issuer, user, clock):
        issued = issuer.issue_access_token(user)

        clock.advance(minutes=16)
        assert issuer.decode_access_token(issued.token) is not None

        clock.advance(minutes=5)
        assert issuer.decode_access_token(issued.token) is None

    def test_tampered_signature_rejected(self, issuer, user):
        token = issuer.issue_access_token(user).token
        header, payload, sig = token.split(".")
        forged = _b64({**json.loads(issuer._decode_segment(payload)), "roles": ["admin"]})

        assert issuer.decode_access_token(f"{header}.{forged}.{sig}") is None

    def test_alg_none_rejected(self, issuer, user):
        token = issuer.issue_access_token(user).token
        _, payload, _ = token.split(".")
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        assert issuer.decode_access_token(unsigned) is None

    def test_non_ascii_signature_rejected(self, issuer, user):
        token = issuer.issue_access_token(user).token
        header, payload, sig = token.split(".")

        assert issuer.decode_access_token(f"{header}.{payload}.{sig[:-1]}é") is None

    def test_other_audience_rejected(self, settings, memory_store, clock, user):
        other = TokenIssuer(
            settings.model_copy(update={"jwt_audience": "grading-service"}),
            memory_store,
            clock=clock,
        )
        token = other.issue_access_token(user).token

        assert TokenIssuer(settings, memory_store, clock=clock).decode_access_token(token) is None

    @pytest.mark.parametrize("garbage", ["", "abc", "a.b", "a.b.c.d"])
    def test_malformed_tokens_rejected(self, issuer, garbage):
        assert issuer.decode_access_token(garbage) is None


class TestRefreshTokens:
    def test_only_hash_is_persisted(self, issuer, user, memory_store):
        issued = issuer.issue_refresh_token(user)

        assert issued.record.token_hash == hash_refresh_token(issued.token)
        assert issued.token not in issued.record.token_hash
        stored = memory_store.get_refresh_token_by_hash(hash_refresh_token(issued.token))
        assert stored.id == issued.record.id
        assert not stored.used and not stored.revoked

    def test_values_are_unique(self, issuer, user):
        tokens = {issuer.issue_refresh_token(user).token for _ in range(20)}
        assert len(tokens) == 20

    def test_new_chain_gets_fixed_outer_expiry(self, issuer, user, clock):
        issued = issuer.issue_refresh_token(user)

        assert issued.record.chain_expires_at == clock.now + timedelta(hours=24)
        assert issued.expires_at == clock.now + timedelta(minutes=60)

    def test_token_never_outlives_its_chain(self, issuer, user, clock):
        first = issuer.issue_refresh_token(user)
        clock.advance(hours=23, minutes=30)

        second = issuer.issue_refresh_token(user, first.chain_id)

        assert second.chain_id == first.chain_id
        assert second.record.chain_expires_at == first.record.chain_expires_at
        assert second.expires_at == first.record.chain_expires_at

    def test_unknown_chain_rejected(self, issuer, user):
        with pytest.raises(TokenNotFound):
            issuer.issue_refresh_token(user, "no-such-chain")

    def test_mint_requires_chain_expiry_when_extending(self, issuer, user):
        with pytest.raises(ValueError):
            issuer.mint_refresh_token(user.id, chain_id="abc")
