from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol
from urllib.parse import urlencode

import httpx

from examauth.config import LinkingPolicy, Settings
from examauth.logging import get_logger
from examauth.service.credentials import CredentialVerifier
from examauth.service.errors import (
    AccountInactive,
    BadRequestError,
    LinkingRequired,
    ProviderError,
    TokenExchangeFailed,
    UpstreamServiceError,
    UserInfoUnavailable,
)
from examauth.service.flow import SessionFlow, SessionPhase
from examauth.service.sso_state import SsoStateManager, pkce_challenge
from examauth.storage.errors import ConstraintViolation
from examauth.storage.models import (
    OidcTokenResponse,
    OidcUserInfo,
    SsoCallbackData,
    User,
)

logger = get_logger(__name__)


class IdentityProvider(Protocol):
    name: str

    def authorization_url(
        self, state: str, redirect_uri: str, code_challenge: Optional[str] = None
    ) -> str: ...

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: Optional[str] = None
    ) -> OidcTokenResponse: ...

    async def fetch_userinfo(self, access_token: str) -> OidcUserInfo: ...


class UserDirectory(Protocol):
    def get_user_by_provider(self, provider: str, subject: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def create_user(
        self,
        email: str,
        display_name: Optional[str] = None,
        *,
        roles: Optional[list[str]] = None,
        email_verified: bool = False,
        is_active: bool = True,
    ) -> User: ...

    def link_user_auth_provider(self, user_id: int, provider: str, subject: str) -> None: ...


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes"}
    return False


class HttpOidcProvider:
    """OIDC authorization-code flow against pre-configured endpoints.

    Every call carries the configured timeout. Timeouts, non-2xx responses
    and malformed bodies map to the flow-specific error; other transport
    faults surface as ``UpstreamServiceError``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self.name = settings.sso_provider_name
        self.timeout = settings.oidc_timeout_seconds
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    def authorization_url(
        self, state: str, redirect_uri: str, code_challenge: Optional[str] = None
    ) -> str:
        params = {
            "client_id": self.settings.oidc_client_id or "",
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": self.settings.oidc_scopes,
            "state": state,
        }
        if code_challenge:
            params["code_challenge"] = code_challenge
            params["code_challenge_method"] = "S256"
        return f"{self.settings.oidc_authorization_endpoint}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, redirect_uri: str, code_verifier: Optional[str] = None
    ) -> OidcTokenResponse:
        token_data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self.settings.oidc_client_id or "",
        }
        if self.settings.oidc_client_secret:
            token_data["client_secret"] = self.settings.oidc_client_secret
        if code_verifier:
            token_data["code_verifier"] = code_verifier
        try:
            async with self._client() as client:
                response = await client.post(
                    self.settings.oidc_token_endpoint,
                    data=token_data,
                    headers={"Accept": "application/json"},
                )
        except httpx.TimeoutException as exc:
            logger.warning("oidc_token_exchange_timeout", provider=self.name, error=str(exc))
            raise TokenExchangeFailed("token endpoint timed out") from exc
        except httpx.RequestError as exc:
            logger.error(
                "oidc_token_exchange_transport_error",
                provider=self.name,
                endpoint=self.settings.oidc_token_endpoint,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise UpstreamServiceError() from exc

        try:
            body = response.json()
        except ValueError:
            body = None
        if not response.is_success:
            provider_error = body.get("error") if isinstance(body, dict) else None
            logger.warning(
                "oidc_token_exchange_http_error",
                provider=self.name,
                status_code=response.status_code,
                provider_error=provider_error,
            )
            raise TokenExchangeFailed(
                detail={"status_code": response.status_code, "provider_error": provider_error}
            )
        if not isinstance(body, dict):
            logger.warning("oidc_token_response_malformed", provider=self.name)
            raise TokenExchangeFailed("token endpoint returned a malformed payload")

        result = OidcTokenResponse(
            access_token=body.get("access_token"),
            id_token=body.get("id_token"),
            refresh_token=body.get("refresh_token"),
            token_type=body.get("token_type"),
            expires_in=body.get("expires_in") if isinstance(body.get("expires_in"), int) else None,
            scope=body.get("scope"),
            error=body.get("error"),
            error_description=body.get("error_description"),
        )
        if result.error:
            logger.warning(
                "oidc_token_exchange_rejected",
                provider=self.name,
                provider_error=result.error,
                description=result.error_description,
            )
            raise TokenExchangeFailed(
                detail={
                    "provider_error": result.error,
                    "provider_error_description": result.error_description,
                }
            )
        if not result.access_token or not isinstance(result.access_token, str):
            logger.warning("oidc_token_response_missing_access_token", provider=self.name)
            raise TokenExchangeFailed("token endpoint returned no access token")
        return result

    async def fetch_userinfo(self, access_token: str) -> OidcUserInfo:
        try:
            async with self._client() as client:
                response = await client.get(
                    self.settings.oidc_userinfo_endpoint,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as exc:
            logger.warning("oidc_userinfo_timeout", provider=self.name, error=str(exc))
            raise UserInfoUnavailable("userinfo endpoint timed out") from exc
        except httpx.RequestError as exc:
            logger.error(
                "oidc_userinfo_transport_error",
                provider=self.name,
                endpoint=self.settings.oidc_userinfo_endpoint,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            raise UpstreamServiceError() from exc

        if not response.is_success:
            logger.warning(
                "oidc_userinfo_http_error",
                provider=self.name,
                status_code=response.status_code,
            )
            raise UserInfoUnavailable(detail={"status_code": response.status_code})
        try:
            body = response.json()
        except ValueError as exc:
            logger.warning("oidc_userinfo_parse_error", provider=self.name)
            raise UserInfoUnavailable("userinfo endpoint returned a malformed payload") from exc
        if not isinstance(body, dict):
            logger.warning(
                "oidc_userinfo_invalid_format", provider=self.name, type=type(body).__name__
            )
            raise UserInfoUnavailable("userinfo endpoint returned a malformed payload")
        subject = body.get("sub")
        if subject is None or str(subject).strip() == "":
            logger.warning("oidc_userinfo_missing_subject", provider=self.name)
            raise UserInfoUnavailable("userinfo response has no subject")

        email = body.get("email")
        return OidcUserInfo(
            subject=str(subject),
            email=email.strip().lower() if isinstance(email, str) and email.strip() else None,
            email_verified=_as_bool(body.get("email_verified")),
            name=body.get("name"),
            given_name=body.get("given_name"),
            family_name=body.get("family_name"),
            preferred_username=body.get("preferred_username"),
            locale=body.get("locale"),
        )


@dataclass
class ResolvedIdentity:
    user: User
    userinfo: OidcUserInfo
    provider: str
    # "subject", "email" or "provisioned"
    matched_by: str


class OidcClient:
    """Runs the SSO callback: state check, code exchange, user resolution."""

    def __init__(
        self,
        provider: IdentityProvider,
        states: SsoStateManager,
        users: UserDirectory,
        credentials: CredentialVerifier,
        settings: Settings,
    ) -> None:
        self.provider = provider
        self.states = states
        self.users = users
        self.credentials = credentials
        self.settings = settings

    async def start(self, redirect_uri: str | None = None) -> tuple[str, str]:
        """Issue a state and return ``(authorization_url, state)``."""
        record = await self.states.issue_state(redirect_uri)
        challenge = pkce_challenge(record.code_verifier) if record.code_verifier else None
        url = self.provider.authorization_url(record.state, record.redirect_uri, challenge)
        return url, record.state

    async def handle_callback(
        self, callback: SsoCallbackData, flow: SessionFlow | None = None
    ) -> ResolvedIdentity:
        """Turn a provider callback into a resolved local user.

        Nothing here issues tokens; the caller does that once a user is resolved.

        Raises:
            ProviderError: the callback carries an ``error`` parameter.
            BadRequestError: ``code`` or ``state`` is missing.
            StateNotFound, StateExpired, StateAlreadyUsed: state check failed;
                the provider has not been contacted.
            TokenExchangeFailed, UserInfoUnavailable: provider step failed.
            UpstreamServiceError: unexpected transport fault.
            LinkingRequired: policy forbids creating or linking the account.
            AccountInactive: the resolved local account is disabled.
        """
        if callback.error:
            raise ProviderError(callback.error, callback.error_description)
        if not callback.state:
            raise BadRequestError("state is required")
        if not callback.code:
            raise BadRequestError("code is required")

        stored = await self.states.consume(callback.state)
        if flow:
            flow.advance(SessionPhase.STATE_VALIDATED)
        if callback.redirect_uri and callback.redirect_uri != stored.redirect_uri:
            logger.info("sso_callback_redirect_uri_ignored")

        tokens = await self.provider.exchange_code(
            callback.code, stored.redirect_uri, stored.code_verifier
        )
        userinfo = await self.provider.fetch_userinfo(tokens.access_token or "")
        if flow:
            flow.advance(SessionPhase.CODE_EXCHANGED)

        resolved = self.resolve_user(userinfo)
        if flow:
            flow.advance(SessionPhase.USER_RESOLVED)
        return resolved

    def resolve_user(self, userinfo: OidcUserInfo) -> ResolvedIdentity:
        provider = self.provider.name
        user = self.users.get_user_by_provider(provider, userinfo.subject)
        matched_by = "subject"
        if user is None and userinfo.email:
            existing = self.users.get_user_by_email(userinfo.email)
            if existing is not None:
                if not userinfo.email_verified:
                    logger.info(
                        "sso_link_refused_unverified_email",
                        provider=provider,
                        subject=userinfo.subject,
                        user_id=existing.id,
                    )
                    raise LinkingRequired(
                        "email matches an existing account but is not verified by the provider",
                        detail={"reason": "unverified_email"},
                    )
                self.users.link_user_auth_provider(existing.id, provider, userinfo.subject)
                logger.info(
                    "sso_identity_linked",
                    provider=provider,
                    subject=userinfo.subject,
                    user_id=existing.id,
                )
                user = existing
                matched_by = "email"
        if user is None:
            user = self._provision(userinfo)
            matched_by = "provisioned"
        if not user.is_active:
            raise AccountInactive()
        return ResolvedIdentity(
            user=user, userinfo=userinfo, provider=provider, matched_by=matched_by
        )

    def _provision(self, userinfo: OidcUserInfo) -> User:
        provider = self.provider.name
        if self.settings.sso_linking_policy == LinkingPolicy.REQUIRE_LINK:
            raise LinkingRequired(detail={"reason": "policy_requires_link"})
        if not userinfo.email:
            raise UserInfoUnavailable("provider did not supply an email address")
        try:
            user = self.users.create_user(
                userinfo.email,
                userinfo.display_name,
                roles=self.settings.default_roles,
                email_verified=userinfo.email_verified,
            )
        except ConstraintViolation as exc:
            # Another request provisioned the same email first
            raise LinkingRequired(detail={"reason": "email_conflict"}) from exc
        self.credentials.save_unusable_password(user.id)
        self.users.link_user_auth_provider(user.id, provider, userinfo.subject)
        logger.info(
            "sso_user_provisioned",
            provider=provider,
            subject=userinfo.subject,
            user_id=user.id,
        )
        return user
