from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import RedirectResponse

from examauth.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutRequest,
    SsoStartRequest,
    SsoStartResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    UserSummary,
)
from examauth.logging import get_logger
from examauth.service.errors import BadRequestError, ServiceError
from examauth.service.runtime import get_runtime
from examauth.service.sessions import SessionTokens
from examauth.storage.models import SsoCallbackData

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _client_meta(request: Request) -> tuple[Optional[str], Optional[str]]:
    client_ip = request.client.host if request.client else None
    return client_ip, request.headers.get("User-Agent")


def _token_payload(tokens: SessionTokens) -> TokenPairResponse:
    user = tokens.user
    return TokenPairResponse(
        access_token=tokens.access_token,
        refresh_token=tokens.refresh_token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        expires_at=tokens.expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        user=UserSummary(
            id=user.id,
            email=user.email,
            display_name=user.display_name,
            roles=list(user.roles),
            email_verified=user.email_verified,
            is_active=user.is_active,
            last_login_at=user.last_login_at,
        ),
    )


def _extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    if not header.lower().startswith("bearer "):
        return None
    return header.split(" ", 1)[1].strip() or None


async def get_current_user_id(authorization: Optional[str] = Header(None)) -> int:
    """Resolve the caller from a bearer access token."""
    token = _extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    payload = get_runtime().issuer.decode_access_token(token)
    if not payload:
        raise _http_error("unauthorized", "invalid access token", status_code=401)
    try:
        return int(payload["sub"])
    except (KeyError, TypeError, ValueError):
        raise _http_error("unauthorized", "invalid access token", status_code=401)


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request):
    """Authenticate with email and password.

    Returns an access token and a refresh token that starts a new rotation chain.

    Raises:
        401: invalid_credentials, for a wrong password and an unknown email alike
        403: account_inactive
    """
    runtime = get_runtime()
    client_ip, user_agent = _client_meta(request)
    tokens = runtime.sessions.login(
        body.email, body.password, client_ip=client_ip, user_agent=user_agent
    )
    return Envelope(status="ok", data=_token_payload(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    """Rotate a refresh token into a new access/refresh pair.

    Each refresh token works once. Presenting one that was already rotated
    revokes its whole chain.

    Raises:
        401: token_not_found, token_expired_or_revoked, token_reuse_detected
        403: account_inactive
    """
    runtime = get_runtime()
    client_ip, user_agent = _client_meta(request)
    tokens = runtime.sessions.refresh(
        body.refresh_token, client_ip=client_ip, user_agent=user_agent
    )
    return Envelope(status="ok", data=_token_payload(tokens))


@router.post("/auth/sso/start", response_model=Envelope, tags=["sso"])
async def sso_start(body: Optional[SsoStartRequest] = None):
    """Begin an SSO login.

    The client should redirect the user to ``authorization_url``. The embedded
    state is valid for a single callback within its TTL.
    """
    runtime = get_runtime()
    start = await runtime.sessions.start_sso((body or SsoStartRequest()).redirect_uri)
    return Envelope(
        status="ok",
        data=SsoStartResponse(authorization_url=start.authorization_url, state=start.state),
    )


_CALLBACK_PARAM_LIMITS = {
    "code": 2048,
    "state": 256,
    "error": 256,
    "error_description": 1024,
    "redirect_uri": 2048,
}


def _check_callback_lengths(callback: SsoCallbackData) -> None:
    for name, limit in _CALLBACK_PARAM_LIMITS.items():
        value = getattr(callback, name)
        if value is not None and len(value) > limit:
            raise BadRequestError(
                f"{name} is too long", detail={"field": name, "max_length": limit}
            )


@router.get("/auth/sso/callback", response_model=Envelope, tags=["sso"])
async def sso_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    error_description: Optional[str] = Query(None),
    redirect_uri: Optional[str] = Query(None),
):
    """Complete an SSO login from the provider's redirect.

    ``code`` and ``state`` are required unless the provider reports ``error``.
    When a failure redirect URL is configured, failures redirect there with
    an ``error`` query parameter instead of returning an error envelope.
    """
    runtime = get_runtime()
    client_ip, user_agent = _client_meta(request)
    callback = SsoCallbackData(
        code=code,
        state=state,
        error=error,
        error_description=error_description,
        redirect_uri=redirect_uri,
    )
    failure_redirect = runtime.settings.sso_failure_redirect_url
    try:
        _check_callback_lengths(callback)
        tokens = await runtime.sessions.complete_sso(
            callback, client_ip=client_ip, user_agent=user_agent
        )
    except ServiceError as exc:
        if not failure_redirect:
            raise
        separator = "&" if "?" in failure_redirect else "?"
        return RedirectResponse(
            f"{failure_redirect}{separator}{urlencode({'error': exc.error_code})}",
            status_code=303,
        )
    return Envelope(status="ok", data=_token_payload(tokens))


@router.post("/auth/logout", status_code=204, tags=["auth"])
async def logout(body: LogoutRequest):
    """Revoke the presented refresh token's chain. Idempotent."""
    runtime = get_runtime()
    runtime.sessions.logout(body.refresh_token)
    return Response(status_code=204)


@router.post("/auth/logout/all", status_code=204, tags=["auth"])
async def logout_all(user_id: int = Depends(get_current_user_id)):
    """Revoke every refresh chain of the calling user."""
    runtime = get_runtime()
    runtime.sessions.logout_all(user_id)
    return Response(status_code=204)
