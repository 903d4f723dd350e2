from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response

from taskhub.api.deps import get_client_ip, rate_limit, require_auth, requires_auth
from taskhub.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordResetRequest,
    PrincipalResponse,
    ProfileUpdateRequest,
    RegisterRequest,
    SessionResponse,
    UserResponse,
)
from taskhub.config import Settings
from taskhub.logging import get_logger, log_auth_event
from taskhub.service.authenticator import LEGACY_TOKEN_COOKIE, Principal
from taskhub.service.errors import NotFoundError
from taskhub.service.linking import RegistrationOutcome
from taskhub.service.oauth import describe_providers
from taskhub.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter()

PASSWORD_RESET_ACK = (
    "If an account with that email exists, password reset instructions have been sent."
)


def _cookie_secure(settings: Settings) -> bool:
    return settings.cookie_secure or settings.is_production


def _set_token_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        LEGACY_TOKEN_COOKIE,
        token,
        httponly=True,
        secure=_cookie_secure(settings),
        samesite="strict",
        max_age=settings.legacy_token_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _set_session_cookie(response: Response, artifact: str, settings: Settings) -> None:
    # Lax so the cookie survives the redirect back from the provider
    response.set_cookie(
        settings.session_cookie_name,
        artifact,
        httponly=True,
        secure=_cookie_secure(settings),
        samesite="lax",
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        path="/",
    )


def _load_account(user_id: str):
    account = get_runtime().credentials.find_by_id(user_id)
    if account is None:
        raise NotFoundError("User not found")
    return account


@router.post(
    "/api/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create an account, or set the first password on an OAuth-only one.

    Returns 201 for a new account and 200 when a password was attached to an
    existing OAuth account. Either way a legacy token cookie is issued.
    """
    runtime = get_runtime()
    registration = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        ip=get_client_ip(request),
    )
    if registration.result.outcome == RegistrationOutcome.PASSWORD_SET:
        response.status_code = 200
    _set_token_cookie(response, registration.token, runtime.settings)
    return Envelope(
        status="ok",
        message=registration.message,
        data=AuthResponse(
            user=UserResponse.from_user(registration.account), token=registration.token
        ),
    )


@router.post(
    "/api/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def login(body: LoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    issued = await runtime.auth.login(body.email, body.password, ip=get_client_ip(request))
    _set_token_cookie(response, issued.token, runtime.settings)
    return Envelope(
        status="ok",
        message="Login successful",
        data=AuthResponse(user=UserResponse.from_user(issued.account), token=issued.token),
    )


@router.post("/api/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(request: Request, response: Response):
    """Clear both credential cookies.

    Legacy tokens cannot be revoked server-side, so a copied token stays
    valid until it expires.
    """
    runtime = get_runtime()
    result = runtime.authenticator.authenticate(request)
    if result.principal is not None:
        log_auth_event("logout", result.principal.email, ip=get_client_ip(request))
    secure = _cookie_secure(runtime.settings)
    response.delete_cookie(
        LEGACY_TOKEN_COOKIE, path="/", secure=secure, httponly=True, samesite="strict"
    )
    response.delete_cookie(
        runtime.settings.session_cookie_name, path="/", secure=secure, httponly=True, samesite="lax"
    )
    return Envelope(status="ok", message="Logged out successfully")


@router.get(
    "/api/auth/me",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("read"))],
)
async def get_current_user(principal: Principal = Depends(require_auth)):
    account = _load_account(principal.user_id)
    return Envelope(status="ok", data={"user": UserResponse.from_user(account)})


@router.get("/api/auth/session", response_model=Envelope, tags=["auth"])
async def get_session(request: Request):
    """Session claims behind the session cookie, refreshed from the account store."""
    runtime = get_runtime()
    artifact = request.cookies.get(runtime.settings.session_cookie_name)
    claims = runtime.session_codec.decode(artifact) if artifact else None
    if claims is None:
        return Envelope(status="ok", data=None)
    claims = runtime.oauth.refresh_claims(claims)
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=claims.user_id,
            email=claims.email,
            first_name=claims.first_name,
            last_name=claims.last_name,
            avatar=claims.avatar,
            provider=claims.provider,
            expires_at=datetime.fromtimestamp(claims.exp, tz=timezone.utc),
        ),
    )


@router.post(
    "/api/auth/forgot-password",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("password_reset"))],
)
async def forgot_password(body: PasswordResetRequest, request: Request):
    # Same acknowledgement whether or not the account exists
    logger.info("password_reset_requested", ip=get_client_ip(request))
    return Envelope(status="ok", message=PASSWORD_RESET_ACK)


@router.get("/api/auth/oauth/{provider}/start", response_model=Envelope, tags=["auth"])
async def oauth_start(provider: str):
    runtime = get_runtime()
    started = runtime.oauth.start(provider)
    return Envelope(status="ok", data=OAuthStartResponse(**started))


@router.get(
    "/api/auth/oauth/{provider}/callback",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def oauth_callback(
    provider: str,
    request: Request,
    response: Response,
    code: str = Query(..., min_length=1),
    state: str = Query(..., min_length=1),
):
    runtime = get_runtime()
    sign_in = await runtime.auth.complete_oauth(
        provider, code, state, ip=get_client_ip(request)
    )
    _set_session_cookie(response, sign_in.artifact, runtime.settings)
    return Envelope(
        status="ok",
        message="Signed in successfully",
        data={"user": UserResponse.from_user(sign_in.account), "outcome": sign_in.link.outcome.value},
    )


@router.get(
    "/api/user/profile",
    response_model=Envelope,
    tags=["user"],
    dependencies=[Depends(rate_limit("read"))],
)
async def get_profile(principal: Principal = Depends(require_auth)):
    account = _load_account(principal.user_id)
    return Envelope(
        status="ok",
        message="Profile retrieved successfully",
        data={"user": UserResponse.from_user(account)},
    )


@router.put(
    "/api/user/profile",
    response_model=Envelope,
    tags=["user"],
    dependencies=[Depends(rate_limit("api"))],
)
async def update_profile(
    body: ProfileUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_auth),
):
    runtime = get_runtime()
    account = await runtime.auth.update_profile(
        principal.user_id,
        first_name=body.first_name,
        last_name=body.last_name,
        bio=body.bio,
        avatar=body.avatar,
        ip=get_client_ip(request),
    )
    return Envelope(
        status="ok",
        message="Profile updated successfully",
        data={"user": UserResponse.from_user(account)},
    )


@router.patch(
    "/api/user/profile/password",
    response_model=Envelope,
    tags=["user"],
    dependencies=[Depends(rate_limit("auth"))],
)
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: Principal = Depends(require_auth),
):
    runtime = get_runtime()
    message = await runtime.auth.change_password(
        principal.user_id,
        current_password=body.current_password,
        new_password=body.new_password,
        ip=get_client_ip(request),
    )
    return Envelope(status="ok", message=message)


@router.get("/dashboard", response_model=Envelope, tags=["pages"])
@requires_auth
async def dashboard(principal: Principal):
    return Envelope(
        status="ok",
        data=PrincipalResponse(
            user_id=principal.user_id,
            email=principal.email,
            first_name=principal.first_name,
            last_name=principal.last_name,
            avatar=principal.avatar,
        ),
    )


@router.get("/auth/login", response_model=Envelope, tags=["pages"])
async def login_page(callback_url: Optional[str] = Query(None, alias="callbackUrl")):
    runtime = get_runtime()
    return Envelope(
        status="ok",
        data={"providers": describe_providers(runtime.oauth), "callback_url": callback_url},
    )


@router.get("/auth/register", response_model=Envelope, tags=["pages"])
async def register_page():
    runtime = get_runtime()
    return Envelope(status="ok", data={"providers": describe_providers(runtime.oauth)})


__all__ = ["router"]
