from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, Query, Request

from tokenforge.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    LogoutRequest,
    MFAEnableRequest,
    MFASetupResponse,
    MFAStatusResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    ProfileUpdateRequest,
    RegisterRequest,
    TokenRefreshRequest,
    TokenResponse,
    UserResponse,
)
from tokenforge.logging import get_logger
from tokenforge.service.context import AuthContext
from tokenforge.service.errors import MfaInvalidCode, NotFoundError
from tokenforge.service.oidc import discovery_document
from tokenforge.service.runtime import get_runtime
from tokenforge.service.tokens import TokenPair
from tokenforge.storage.models import User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")
well_known_router = APIRouter()


def request_context(
    request: Request, user_agent: Optional[str] = Header(None)
) -> AuthContext:
    return AuthContext(
        ip_addr=request.client.host if request.client else None,
        user_agent=user_agent,
    )


async def get_user(
    authorization: Optional[str] = Header(None),
    ctx: AuthContext = Depends(request_context),
) -> AuthContext:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, ctx)


def _token_response(pair: TokenPair) -> TokenResponse:
    return TokenResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        token_type=pair.token_type,
    )


def _auth_response(user: User, pair: TokenPair) -> AuthResponse:
    return AuthResponse(
        user_id=user.id,
        username=user.username,
        roles=list(user.roles),
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        expires_in=pair.expires_in,
        token_type=pair.token_type,
    )


def _user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        username=user.username,
        roles=list(user.roles),
        is_active=user.is_active,
        email_verified=user.email_verified,
        mfa_enabled=user.mfa_enabled,
        last_login_at=user.last_login_at,
        created_at=user.created_at,
    )


# discovery


@well_known_router.get("/.well-known/openid-configuration", tags=["oidc"])
@router.get("/.well-known/openid-configuration", tags=["oidc"])
async def openid_configuration():
    return discovery_document(get_runtime().settings)


@well_known_router.get("/.well-known/jwks.json", tags=["oidc"])
@router.get("/.well-known/jwks.json", tags=["oidc"])
async def jwks():
    return get_runtime().keys.public_key_set()


# auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, ctx: AuthContext = Depends(request_context)):
    runtime = get_runtime()
    user, pair = await runtime.auth.register(body.email, body.username, body.password, ctx)
    return Envelope(status="ok", data=_auth_response(user, pair))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, ctx: AuthContext = Depends(request_context)):
    """Authenticate with username or email and password.

    Accounts with MFA enabled must also send ``mfa_code``; without it the
    request fails with ``mfa_required``.
    """
    runtime = get_runtime()
    user, pair = await runtime.auth.login(
        body.username_or_email, body.password, ctx, mfa_code=body.mfa_code
    )
    return Envelope(status="ok", data=_auth_response(user, pair))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(
    body: TokenRefreshRequest, ctx: AuthContext = Depends(request_context)
):
    runtime = get_runtime()
    pair = await runtime.auth.refresh(body.refresh_token, ctx)
    return Envelope(status="ok", data=_token_response(pair))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: LogoutRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.auth.logout(
        principal.user_id,
        body.refresh_token,
        principal.access_token,
        principal,
    )
    return Envelope(status="ok", data={"status": "logged_out"})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.user_id, principal)
    return Envelope(status="ok", data=LogoutAllResponse(revoked_sessions=count))


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def get_current_user(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if user is None:
        raise NotFoundError("user not found")
    return Envelope(status="ok", data=_user_to_response(user))


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_current_user(
    body: ProfileUpdateRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    user = await runtime.auth.update_profile(
        principal.user_id, email=body.email, username=body.username, context=principal
    )
    return Envelope(status="ok", data=_user_to_response(user))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest, principal: AuthContext = Depends(get_user)
):
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        principal.user_id, body.current_password, body.new_password, principal
    )
    return Envelope(status="ok", data={"status": "changed", "revoked_sessions": revoked})


@router.post("/auth/password/reset/request", response_model=Envelope, tags=["auth"])
async def request_reset(
    body: PasswordResetRequest, ctx: AuthContext = Depends(request_context)
):
    runtime = get_runtime()
    # Delivery of the token is handled outside this service
    await runtime.auth.request_password_reset(body.email, ctx)
    return Envelope(status="ok", data={"status": "sent"})


@router.post("/auth/password/reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_reset(
    body: PasswordResetConfirm, ctx: AuthContext = Depends(request_context)
):
    runtime = get_runtime()
    await runtime.auth.complete_password_reset(body.token, body.new_password, ctx)
    return Envelope(status="ok", data={"status": "reset"})


# email verification


@router.post("/email/verify/request", response_model=Envelope, tags=["email"])
async def request_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    # Delivery of the token is handled outside this service
    token = await runtime.auth.request_email_verification(principal.user_id, principal)
    status = "sent" if token else "already_verified"
    return Envelope(status="ok", data={"status": status})


@router.get("/email/verify", response_model=Envelope, tags=["email"])
async def verify_email(
    token: str = Query(..., max_length=256), ctx: AuthContext = Depends(request_context)
):
    runtime = get_runtime()
    user = await runtime.auth.complete_email_verification(token, ctx)
    return Envelope(status="ok", data=_user_to_response(user))


# mfa


@router.post("/mfa/setup", response_model=Envelope, tags=["mfa"])
async def mfa_setup(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.auth.validate_user(principal.user_id)
    enrollment = await runtime.mfa.generate_secret(user)
    return Envelope(
        status="ok",
        data=MFASetupResponse(
            secret=enrollment.secret,
            qr_code=enrollment.qr_code,
            otp_uri=enrollment.otp_uri,
        ),
    )


@router.post("/mfa/enable", response_model=Envelope, tags=["mfa"])
async def mfa_enable(body: MFAEnableRequest, principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    activated = await runtime.mfa.confirm_and_activate(
        principal.user_id, body.code, body.secret, principal
    )
    if not activated:
        raise MfaInvalidCode()
    return Envelope(status="ok", data=MFAStatusResponse(enabled=True))


@router.post("/mfa/disable", response_model=Envelope, tags=["mfa"])
async def mfa_disable(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    await runtime.mfa.disable(principal.user_id, principal)
    return Envelope(status="ok", data=MFAStatusResponse(enabled=False))


@router.get("/mfa/status", response_model=Envelope, tags=["mfa"])
async def mfa_status(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    enabled = await runtime.mfa.is_enabled(principal.user_id)
    return Envelope(status="ok", data=MFAStatusResponse(enabled=enabled))
