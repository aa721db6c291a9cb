from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, Request

from identifier.api.schemas import (
    Envelope,
    ForgotPasswordRequest,
    IdentityResponse,
    LoginAttemptListResponse,
    LoginAttemptResponse,
    LoginRequest,
    LoginResponse,
    MessageResponse,
    PasswordChangeRequest,
    RegisterRequest,
    RegisterResponse,
    ResetPasswordRequest,
    TokenRefreshRequest,
    TokenRefreshResponse,
)
from identifier.logging import get_logger
from identifier.service.errors import InvalidOrExpiredTokenError
from identifier.service.runtime import Runtime
from identifier.service.tokens import AccessClaims, extract_bearer

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


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


async def get_principal(
    runtime: Runtime = Depends(get_runtime),
    authorization: Optional[str] = Header(None),
) -> AccessClaims:
    token = extract_bearer(authorization)
    if not token:
        raise _http_error("unauthorized", "authorization header required", status_code=401)
    try:
        return runtime.issuer.verify(token)
    except InvalidOrExpiredTokenError:
        raise _http_error("unauthorized", "invalid or expired token", status_code=401)


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, runtime: Runtime = Depends(get_runtime)):
    """Create an identity with status ``unverified``.

    Raises:
        409: If the email is already registered
    """
    result = await runtime.identities.register(
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(user_id=result.user_id, email=result.email, message=result.message),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    runtime: Runtime = Depends(get_runtime),
    user_agent: Optional[str] = Header(None),
):
    """Exchange email and password for an access token and a refresh token.

    The refresh token is returned once and cannot be retrieved again.

    Raises:
        401: Unknown email or wrong password (same response for both)
        403: Account locked or suspended
    """
    device_info = body.device_info or (user_agent[:255] if user_agent else None)
    result = await runtime.identities.login(
        email=body.email,
        password=body.password,
        device_info=device_info,
        ip_address=_client_ip(request),
    )
    return Envelope(
        status="ok",
        data=LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(body: TokenRefreshRequest, runtime: Runtime = Depends(get_runtime)):
    """Issue a new access token. The refresh token itself is left unchanged."""
    result = await runtime.sessions.refresh_access_token(body.refresh_token)
    return Envelope(
        status="ok",
        data=TokenRefreshResponse(
            access_token=result.access_token,
            token_type=result.token_type,
            expires_in=result.expires_in,
        ),
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: ForgotPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    message = await runtime.recovery.forgot_password(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: ResetPasswordRequest, runtime: Runtime = Depends(get_runtime)):
    message = await runtime.recovery.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    principal: AccessClaims = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Revoke every refresh token the caller holds, on all devices."""
    message = await runtime.identities.logout(principal.sub)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/auth/password/change", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    principal: AccessClaims = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Change the caller's password. Every refresh token is revoked afterwards."""
    await runtime.identities.change_password(
        principal.sub, body.current_password, body.new_password
    )
    return Envelope(status="ok", data=MessageResponse(message="Password changed successfully"))


@router.post("/auth/verify-email/{user_id}", response_model=Envelope, tags=["auth"])
async def verify_email(
    user_id: str = Path(..., max_length=64),
    principal: AccessClaims = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    if principal.sub != user_id:
        raise _http_error("forbidden", "cannot verify another identity", status_code=403)
    identity = await runtime.identities.verify_email(user_id)
    return Envelope(
        status="ok",
        data={"user_id": identity.user_id, "status": identity.status.value, "email_verified": True},
    )


@router.get("/me", response_model=Envelope, tags=["auth"])
async def me(
    principal: AccessClaims = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Current identity plus the roles and permissions carried by the token."""
    identity = await runtime.identities.get_identity(principal.sub)
    return Envelope(
        status="ok",
        data=IdentityResponse(
            user_id=identity.user_id,
            email=identity.email,
            status=identity.status.value,
            email_verified=identity.email_verified,
            roles=principal.roles,
            permissions=principal.permissions,
            created_at=identity.created_at,
        ),
    )


@router.get("/me/login-attempts", response_model=Envelope, tags=["auth"])
async def my_login_attempts(
    limit: int = Query(20, ge=1, le=100),
    principal: AccessClaims = Depends(get_principal),
    runtime: Runtime = Depends(get_runtime),
):
    """Recent login attempts and the failure count inside the configured window."""
    attempts = await runtime.identities.recent_attempts(principal.sub, limit=limit)
    failures = await runtime.identities.recent_failures(principal.sub)
    return Envelope(
        status="ok",
        data=LoginAttemptListResponse(
            items=[
                LoginAttemptResponse(
                    email=a.email,
                    success=a.success,
                    ip_address=a.ip_address,
                    attempted_at=a.attempted_at,
                )
                for a in attempts
            ],
            recent_failures=failures,
            window_seconds=runtime.settings.failure_window_seconds,
        ),
    )
