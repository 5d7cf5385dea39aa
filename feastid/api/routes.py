from __future__ import annotations

import asyncio
from typing import Iterable, List, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Path, Query, Request, Response

from feastid.api.schemas import (
    Envelope,
    InviteRequest,
    InviteResponse,
    InviteVerifyResponse,
    LoginRequest,
    LoginResponse,
    OTPSendRequest,
    OTPSendResponse,
    OTPVerifyRequest,
    PermissionsResponse,
    RefreshRequest,
    RoleBindingRequest,
    RoleBindingResponse,
    SessionResponse,
    SetPasswordRequest,
    UserResponse,
)
from feastid.config import Environment
from feastid.logging import email_digest, get_logger
from feastid.service.gate import AuthenticatedContext, Rejection
from feastid.service.runtime import check_rate_limit, get_runtime
from feastid.service.sessions import CookieSpec, SessionTokens
from feastid.storage.models import GLOBAL_SCOPE, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _http_error(
    code: str,
    message: str,
    status_code: int,
    details: Optional[dict | str] = None,
    headers: Optional[dict] = None,
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> None:
    """Raise 429 once the bucket for ``key`` is empty."""
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    if response is not None:
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, remaining))
    if not allowed:
        retry_after = max(1, reset_seconds)
        raise _http_error(
            "rate_limited",
            "rate limit exceeded",
            status_code=429,
            details={"retry_after": retry_after},
            headers={"Retry-After": str(retry_after)},
        )


def _apply_cookies(response: Response, cookies: Iterable[CookieSpec]) -> None:
    for cookie in cookies:
        response.set_cookie(
            cookie.name,
            cookie.value,
            max_age=cookie.max_age,
            httponly=cookie.httponly,
            secure=cookie.secure,
            samesite=cookie.samesite,
            path=cookie.path,
        )


def _session_payload(tokens: SessionTokens) -> SessionResponse:
    claims = tokens.claims
    return SessionResponse(
        user_id=claims.user_id,
        email=claims.email,
        roles=sorted(claims.roles),
        business_id=claims.business_id,
        session_expires_at=claims.expires_at,
        refresh_expires_at=tokens.refresh_expires_at,
        access_token=tokens.session,
        refresh_token=tokens.refresh_token,
    )


def _user_payload(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        name=user.name,
        roles=sorted(user.roles),
        status=user.status.value,
        business_id=user.business_id,
        mfa_enabled=user.mfa_enabled,
        created_at=user.created_at,
        last_login_at=user.last_login_at,
    )


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _session_credential(request: Request, authorization: Optional[str]) -> Optional[str]:
    """Session credential from the session cookie, else an ``Authorization: Bearer`` header."""
    runtime = get_runtime()
    cookie = request.cookies.get(runtime.settings.session_cookie_name)
    if cookie:
        return cookie
    if authorization:
        scheme, _, value = authorization.partition(" ")
        if scheme.lower() == "bearer" and value.strip():
            return value.strip()
    return None


def _gate(
    request: Request,
    authorization: Optional[str],
    *,
    permission: Optional[str] = None,
    required_roles: Optional[List[str]] = None,
) -> AuthenticatedContext:
    runtime = get_runtime()
    result = runtime.gate.authenticate(
        _session_credential(request, authorization),
        permission=permission,
        required_roles=required_roles,
    )
    if isinstance(result, Rejection):
        raise _http_error(result.error_code, result.message, status_code=result.status_code)
    return result


async def get_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthenticatedContext:
    return _gate(request, authorization)


async def get_inviter(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthenticatedContext:
    return _gate(request, authorization, permission="users:invite")


async def get_role_manager(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthenticatedContext:
    return _gate(request, authorization, permission="users:role:update")


async def get_super_admin(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthenticatedContext:
    runtime = get_runtime()
    return _gate(
        request, authorization, required_roles=[runtime.settings.super_admin_role]
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with email and password.

    Returns a session pair and sets both cookies, or an MFA challenge id when
    the account has MFA enabled; the challenge is completed at ``/auth/otp/verify``.

    Raises:
        401: If the credentials are invalid
        403: If the account is not active
        429: If the rate limit is exceeded for this email
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{email_digest(body.email)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    result = await asyncio.to_thread(runtime.auth.login, body.email, body.password)
    if result.mfa_required:
        return Envelope(
            status="ok",
            data=LoginResponse(
                user_id=result.user_id,
                mfa_required=True,
                otp_id=result.mfa_otp_id,
                otp_expires_at=result.mfa_expires_at,
            ),
        )
    _apply_cookies(response, runtime.sessions.cookies(result.tokens))
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=result.user_id, session=_session_payload(result.tokens)
        ),
    )


@router.post("/auth/otp/send", response_model=Envelope, tags=["auth"])
async def send_login_code(body: OTPSendRequest, request: Request, response: Response):
    """Email a one-time sign-in code.

    The response shape is identical whether or not the email belongs to an
    active account.
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"otp:send:{_client_ip(request)}",
        runtime.settings.otp_request_rate_limit_per_minute,
        60,
        response=response,
    )
    challenge = await asyncio.to_thread(runtime.auth.request_login_code, body.email)
    return Envelope(
        status="ok",
        data=OTPSendResponse(otp_id=challenge.otp_id, expires_at=challenge.expires_at),
    )


@router.post("/auth/otp/verify", response_model=Envelope, tags=["auth"])
async def verify_login_code(body: OTPVerifyRequest, response: Response):
    runtime = get_runtime()
    tokens = await asyncio.to_thread(runtime.auth.verify_login_code, body.otp_id, body.code)
    _apply_cookies(response, runtime.sessions.cookies(tokens))
    return Envelope(status="ok", data=_session_payload(tokens))


@router.post("/auth/invite", response_model=Envelope, status_code=201, tags=["auth"])
async def invite_user(
    body: InviteRequest,
    response: Response,
    principal: AuthenticatedContext = Depends(get_inviter),
):
    """Create (or refresh) a pending user and email a one-time invitation link."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"invite:{principal.user_id}",
        runtime.settings.invite_rate_limit_per_minute,
        60,
        response=response,
    )
    link = await asyncio.to_thread(
        runtime.auth.invite_user,
        principal,
        body.email,
        roles=body.roles,
        name=body.name,
        business_id=body.business_id,
    )
    expose_url = runtime.settings.environment != Environment.PRODUCTION
    return Envelope(
        status="ok",
        data=InviteResponse(
            user_id=link.user_id,
            email=body.email,
            expires_at=link.expires_at,
            invite_url=link.url if expose_url else None,
        ),
    )


@router.get("/auth/invite/verify", response_model=Envelope, tags=["auth"])
async def verify_invite(token: str = Query(..., min_length=16, max_length=256)):
    runtime = get_runtime()
    check = await asyncio.to_thread(runtime.auth.check_invite, token)
    return Envelope(
        status="ok",
        data=InviteVerifyResponse(valid=True, user_id=check.user_id, email=check.email),
    )


@router.post("/auth/set-password", response_model=Envelope, tags=["auth"])
async def set_password(body: SetPasswordRequest, request: Request, response: Response):
    """Accept an invitation: set the first password and start a session."""
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"set-password:{_client_ip(request)}",
        runtime.settings.login_rate_limit_per_minute,
        60,
    )
    tokens = await asyncio.to_thread(runtime.auth.accept_invite, body.token, body.password)
    _apply_cookies(response, runtime.sessions.cookies(tokens))
    return Envelope(status="ok", data=_session_payload(tokens))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_session(
    request: Request,
    response: Response,
    body: Optional[RefreshRequest] = Body(None),
):
    """Exchange a refresh credential (cookie or body) for a new session pair."""
    runtime = get_runtime()
    credential = request.cookies.get(runtime.settings.refresh_cookie_name)
    if not credential and body is not None:
        credential = body.refresh_token
    tokens = await asyncio.to_thread(runtime.auth.refresh, credential)
    _apply_cookies(response, runtime.sessions.cookies(tokens))
    return Envelope(status="ok", data=_session_payload(tokens))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response):
    runtime = get_runtime()
    _apply_cookies(response, runtime.auth.logout())
    logger.info("session_cookies_cleared")
    return Envelope(status="ok", data={"message": "logged out"})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(principal: AuthenticatedContext = Depends(get_user)):
    return Envelope(
        status="ok",
        data={
            "user_id": principal.user_id,
            "email": principal.email,
            "roles": sorted(principal.roles),
            "business_id": principal.business_id,
        },
    )


@router.get("/auth/permissions", response_model=Envelope, tags=["auth"])
async def current_permissions(principal: AuthenticatedContext = Depends(get_user)):
    runtime = get_runtime()
    permissions = await asyncio.to_thread(runtime.authz.permissions_for, principal)
    return Envelope(
        status="ok",
        data=PermissionsResponse(
            user_id=principal.user_id,
            roles=sorted(principal.roles),
            permissions=sorted(permissions),
            is_super_admin=runtime.authz.is_super_admin(principal),
        ),
    )


@router.post("/admin/users/{user_id}/suspend", response_model=Envelope, tags=["admin"])
async def suspend_user(
    user_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthenticatedContext = Depends(get_super_admin),
):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.auth.suspend_user, principal, user_id)
    return Envelope(status="ok", data=_user_payload(user))


@router.post("/admin/users/{user_id}/reactivate", response_model=Envelope, tags=["admin"])
async def reactivate_user(
    user_id: str = Path(..., min_length=1, max_length=128),
    principal: AuthenticatedContext = Depends(get_super_admin),
):
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.auth.reactivate_user, principal, user_id)
    return Envelope(status="ok", data=_user_payload(user))


@router.post("/admin/roles/{role}", response_model=Envelope, tags=["admin"])
async def bind_role_permissions(
    body: RoleBindingRequest,
    role: str = Path(..., min_length=1, max_length=64),
    principal: AuthenticatedContext = Depends(get_role_manager),
):
    """Replace the permission set bound to ``role``, globally or for one business."""
    runtime = get_runtime()
    binding = await asyncio.to_thread(
        runtime.auth.bind_role_permissions,
        principal,
        role,
        body.permissions,
        business_id=body.business_id,
    )
    return Envelope(
        status="ok",
        data=RoleBindingResponse(
            role=binding.role,
            business_id=None if binding.business_id == GLOBAL_SCOPE else binding.business_id,
            permissions=sorted(binding.permissions),
            updated_at=binding.updated_at,
        ),
    )
