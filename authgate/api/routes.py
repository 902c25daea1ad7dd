from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Request
from pydantic import ValidationError as PydanticValidationError

from authgate.api.gates import auth_gates, client_address, get_admin_context, get_auth_context
from authgate.api.schemas import (
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    PrincipalSummary,
    RateLimitResetResponse,
    RefreshRequest,
    RegisterRequest,
    ValidateResponse,
)
from authgate.logging import get_logger
from authgate.service.auth import AuthContext, AuthResult
from authgate.service.errors import ForbiddenError
from authgate.service.runtime import get_runtime
from authgate.storage.models import Principal

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")


def _from_epoch(ts: int) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def _principal_summary(principal: Principal) -> PrincipalSummary:
    return PrincipalSummary(
        id=principal.id,
        email=principal.email,
        role=principal.role.value,
        first_name=principal.first_name,
        last_name=principal.last_name,
        created_at=principal.created_at,
    )


def _auth_response(result: AuthResult) -> AuthResponse:
    tokens = result.tokens
    return AuthResponse(
        access_token=tokens.access.token,
        refresh_token=tokens.refresh.token,
        token_type=tokens.token_type,
        expires_in=tokens.expires_in,
        access_token_expires_at=_from_epoch(tokens.access.claims.expires_at),
        refresh_token_expires_at=_from_epoch(tokens.refresh.claims.expires_at),
        principal=_principal_summary(result.principal),
    )


@router.post(
    "/auth/register",
    response_model=Envelope,
    status_code=201,
    tags=["auth"],
    dependencies=auth_gates("register"),
)
async def register(body: RegisterRequest):
    """Create an account and return its first token pair.

    Raises:
        403: If registration is disabled
        409: If the email is already registered
        429: If the client exceeded its register budget
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise ForbiddenError("registration disabled")
    result = await runtime.auth.register(
        body.email,
        body.password,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_auth_response(result))


@router.post(
    "/auth/login",
    response_model=Envelope,
    tags=["auth"],
    dependencies=auth_gates("login"),
)
async def login(body: LoginRequest):
    """Exchange email and password for a token pair.

    Raises:
        401: If the credentials are invalid
        429: If the client exceeded its login budget
    """
    result = await get_runtime().auth.login(body.email, body.password)
    return Envelope(status="ok", data=_auth_response(result))


@router.post(
    "/auth/refresh",
    response_model=Envelope,
    tags=["auth"],
    dependencies=auth_gates("refresh"),
)
async def refresh(body: RefreshRequest):
    result = await get_runtime().auth.refresh(body.refresh_token)
    return Envelope(status="ok", data=_auth_response(result))


async def _optional_refresh_token(request: Request) -> Optional[str]:
    """Read ``refresh_token`` from the body if there is a usable one."""
    try:
        raw = await request.body()
        if not raw:
            return None
        return LogoutRequest.model_validate(json.loads(raw)).refresh_token
    except (ValueError, PydanticValidationError):
        return None


@router.post(
    "/auth/logout",
    response_model=Envelope,
    tags=["auth"],
    dependencies=[Depends(client_address)],
)
async def logout(request: Request, authorization: Optional[str] = Header(None)):
    refresh_token = await _optional_refresh_token(request)
    await get_runtime().auth.logout(authorization, refresh_token)
    return Envelope(status="ok", data={"message": "logged out"})


@router.get(
    "/auth/validate",
    response_model=Envelope,
    tags=["auth"],
    dependencies=auth_gates(),
)
async def validate(ctx: AuthContext = Depends(get_auth_context)):
    return Envelope(
        status="ok",
        data=ValidateResponse(
            user_id=ctx.user_id,
            role=ctx.role.value,
            expires_at=_from_epoch(ctx.expires_at),
        ),
    )


@router.post(
    "/admin/principals/{principal_id}/revoke-tokens",
    response_model=Envelope,
    tags=["admin"],
    dependencies=auth_gates(),
)
async def admin_revoke_principal_tokens(
    principal_id: str = Path(..., max_length=128),
    admin: AuthContext = Depends(get_admin_context),
):
    """Invalidate every token issued so far to ``principal_id``."""
    await get_runtime().auth.revoke_subject_tokens(principal_id)
    logger.info("admin_revoked_principal_tokens", admin_id=admin.user_id, principal_id=principal_id)
    return Envelope(status="ok", data={"principal_id": principal_id, "revoked": True})


@router.delete(
    "/admin/rate-limits/{address}",
    response_model=Envelope,
    tags=["admin"],
    dependencies=auth_gates(),
)
async def admin_reset_rate_limits(
    address: str = Path(..., max_length=64),
    admin: AuthContext = Depends(get_admin_context),
):
    """Close every open rate limit window for ``address``."""
    removed = await get_runtime().rate_limiter.reset(address)
    logger.info("admin_reset_rate_limits", admin_id=admin.user_id, client_address=address)
    return Envelope(
        status="ok", data=RateLimitResetResponse(client_address=address, removed=removed)
    )
