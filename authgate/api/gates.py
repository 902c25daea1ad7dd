"""Request gates applied in front of the auth routes.

A gate is a FastAPI dependency. Routes receive them as an ordered list from
:func:`auth_gates`: client address resolution first, then the shared
``auth`` budget, then each endpoint-class budget. Every rate limit gate also
depends on :func:`client_address`, so the address is resolved before any
counter is touched, whatever order FastAPI walks the list in.
"""

from __future__ import annotations

from typing import Callable, Dict, List, Optional

from fastapi import Depends, Header, Request, Response

from authgate.logging import get_logger
from authgate.service.auth import AuthContext
from authgate.service.errors import ForbiddenError, RateLimitedError
from authgate.service.rate_limit import RateLimitStatus
from authgate.service.runtime import get_runtime
from authgate.storage.models import Role

logger = get_logger(__name__)

AUTH_SURFACE_CLASS = "auth"


async def client_address(request: Request) -> str:
    runtime = get_runtime()
    direct = request.client.host if request.client else None
    address = runtime.proxy_resolver.resolve_client_address(
        direct,
        request.headers.get("X-Forwarded-For"),
        request.headers.get("X-Real-IP"),
    )
    request.state.client_address = address
    return address


def apply_rate_limit_headers(response: Response, status: RateLimitStatus) -> None:
    response.headers["X-RateLimit-Limit"] = str(status.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, status.remaining))
    response.headers["X-RateLimit-Reset"] = str(status.reset_seconds)


_rate_limit_gates: Dict[str, Callable] = {}


def rate_limit(endpoint_class: str) -> Callable:
    """Gate that spends one unit of ``endpoint_class`` budget for the client."""
    if endpoint_class in _rate_limit_gates:
        return _rate_limit_gates[endpoint_class]

    async def gate(
        request: Request,
        response: Response,
        address: str = Depends(client_address),
    ) -> RateLimitStatus:
        status = await get_runtime().rate_limiter.check(address, endpoint_class)
        if status.limit > 0:
            apply_rate_limit_headers(response, status)
        if not status.allowed:
            raise RateLimitedError(
                retry_after_seconds=status.reset_seconds,
                limit=status.limit,
            )
        return status

    gate.__name__ = f"rate_limit_{endpoint_class}"
    _rate_limit_gates[endpoint_class] = gate
    return gate


def auth_gates(*endpoint_classes: str, surface: bool = True) -> List:
    """Ordered dependency list for an auth route."""
    gates: List = [Depends(client_address)]
    classes = ([AUTH_SURFACE_CLASS] if surface else []) + list(endpoint_classes)
    gates.extend(Depends(rate_limit(endpoint_class)) for endpoint_class in classes)
    return gates


async def get_auth_context(
    request: Request, authorization: Optional[str] = Header(None)
) -> AuthContext:
    ctx = await get_runtime().auth.validate(authorization)
    request.state.auth = ctx
    return ctx


async def get_admin_context(ctx: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not ctx.has_role(Role.ADMIN):
        logger.warning("admin_access_denied", user_id=ctx.user_id, role=ctx.role.value)
        raise ForbiddenError("admin role required")
    return ctx
