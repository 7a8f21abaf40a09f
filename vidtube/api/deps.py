from __future__ import annotations

from typing import Callable, Optional

from fastapi import Header, Request, Response

from vidtube.config import Settings
from vidtube.service.rate_limit import RateLimitDecision
from vidtube.service.runtime import get_runtime
from vidtube.service.tokens import TokenPair
from vidtube.storage.models import User

ACCESS_COOKIE = "accessToken"
REFRESH_COOKIE = "refreshToken"


def client_key(request: Request, settings: Settings) -> str:
    """Identify the caller for rate limiting (source address)."""
    if settings.trust_forwarded_for:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",", 1)[0].strip()
        if first_hop:
            return first_hop
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def _apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, decision.remaining))
    response.headers["X-RateLimit-Reset"] = str(decision.reset_after)


def rate_limit(policy: str) -> Callable:
    """Build a dependency that admits the request through the named limiter."""

    async def _admit(request: Request, response: Response) -> RateLimitDecision:
        runtime = get_runtime()
        decision = await runtime.limiter(policy).admit(client_key(request, runtime.settings))
        _apply_rate_limit_headers(response, decision)
        return decision

    _admit.__name__ = f"rate_limit_{policy}"
    return _admit


def _access_token_from(request: Request, authorization: Optional[str]) -> Optional[str]:
    """An explicit Authorization bearer wins over the accessToken cookie."""
    runtime = get_runtime()
    return runtime.auth.extract_bearer(authorization) or request.cookies.get(ACCESS_COOKIE)


async def get_current_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> User:
    runtime = get_runtime()
    user = await runtime.auth.verify_access(_access_token_from(request, authorization))
    request.state.user = user
    return user


async def get_optional_user(
    request: Request, authorization: Optional[str] = Header(None)
) -> Optional[User]:
    runtime = get_runtime()
    user = await runtime.auth.verify_access(
        _access_token_from(request, authorization), optional=True
    )
    request.state.user = user
    return user


def apply_auth_cookies(response: Response, tokens: TokenPair, settings: Settings) -> None:
    response.set_cookie(
        ACCESS_COOKIE,
        tokens.access_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.access_token_ttl_minutes * 60,
        path="/",
    )
    response.set_cookie(
        REFRESH_COOKIE,
        tokens.refresh_token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite=settings.cookie_samesite,
        max_age=settings.refresh_token_ttl_minutes * 60,
        path="/",
    )


def clear_auth_cookies(response: Response, settings: Settings) -> None:
    for name in (ACCESS_COOKIE, REFRESH_COOKIE):
        response.delete_cookie(
            name,
            path="/",
            secure=settings.cookie_secure,
            httponly=True,
            samesite=settings.cookie_samesite,
        )
