"""
HTTP boundary for the rate limiter.

Picks a named policy by path, reserves a slot before the handler runs and
commits it once the response status is known. Exceeded requests get a 429
with X-RateLimit-* headers - except on the open pixel and click redirect,
which must always answer the recipient; there the handler is told to skip
recording instead.
"""
import logging
from typing import Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from src.utils.rate_limiter import (
    AUTH_POLICY,
    DEFAULT_POLICY,
    SEND_POLICY,
    RateLimiter,
    RateLimitPolicy,
    build_policies,
    get_rate_limiter,
    should_count_status,
)

logger = logging.getLogger(__name__)

# Routes served by the host CRM application mounted alongside the tracking
# routes. Most specific first.
POLICY_ROUTES: tuple[tuple[str, str], ...] = (
    ("/api/auth/login", AUTH_POLICY),
    ("/api/messages/send", SEND_POLICY),
)

# Recipient-facing paths that must never see a 429
OPAQUE_PREFIXES: tuple[str, ...] = ("/pixel/", "/redirect/")

EXEMPT_PATHS: frozenset[str] = frozenset({"/health", "/health/ready"})


def client_identity(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def is_rate_limited(request: Request) -> bool:
    """Set by the middleware on opaque paths that exceeded their policy."""
    return bool(getattr(request.state, "rate_limited", False))


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        limiter: Optional[RateLimiter] = None,
        policies: Optional[dict[str, RateLimitPolicy]] = None,
    ):
        super().__init__(app)
        self._limiter = limiter
        self._policies = policies

    @property
    def limiter(self) -> RateLimiter:
        if self._limiter is None:
            self._limiter = get_rate_limiter()
        return self._limiter

    @property
    def policies(self) -> dict[str, RateLimitPolicy]:
        if self._policies is None:
            from src.config import get_settings
            self._policies = build_policies(get_settings())
        return self._policies

    def policy_for(self, path: str) -> RateLimitPolicy:
        for prefix, name in POLICY_ROUTES:
            if path.startswith(prefix):
                return self.policies[name]
        return self.policies[DEFAULT_POLICY]

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path
        if path in EXEMPT_PATHS:
            return await call_next(request)

        policy = self.policy_for(path)
        identity = client_identity(request)
        reservation = await self.limiter.reserve(identity, policy)
        result = reservation.result

        if not result.allowed:
            if path.startswith(OPAQUE_PREFIXES):
                request.state.rate_limited = True
                return await call_next(request)
            logger.info(
                "Rejected %s %s for %s",
                request.method, path, identity,
                extra={"client_ip": identity, "policy": policy.name},
            )
            return JSONResponse(
                status_code=429,
                content={"success": False, "message": policy.message},
                headers=result.headers(),
            )

        response = await call_next(request)
        result = await self.limiter.commit(
            reservation, should_count_status(policy, response.status_code),
        )
        for name, value in result.headers().items():
            response.headers[name] = value
        return response
