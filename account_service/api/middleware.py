from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from ..domain.errors import ServiceError
from ..logging_config import request_id_var
from ..metrics import RATE_LIMIT_REJECTIONS
from ..security.rate_limiter import ProgressiveDelay, RateLimiter
from .envelope import failure

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
CONTENT_SECURITY_POLICY = (
    "default-src 'self'; style-src 'self' 'unsafe-inline'; "
    "script-src 'self'; img-src 'self' data: https:"
)


@dataclass
class RateLimits:
    """Limiters shared by the middleware and the auth routes; swapped at startup."""

    global_limiter: RateLimiter
    auth_limiter: RateLimiter
    slow_down: ProgressiveDelay


def client_key(request: Request, trust_proxy: bool) -> str:
    """Identify the calling client, honouring the first proxy hop only when trusted."""
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For", "")
        first_hop = forwarded.split(",")[0].strip()
        if first_hop:
            return first_hop
    if request.client is not None:
        return request.client.host
    return "unknown"


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Attach a correlation id to every request, echo it on the response and log the outcome.

    Unhandled errors are rendered here as the generic 500 envelope so the
    response still carries the id.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        request.state.request_id = request_id
        token = request_id_var.set(request_id)
        started = time.perf_counter()
        try:
            try:
                response = await call_next(request)
            except Exception:
                logger.exception("unhandled error on %s %s", request.method, request.url.path)
                response = failure(ServiceError.internal())
            _log_access(request, response.status_code, (time.perf_counter() - started) * 1000)
        finally:
            request_id_var.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        return response


def _log_access(request: Request, status_code: int, elapsed_ms: float) -> None:
    if status_code >= 500:
        level = logging.ERROR
    elif status_code >= 400:
        level = logging.WARNING
    else:
        level = logging.INFO
    logger.log(level, "%s %s %d %.1fms", request.method, request.url.path, status_code, elapsed_ms)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Set browser hardening headers on every response unless a route already set them."""

    def __init__(self, app: ASGIApp, *, hsts_max_age_seconds: int) -> None:
        super().__init__(app)
        self._headers = {
            "Content-Security-Policy": CONTENT_SECURITY_POLICY,
            "Strict-Transport-Security": f"max-age={hsts_max_age_seconds}; includeSubDomains; preload",
            "Referrer-Policy": "strict-origin-when-cross-origin",
            "X-Content-Type-Options": "nosniff",
            "X-Frame-Options": "SAMEORIGIN",
        }

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        response = await call_next(request)
        for name, value in self._headers.items():
            response.headers.setdefault(name, value)
        return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Global per-client fixed window plus progressive slow-down.

    Paths in ``exempt_paths`` (health check, metrics) are never counted.
    """

    def __init__(self, app: ASGIApp, *, exempt_paths: frozenset[str], trust_proxy: bool = False) -> None:
        super().__init__(app)
        self._exempt = exempt_paths
        self._trust_proxy = trust_proxy

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path in self._exempt or request.method == "OPTIONS":
            return await call_next(request)

        limits: RateLimits = request.app.state.rate_limits
        key = client_key(request, self._trust_proxy)
        decision = await limits.global_limiter.hit(f"global:{key}")
        if not decision.allowed:
            RATE_LIMIT_REJECTIONS.labels(scope="global").inc()
            logger.warning("global rate limit exceeded for %s", key)
            return failure(ServiceError.rate_limited(decision.retry_after))

        delay = await limits.slow_down.delay_for(f"slow:{key}")
        if delay > 0:
            logger.info("slowing client %s by %.1fs", key, delay)
            await asyncio.sleep(delay)

        response = await call_next(request)
        response.headers["RateLimit-Limit"] = str(decision.limit)
        response.headers["RateLimit-Remaining"] = str(decision.remaining)
        response.headers["RateLimit-Reset"] = str(decision.retry_after)
        return response
