"""Request gating helpers used by the route handlers.

Each helper returns a ``Result`` so a handler can stop at the first failed
gate and render it through the envelope.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import Request

from ..config import Settings
from ..domain.contracts import AccountIdentity
from ..domain.errors import Err, Messages, Ok, Result, ServiceError
from ..domain.service import AccountService
from ..metrics import RATE_LIMIT_REJECTIONS, SANITIZED_PAYLOADS
from ..sanitize import sanitize
from ..validation import Schema, check
from .middleware import RateLimits, client_key

logger = logging.getLogger(__name__)


def get_service(request: Request) -> AccountService:
    """Resolve the `AccountService` stored on the FastAPI application state."""
    service: AccountService = request.app.state.account_service
    return service


def get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith("Bearer "):
        return None
    return header[len("Bearer "):].strip() or None


async def check_auth_rate_limit(request: Request) -> Result[None]:
    """Count an attempt against the strict login/registration window."""
    settings = get_settings(request)
    limits: RateLimits = request.app.state.rate_limits
    key = client_key(request, settings.trust_proxy)
    decision = await limits.auth_limiter.hit(f"auth:{key}")
    if not decision.allowed:
        RATE_LIMIT_REJECTIONS.labels(scope="auth").inc()
        logger.warning("auth rate limit exceeded for %s", key)
        return Err(ServiceError.rate_limited(decision.retry_after, Messages.TOO_MANY_AUTH_ATTEMPTS))
    return Ok(None)


async def read_json(request: Request, max_bytes: int) -> Result[Any]:
    """Read and decode the JSON body, refusing anything over ``max_bytes``."""
    declared = request.headers.get("Content-Length", "")
    if declared.isdigit() and int(declared) > max_bytes:
        logger.warning("rejecting body of %s bytes, limit is %d", declared, max_bytes)
        return Err(ServiceError.payload_too_large(max_bytes))

    # stop reading as soon as the limit is passed
    raw = bytearray()
    async for chunk in request.stream():
        raw.extend(chunk)
        if len(raw) > max_bytes:
            logger.warning("rejecting streamed body over %d bytes", max_bytes)
            return Err(ServiceError.payload_too_large(max_bytes))
    if not raw:
        return Ok({})
    try:
        return Ok(json.loads(raw))
    except (ValueError, UnicodeDecodeError):
        return Err(ServiceError.validation(["Request body must be valid JSON"]))


async def gate_body(request: Request, schema: Schema) -> Result[dict[str, Any]]:
    """Sanitize then validate the JSON body against ``schema``."""
    body = await read_json(request, get_settings(request).max_body_bytes)
    if isinstance(body, Err):
        return body
    report = sanitize(body.value)
    if report.replaced_keys:
        SANITIZED_PAYLOADS.inc()
        logger.warning("sanitized potentially dangerous keys: %s", ", ".join(report.replaced_keys))
    return check(schema, report.value)


async def authorize_request(request: Request, service: AccountService) -> Result[AccountIdentity]:
    """Verify the bearer token and attach the resolved identity to ``request.state``."""
    result = await service.authorize(bearer_token(request))
    if not isinstance(result, Err):
        request.state.account = result.value
    return result
