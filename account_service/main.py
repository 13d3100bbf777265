"""FastAPI application wiring for the account service."""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
import redis.asyncio as redis
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from psycopg_pool import AsyncConnectionPool, PoolTimeout
from redis.exceptions import RedisError

from .api.envelope import install_exception_handlers, success
from .api.middleware import (
    REQUEST_ID_HEADER,
    RateLimitMiddleware,
    RateLimits,
    RequestIdMiddleware,
    SecurityHeadersMiddleware,
)
from .api.routes import router as users_router
from .config import Settings, get_settings
from .domain.service import AccountService
from .logging_config import configure_logging
from .repository import AccountRepository, build_pool
from .security.passwords import PasswordHasher
from .security.rate_limiter import FixedWindowRateLimiter, ProgressiveDelay
from .security.redis_rate_limiter import RedisFixedWindowRateLimiter
from .security.tokens import TokenIssuer

logger = logging.getLogger(__name__)

HEALTH_PATH = "/healthz"
METRICS_PATH = "/metrics"


def _memory_rate_limits(settings: Settings) -> RateLimits:
    return RateLimits(
        global_limiter=FixedWindowRateLimiter(settings.rate_limit_requests, settings.rate_limit_window_seconds),
        auth_limiter=FixedWindowRateLimiter(
            settings.auth_rate_limit_requests, settings.auth_rate_limit_window_seconds
        ),
        slow_down=ProgressiveDelay(
            FixedWindowRateLimiter(settings.slow_down_delay_after, settings.rate_limit_window_seconds),
            delay_after=settings.slow_down_delay_after,
            step_ms=settings.slow_down_step_ms,
            max_delay_ms=settings.slow_down_max_delay_ms,
        ),
    )


async def _redis_rate_limits(settings: Settings) -> tuple[RateLimits, redis.Redis] | None:
    """Build Redis-backed limiters, or ``None`` when Redis cannot be reached."""
    client = redis.from_url(settings.redis_url)
    try:
        # ensure connectivity early to fail fast and fall back
        await client.ping()
    except (RedisError, OSError) as exc:
        logger.warning("redis rate limiter unavailable, falling back to in-memory: %s", exc)
        await client.aclose()
        return None

    logger.info("rate limiter configured for redis backend at %s", settings.redis_url)
    limits = RateLimits(
        global_limiter=RedisFixedWindowRateLimiter(
            client,
            max_requests=settings.rate_limit_requests,
            window_seconds=settings.rate_limit_window_seconds,
            key_prefix="rate:global",
        ),
        auth_limiter=RedisFixedWindowRateLimiter(
            client,
            max_requests=settings.auth_rate_limit_requests,
            window_seconds=settings.auth_rate_limit_window_seconds,
            key_prefix="rate:auth",
        ),
        slow_down=ProgressiveDelay(
            RedisFixedWindowRateLimiter(
                client,
                max_requests=settings.slow_down_delay_after,
                window_seconds=settings.rate_limit_window_seconds,
                key_prefix="rate:slow",
            ),
            delay_after=settings.slow_down_delay_after,
            step_ms=settings.slow_down_step_ms,
            max_delay_ms=settings.slow_down_max_delay_ms,
        ),
    )
    return limits, client


async def _open_pool(pool: AsyncConnectionPool, settings: Settings) -> None:
    """Open the pool, retrying with linear back-off until the database answers."""
    await pool.open()
    for attempt in range(1, settings.db_connect_retries + 1):
        try:
            await pool.wait(timeout=settings.db_pool_timeout_seconds)
        except PoolTimeout as exc:
            logger.error("database connection attempt %d failed: %s", attempt, exc)
            if attempt == settings.db_connect_retries:
                raise
            delay = attempt * settings.db_retry_delay_seconds
            logger.info("retrying database connection in %.1f seconds", delay)
            await asyncio.sleep(delay)
        else:
            logger.info("database pool ready")
            return


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialise shared resources (Postgres pool, services, limiters) for the app lifecycle."""
    settings: Settings = app.state.settings
    app.state.started_at = time.monotonic()
    pool: AsyncConnectionPool | None = None
    redis_client = None

    if settings.rate_limit_backend == "redis" and settings.redis_url:
        built = await _redis_rate_limits(settings)
        if built is not None:
            app.state.rate_limits, redis_client = built
    else:
        logger.info("rate limiter using in-memory backend")

    if app.state.account_service is None:
        pool = build_pool(
            settings.database_url,
            min_size=settings.db_pool_min_size,
            max_size=settings.db_pool_max_size,
            timeout=settings.db_pool_timeout_seconds,
            statement_timeout_ms=settings.db_statement_timeout_ms,
        )
        await _open_pool(pool, settings)
        repository = AccountRepository(pool)
        await repository.ensure_schema()
        app.state.repository = repository
        app.state.account_service = _build_service(repository, settings)
    try:
        yield
    finally:
        if pool is not None:
            await pool.close()
        if redis_client is not None:
            await redis_client.aclose()


def _build_service(repository: AccountRepository, settings: Settings) -> AccountService:
    return AccountService(repository, PasswordHasher(settings.bcrypt_rounds), TokenIssuer(settings))


def create_app(settings: Settings | None = None, *, repository: AccountRepository | None = None) -> FastAPI:
    """Build the application; pass ``repository`` to skip opening a Postgres pool."""
    settings = settings or get_settings()
    settings.validate()
    configure_logging(settings)

    app = FastAPI(title=settings.app_name, version=settings.version, lifespan=lifespan)
    app.state.settings = settings
    app.state.rate_limits = _memory_rate_limits(settings)
    app.state.repository = repository
    app.state.account_service = _build_service(repository, settings) if repository is not None else None

    install_exception_handlers(app)
    app.add_middleware(
        RateLimitMiddleware,
        exempt_paths=frozenset({HEALTH_PATH, METRICS_PATH}),
        trust_proxy=settings.trust_proxy,
    )
    app.add_middleware(RequestIdMiddleware)
    app.add_middleware(SecurityHeadersMiddleware, hsts_max_age_seconds=settings.hsts_max_age_seconds)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.allowed_origins),
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Requested-With", REQUEST_ID_HEADER],
        expose_headers=["Content-Length", REQUEST_ID_HEADER],
        max_age=600,
    )

    @app.get(HEALTH_PATH, tags=["health"])
    async def healthz(request: Request) -> Response:
        """Report process and database health; 503 when the database is unreachable."""
        repo = request.app.state.repository
        database_ok = repo is not None and await repo.ping()
        started_at = getattr(request.app.state, "started_at", time.monotonic())
        body = {
            "status": "ok" if database_ok else "degraded",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "uptime": round(time.monotonic() - started_at, 3),
            "environment": settings.environment,
            "database": "connected" if database_ok else "disconnected",
            "version": settings.version,
        }
        if database_ok:
            return success(body, "Server is running")
        return success(body, "Database unavailable", status.HTTP_503_SERVICE_UNAVAILABLE)

    @app.get(METRICS_PATH, tags=["health"])
    def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(users_router, prefix=settings.api_prefix)
    return app


app = create_app()
