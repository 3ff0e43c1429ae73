# chatrelay/transport/http_app.py
"""
HTTP application for operator-facing channel management.

Security layers:
1. Public: /health and /ready only
2. Protected: channel endpoints and /metrics (require admin token)
3. No information leakage in production
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from dataclasses import asdict
from typing import Optional

from fastapi import FastAPI, HTTPException, Request, Depends, Query
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.config import settings
from chatrelay.core.connector import ChannelConnector
from chatrelay.core.domain import SessionKey
from chatrelay.core.errors import ChannelError
from chatrelay.core.reconciler import ConnectionStatusReconciler
from chatrelay.core.registry import ConnectorRegistry
from chatrelay.core.relay import InboundMessageRelay
from chatrelay.core.service import ChannelService
from chatrelay.infra.activity_log import LoggingActivitySink
from chatrelay.infra.agent_backend import RetellAgentBackend
from chatrelay.infra.bridge_client import bridge_client_factory
from chatrelay.infra.db_async import close_pool, init_pool
from chatrelay.infra.health_checks_async import AsyncHealthChecker
from chatrelay.infra.http_client import close_all_sessions
from chatrelay.infra.logging_config import setup_logging, get_logger
from chatrelay.infra.metrics import get_metrics_collector
from chatrelay.infra.pg_cache_async import build_cache
from chatrelay.infra.pg_connection_repo_async import AsyncPostgresConnectionRepository
from chatrelay.infra.pg_conversation_repo_async import AsyncPostgresConversationRepository
from chatrelay.infra.rate_limiter import InMemoryRateLimiter, RateLimitDependency
from chatrelay.infra.schema_validator import validate_schema_version
from chatrelay.infra.session_store import FileSessionStore
from chatrelay.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from chatrelay.transport.security import (
    check_configured_tokens,
    require_admin_auth,
    SecurityHeaders,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)

CACHE_PURGE_INTERVAL_SECONDS = 300


class SendIn(BaseModel):
    to: str = ""
    message: str = ""


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_service(request: Request) -> ChannelService:
    """Get channel service from app state"""
    return request.app.state.service


async def rate_limit_check(request: Request) -> None:
    """Rate limit dependency for protected endpoints"""
    limiter_dep = request.app.state.rate_limiter
    await limiter_dep(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses"""
    async def dispatch(self, request: Request, call_next):
        response = await call_next(request)
        return SecurityHeaders.add_security_headers(response)


# ============================================================================
# COMPOSITION
# ============================================================================

def build_service(cache) -> ChannelService:
    """Wire connectors, registry, relay and repositories from settings."""
    session_store = FileSessionStore(settings.sessions_dir)
    session_store.ensure_base_dir()

    client_factory = bridge_client_factory(settings.bridge_url, settings.bridge_token)

    def connector_factory(key: SessionKey) -> ChannelConnector:
        return ChannelConnector(
            key,
            client_factory=client_factory,
            session_store=session_store,
            cache=cache,
            init_timeout=settings.init_timeout_seconds,
            qr_timeout=settings.qr_timeout_seconds,
            qr_poll_interval=settings.qr_poll_interval_seconds,
            dedup_ttl_seconds=settings.dedup_ttl_seconds,
        )

    connections = AsyncPostgresConnectionRepository()
    conversations = AsyncPostgresConversationRepository()
    activity = LoggingActivitySink()

    relay = InboundMessageRelay(
        conversations,
        RetellAgentBackend(settings.agent_backend_url, settings.agent_backend_api_key),
        cache,
        activity=activity,
        lock_ttl_seconds=settings.conversation_lock_ttl_seconds,
        lock_retry_delay=settings.conversation_lock_retry_delay_seconds,
        apology_message=settings.apology_message,
    )
    registry = ConnectorRegistry(
        connector_factory,
        session_store,
        settle_delay=settings.session_settle_delay_seconds,
    )
    return ChannelService(
        registry,
        relay,
        ConnectionStatusReconciler(connections),
        connections,
        conversations,
        activity=activity,
    )


async def _purge_cache_periodically(cache, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            await cache.purge_expired()
        except Exception as exc:
            logger.warning(f"Cache purge failed: {exc}")


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting application: env={settings.app_env}, cache={settings.cache_backend}")

    await init_pool()
    logger.info("Database pool initialized")

    if settings.is_production:
        if not settings.admin_token or len(settings.admin_token) < 32:
            logger.critical("ADMIN_TOKEN must be at least 32 characters in production")
            raise RuntimeError("Weak ADMIN_TOKEN")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    # Validate schema version (does NOT run migrations)
    try:
        schema_result = await validate_schema_version()
        logger.info(
            f"Schema validated: {schema_result['current_version']}",
            extra=schema_result
        )
    except Exception:
        logger.critical(
            "Schema validation failed. Run migrations first: python -m chatrelay.infra.migrate",
            exc_info=True
        )
        raise

    cache = build_cache(settings.cache_backend)
    service = build_service(cache)
    fastapi_app.state.service = service
    fastapi_app.state.health_checker = AsyncHealthChecker(cache=cache, registry=service.registry)

    rate_limiter = InMemoryRateLimiter(
        max_requests=settings.rate_limit_per_minute,
        window_seconds=60
    )
    fastapi_app.state.rate_limiter = RateLimitDependency(rate_limiter)

    purge_task: Optional[asyncio.Task] = None
    if settings.cache_backend != "none":
        purge_task = asyncio.create_task(
            _purge_cache_periodically(cache, CACHE_PURGE_INTERVAL_SECONDS),
            name="cache-purge",
        )

    logger.info(
        f"Channel settings: bridge={settings.bridge_url}, sessions_dir={settings.sessions_dir}, "
        f"init_timeout={settings.init_timeout_seconds}s, qr_timeout={settings.qr_timeout_seconds}s"
    )
    logger.info("Application startup complete")

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    if purge_task is not None:
        purge_task.cancel()
        with suppress(asyncio.CancelledError):
            await purge_task

    await service.shutdown()
    await close_all_sessions()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="ChatRelay",
    description="Messaging channel sessions relayed to remote chat agents",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization", "X-Actor"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(ErrorHandlingMiddleware)
app.add_middleware(RequestLoggingMiddleware, enabled=settings.enable_request_logging)
app.add_middleware(RequestIDMiddleware)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(ChannelError)
async def channel_error_handler(request: Request, exc: ChannelError):
    """Typed channel errors carry their own status code"""
    if exc.status_code >= 500:
        logger.error(f"Channel error: {exc.code}: {exc.detail}")
    else:
        logger.warning(f"Channel error: {exc.code}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail, "code": exc.code},
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    error_message = sanitize_error_message(exc, settings.is_production)

    return JSONResponse(
        status_code=500,
        content={"error": error_message},
    )


# ============================================================================
# PUBLIC ENDPOINTS (No authentication required)
# ============================================================================

@app.get("/health")
def health():
    """Liveness - minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness(request: Request):
    """Readiness probe: critical checks only."""
    result = await request.app.state.health_checker.run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy"}
        )

    return {"status": "healthy"}


# ============================================================================
# MONITORING ENDPOINTS (Admin token)
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_admin_auth)])
async def detailed_health(request: Request):
    return await request.app.state.health_checker.run_checks(include_non_critical=True)


@app.get("/metrics", dependencies=[Depends(require_admin_auth)])
def metrics():
    collector = get_metrics_collector()
    return collector.get_metrics()


# ============================================================================
# CHANNEL ENDPOINTS (Admin token + rate limit)
# ============================================================================

@app.post(
    "/t/{tenant_id}/agents/{agent_id}/channel/connect",
    dependencies=[Depends(rate_limit_check)],
)
async def channel_connect(
    tenant_id: str,
    agent_id: str,
    actor: str = Depends(require_admin_auth),
    service: ChannelService = Depends(get_service),
):
    """
    Start pairing. Returns a QR code (data URL) to scan, or
    ``already_connected`` when the session is live.
    """
    result = await service.connect(tenant_id, agent_id, actor=actor)
    return {"success": True, **result.to_dict()}


@app.get(
    "/t/{tenant_id}/agents/{agent_id}/channel/status",
    dependencies=[Depends(rate_limit_check), Depends(require_admin_auth)],
)
async def channel_status(
    tenant_id: str,
    agent_id: str,
    service: ChannelService = Depends(get_service),
):
    status = await service.status(tenant_id, agent_id)
    return status.to_dict()


@app.post(
    "/t/{tenant_id}/agents/{agent_id}/channel/disconnect",
    dependencies=[Depends(rate_limit_check)],
)
async def channel_disconnect(
    tenant_id: str,
    agent_id: str,
    actor: str = Depends(require_admin_auth),
    service: ChannelService = Depends(get_service),
):
    summary = await service.disconnect(tenant_id, agent_id, actor=actor)
    return {
        "success": True,
        "message": "WhatsApp disconnected successfully",
        "details": summary.to_dict(),
    }


@app.post(
    "/t/{tenant_id}/agents/{agent_id}/channel/send",
    dependencies=[Depends(rate_limit_check), Depends(require_admin_auth)],
)
async def channel_send(
    tenant_id: str,
    agent_id: str,
    payload: SendIn,
    service: ChannelService = Depends(get_service),
):
    message_id = await service.send(tenant_id, agent_id, payload.to, payload.message)
    return {"success": True, "message_id": message_id}


@app.get(
    "/t/{tenant_id}/agents/{agent_id}/channel/messages",
    dependencies=[Depends(rate_limit_check), Depends(require_admin_auth)],
)
async def channel_messages(
    tenant_id: str,
    agent_id: str,
    limit: int = Query(50),
    skip: int = Query(0),
    service: ChannelService = Depends(get_service),
):
    conversations = await service.list_messages(tenant_id, agent_id, limit=limit, skip=skip)
    return {
        "conversations": [asdict(c) for c in conversations],
        "limit": limit,
        "skip": skip,
    }


@app.get(
    "/t/{tenant_id}/channel/connections",
    dependencies=[Depends(rate_limit_check), Depends(require_admin_auth)],
)
async def channel_connections(
    tenant_id: str,
    service: ChannelService = Depends(get_service),
):
    records = await service.list_connections(tenant_id)
    return {"connections": [asdict(r) for r in records]}


# ============================================================================
# CATCH-ALL (Return 404 for unknown routes)
# ============================================================================

@app.api_route("/{path:path}", methods=["GET", "POST", "PUT", "DELETE", "PATCH"])
async def catch_all(path: str):
    """Generic 404 without revealing information."""
    logger.warning(f"404 - Unknown route accessed: {path}")
    raise HTTPException(status_code=404, detail="Not found")


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "chatrelay.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
