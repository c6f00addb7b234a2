# app/transport/http_app.py
"""
HTTP application: probes, metrics and admin operations.

Security layers:
1. Public: /health, /ready (minimal information)
2. Metrics: /metrics, /health/detailed (metrics token)
3. Admin: /admin/* (admin bearer token)

With ``RUN_MODE=all`` (default) the dispatch scheduler runs inside this
process; ``RUN_MODE=web`` serves HTTP only and leaves scheduling to
``python -m app.worker``.
"""
from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware

from app.config import settings
from app.core.dispatch.engine import DispatchEngine
from app.infra.db_async import close_pool, init_pool
from app.infra.health_checks_async import get_async_health_checker
from app.infra.logging_config import setup_logging, get_logger
from app.infra.metrics import get_metrics_collector
from app.infra.scheduler import DispatchScheduler
from app.transport.middleware import (
    RequestIDMiddleware,
    RequestLoggingMiddleware,
    ErrorHandlingMiddleware,
)
from app.transport.security import (
    require_admin_auth,
    require_metrics_auth,
    check_configured_tokens,
    SecurityHeaders,
    sanitize_error_message,
)
from app.worker import build_dispatch_engine

setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_engine(request: Request) -> DispatchEngine:
    """DispatchEngine built in the lifespan"""
    return request.app.state.engine


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        return SecurityHeaders.add_security_headers(await call_next(request))


class TestNotificationRequest(BaseModel):
    """Body of POST /admin/notifications/test (``userId`` accepted as an alias)."""
    model_config = ConfigDict(populate_by_name=True)

    user_id: uuid.UUID = Field(..., alias="userId")
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=1000)

    # Not a pytest test class despite the name
    __test__ = False


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Pool, engine and (depending on RUN_MODE) the scheduler"""

    logger.info(
        f"Starting push dispatch: env={settings.app_env}, run_mode={settings.run_mode}"
    )

    if settings.is_production and settings.log_level.upper() == "DEBUG":
        logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
        raise RuntimeError("LOG_LEVEL=DEBUG in production")

    await init_pool()

    check_configured_tokens()

    engine = build_dispatch_engine(settings)
    fastapi_app.state.engine = engine

    # Only one process should run the timers
    scheduler = None
    if settings.run_mode in ("all", "worker"):
        scheduler = DispatchScheduler.from_settings(engine, settings)
        await scheduler.start()
    else:
        logger.info(f"Scheduler skipped (run_mode={settings.run_mode})")
    fastapi_app.state.scheduler = scheduler

    logger.info("Startup complete")

    yield

    logger.info("Shutting down")

    if scheduler is not None:
        await scheduler.stop()

    await close_pool()
    logger.info("Shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Push Dispatch",
    description="Scheduled push notification dispatcher",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
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
    """Uniform {"error": ...} body for HTTP errors"""
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} -> {exc.status_code}: {exc.detail}")

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled {exc.__class__.__name__} on {request.url.path}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness probe. Returns minimal information."""
    return {"status": "healthy"}


@app.get("/ready")
async def readiness():
    """Readiness probe: database reachable and dispatch tables present."""
    result = await get_async_health_checker().run_checks(include_non_critical=False)

    if result["status"] == "unhealthy":
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy"}
        )

    return {"status": "healthy"}


# ============================================================================
# METRICS ENDPOINTS
# ============================================================================

@app.get("/health/detailed", dependencies=[Depends(require_metrics_auth)])
async def detailed_health(request: Request):
    """All health checks plus scheduler state."""
    health_checker = get_async_health_checker()
    result = await health_checker.run_checks(include_non_critical=True)

    scheduler = getattr(request.app.state, "scheduler", None)
    result["scheduler"] = {
        "running": bool(scheduler and scheduler.running),
        "inflight": scheduler.inflight if scheduler else 0,
    }
    return result


@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics():
    """Counters and histograms collected in this process."""
    return get_metrics_collector().get_metrics()


# ============================================================================
# ADMIN ENDPOINTS
# ============================================================================

@app.post("/admin/notifications/test", dependencies=[Depends(require_admin_auth)])
async def admin_send_test_notification(
    payload: TestNotificationRequest,
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Send a one-off push to every active device of a user.

    200 when at least one device accepted it, 404 when the user has no
    active tokens, 502 otherwise.
    """
    result = await engine.send_test(str(payload.user_id), payload.title, payload.body)

    if result.no_endpoints:
        raise HTTPException(status_code=404, detail=result.message)

    content = {"success": result.success, "message": result.message}
    if not result.success:
        return JSONResponse(status_code=502, content=content)
    return content


@app.post("/admin/dispatch/run", dependencies=[Depends(require_admin_auth)])
async def admin_run_dispatch(engine: DispatchEngine = Depends(get_engine)):
    """Run one dispatch cycle now and return its summary."""
    logger.info("Manual dispatch cycle triggered")
    summary = await engine.run_dispatch_cycle()
    return summary.to_dict()


@app.post("/admin/retention/run", dependencies=[Depends(require_admin_auth)])
async def admin_run_retention(engine: DispatchEngine = Depends(get_engine)):
    """Run the retention cleanup now."""
    logger.info("Manual retention cleanup triggered")
    result = await engine.run_retention_cleanup()
    content = result.to_dict()
    if not result.ok:
        return JSONResponse(status_code=503, content=content)
    return content


@app.post("/admin/metrics/reset", dependencies=[Depends(require_admin_auth)])
def admin_reset_metrics():
    """Reset in-process metrics."""
    logger.warning("Metrics reset via admin endpoint")
    get_metrics_collector().reset()
    return {"ok": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "app.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
