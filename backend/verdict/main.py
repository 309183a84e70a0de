"""
Verdict API - FastAPI Backend

Outcome resolution and creator scoring: adjudicates matured insights
against market data and ranks creators by calibrated accuracy.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import structlog

from verdict.routers import resolution, scores
from verdict.infrastructure.config import get_settings
from verdict.infrastructure.database import close_database, get_session, init_database, is_initialized
from verdict.infrastructure.exceptions import register_exception_handlers
from verdict.infrastructure.startup import last_startup_report

# Configure structured logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.dev.ConsoleRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("verdict_api_starting")
    settings = get_settings()
    logger.info(
        "configuration_loaded",
        resolution_enabled=settings.resolution_enabled,
        sources=settings.source_order,
    )

    if not is_initialized():
        await init_database(settings.database_url)

    from verdict.infrastructure.startup import run_startup_checks
    checks_passed = await run_startup_checks()
    if not checks_passed:
        logger.error("startup_checks_failed_scheduler_not_started")
    elif settings.scheduler_enabled:
        try:
            from verdict.services.scheduler_service import start_scheduler
            await start_scheduler()
        except Exception as e:
            logger.warning("scheduler_start_failed", error=str(e))

    yield

    try:
        from verdict.services.scheduler_service import stop_scheduler
        await stop_scheduler()
    except Exception as e:
        logger.warning("scheduler_stop_failed", error=str(e))

    from verdict.services.resolution_engine import get_resolution_engine
    await get_resolution_engine().close()
    await close_database()
    logger.info("verdict_api_stopped")


app = FastAPI(
    title="Verdict API",
    description="Outcome resolution and creator scoring for published insights",
    version="1.0.0",
    lifespan=lifespan,
)

# Register global exception handlers
register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(resolution.router, prefix="/api/resolve", tags=["Resolution"])
app.include_router(scores.router, prefix="/api", tags=["Scores"])


@app.get("/")
async def root():
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "Verdict API",
        "version": "1.0.0"
    }


@app.get("/health")
async def health():
    """Detailed health check."""
    settings = get_settings()
    return {
        "status": "healthy",
        "components": {
            "api": "ok",
            "database": "ok" if is_initialized() else "not_initialized",
            "resolution": "enabled" if settings.resolution_enabled else "disabled",
        },
        "startup_checks": last_startup_report(),
    }


@app.get("/health/live")
async def health_live():
    """Liveness probe: process is running."""
    return {"alive": True}


@app.get("/health/ready")
async def health_ready():
    """
    Readiness probe: checks critical dependencies.
    Returns 503 if the database is unreachable.
    """
    from sqlalchemy import text

    checks = {}
    is_ready = True

    try:
        async with get_session() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        logger.warning("readiness_database_failed", error=str(e))
        checks["database"] = "unavailable"
        is_ready = False

    try:
        from verdict.services.scheduler_service import get_scheduler_service
        checks["scheduler"] = "ok" if get_scheduler_service()._running else "stopped"
    except Exception:
        checks["scheduler"] = "error"

    return JSONResponse(
        status_code=200 if is_ready else 503,
        content={
            "ready": is_ready,
            "checks": checks,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    )
