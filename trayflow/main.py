"""FastAPI application entrypoint — lifespan, routers, middleware."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis
from redis.exceptions import RedisError
from sqlalchemy import text

from trayflow.config import get_settings
from trayflow.database import async_session_factory, engine
from trayflow.middleware.logging import RequestLoggingMiddleware, configure_structured_logging
from trayflow.routes import batches, crops, plans, stages, tasks, transitions
from trayflow.services.stage_registry import StageRegistry, ensure_default_stages

logger = structlog.get_logger("trayflow")

API_VERSION = "0.1.0"


async def _bootstrap_stages() -> int:
    """Seed the default stage catalog if needed and validate the ordering."""
    async with async_session_factory() as session:
        seeded = 0
        if get_settings().seed_default_stages_on_startup:
            seeded = await ensure_default_stages(session)
            await session.commit()
        registry = await StageRegistry.load(session)
        logger.info(
            "stage_registry_loaded",
            stages=[stage.code for stage in registry.stages],
            seeded=seeded,
        )
        return len(registry.stages)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application startup / shutdown lifecycle.

    Startup:
      1. Initialize structured logging
      2. Verify the database connection
      3. Seed and validate the stage registry
      4. Connect to Redis (optional: locks and events fall back to in-process)

    Shutdown:
      1. Close Redis connection pool
      2. Dispose SQLAlchemy engine
    """
    configure_structured_logging()
    settings = get_settings()
    logger.info("trayflow_starting", log_level=settings.log_level)

    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        app.state.stage_count = await _bootstrap_stages()
    except Exception as exc:
        logger.exception("startup_failure", error=str(exc))
        raise

    redis: Redis | None = Redis.from_url(settings.redis_url, decode_responses=True)
    try:
        await redis.ping()
    except (RedisError, OSError) as exc:
        logger.warning("redis_unavailable", error=str(exc))
        await redis.aclose()
        redis = None
    app.state.redis = redis

    yield

    logger.info("trayflow_shutting_down")
    if redis is not None:
        await redis.aclose()
    await engine.dispose()


app = FastAPI(
    title="Trayflow API",
    description=(
        "Microgreens crop lifecycle engine — stage transitions with an "
        "append-only audit log, derived tray timing, stage-driven task "
        "scheduling and order demand aggregation."
    ),
    version=API_VERSION,
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# ── Middleware ──────────────────────────────────────────────────────────────
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestLoggingMiddleware)


# ── Health check ────────────────────────────────────────────────────────────
@app.get("/health", tags=["system"])
async def health_check() -> dict[str, str]:
    """Basic health check — verifies the API process is alive."""
    return {
        "status": "ok",
        "service": "trayflow",
        "version": API_VERSION,
    }


async def _run_readiness_checks(app_: FastAPI) -> dict[str, dict[str, Any]]:
    checks: dict[str, dict[str, Any]] = {}
    try:
        async with engine.connect() as connection:
            await connection.execute(text("SELECT 1"))
        checks["database"] = {"ok": True, "message": "ok"}
    except Exception as exc:
        checks["database"] = {"ok": False, "message": str(exc)}

    redis = getattr(app_.state, "redis", None)
    if redis is None:
        # Redis is optional: locks and events fall back to in-process.
        checks["redis"] = {"ok": True, "message": "disabled"}
    else:
        try:
            await redis.ping()
            checks["redis"] = {"ok": True, "message": "ok"}
        except (RedisError, OSError) as exc:
            checks["redis"] = {"ok": False, "message": str(exc)}
    return checks


@app.get("/health/ready", tags=["system"])
async def readiness_check() -> JSONResponse:
    """Readiness — database reachable and Redis healthy when configured."""
    checks = await _run_readiness_checks(app)
    healthy = all(check["ok"] for check in checks.values())
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={"status": "ok" if healthy else "degraded", "checks": checks},
    )


# ── Router registration ────────────────────────────────────────────────────
app.include_router(stages.router, prefix="/api/v1")
app.include_router(batches.router, prefix="/api/v1")
app.include_router(crops.router, prefix="/api/v1")
app.include_router(transitions.router, prefix="/api/v1")
app.include_router(tasks.router, prefix="/api/v1")
app.include_router(plans.router, prefix="/api/v1")
