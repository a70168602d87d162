# app/main.py
"""
Application entry point: backend lifecycle, service container and routers.

Startup never fails because Redis or Postgres is down. Each backend that does
not come up is replaced by its in-process counterpart and logged, except when
MESSAGE_STORE_FALLBACK_ENABLED is off and the configured database is missing.
"""

import asyncio
import contextlib
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from app.config import settings
from app.db.pool import db_pool
from app.dependencies import build_services
from app.infrastructure.observability.logging import get_logger, setup_logging
from app.jobs.presence_sweep_job import start_presence_sweep_scheduler
from app.middleware import RequestContextMiddleware
from app.repositories.message_repository import PostgresMessageRepository
from app.routes import health, messages, presence, realtime
from app.services.infrastructure.encryption_service import validate_encryption_config
from app.services.infrastructure.redis_client import fast_redis

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


async def _start_database() -> bool:
    """Bring up the pool and the messages table. False means run without Postgres."""
    if not db_pool.configured:
        logger.warning("DATABASE_URL not configured, messages kept in memory")
        return False

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        await PostgresMessageRepository().ensure_schema()
        return True
    except Exception as e:
        logger.error("Database unavailable at startup", error=str(e))
        if not settings.MESSAGE_STORE_FALLBACK_ENABLED:
            raise
        return False


async def _start_redis() -> bool:
    if not fast_redis.configured:
        return False

    try:
        logger.info("Initializing Redis connection")
        await fast_redis.initialize()
        return True
    except Exception as e:
        logger.error("Redis unavailable at startup, using in-process presence", error=str(e))
        return False


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    # Startup sequence
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    database_ready = await _start_database()
    if database_ready:
        startup_tasks.append("database_pool")

    if await _start_redis():
        startup_tasks.append("redis")

    if validate_encryption_config():
        startup_tasks.append("encryption")

    services = build_services(fast_redis, database_ready=database_ready)
    app.state.services = services

    sweep_task = asyncio.create_task(
        start_presence_sweep_scheduler(services.hub, settings.PRESENCE_SWEEP_INTERVAL_SECONDS)
    )
    startup_tasks.append("presence_sweep")

    logger.info(
        "Services initialized",
        services=startup_tasks,
        message_backend=getattr(services.repository, "name", "unknown"),
        presence_backend=services.presence.last_backend,
    )

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    sweep_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweep_task

    try:
        await services.hub.close()
    except Exception as e:
        logger.error("Error closing realtime hub", error=str(e))
        shutdown_errors.append(f"Realtime: {e}")

    # Close Redis first (faster)
    try:
        logger.info("Closing Redis connection")
        await fast_redis.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="Messaging Core",
    description="Real-time presence and direct messaging",
    version="0.1.0",
    lifespan=lifespan,
)

# Include routers
app.include_router(health.router)
app.include_router(messages.router)
app.include_router(presence.router)
app.include_router(realtime.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


# Added last so it wraps log_requests and the request id is bound for it
app.add_middleware(RequestContextMiddleware)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
