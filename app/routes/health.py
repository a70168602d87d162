# app/routes/health.py
"""
Health check endpoints.

healthz answers while the process runs. readyz reports each backend; Redis
and Postgres being down degrades the service (memory fallbacks) rather than
making it unready, so overall_ok only fails when the message store has no
working backend at all.
"""

import time

from fastapi import APIRouter, Request

from app.config import settings
from app.db.pool import db_health_check
from app.infrastructure.observability.logging import log_health_check
from app.services.infrastructure.encryption_service import is_encryption_enabled

router = APIRouter(tags=["health"])


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "messaging-core"}


@router.get("/readyz")
async def readyz(request: Request):
    """Readiness check with per-backend detail."""
    services = request.app.state.services
    checks = {}
    overall_ok = True

    # 1) Redis
    t0 = time.time()
    if services.redis.configured:
        redis_ok = await services.redis.ping()
        checks["redis"] = {
            "ok": redis_ok,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        log_health_check("redis", redis_ok, checks["redis"]["latency_ms"])
    else:
        checks["redis"] = {"ok": False, "configured": False}

    # 2) Database pool
    t0 = time.time()
    db_health = await db_health_check()
    checks["database"] = {
        "ok": db_health.get("healthy", False),
        "configured": bool(settings.DATABASE_URL),
        "latency_ms": round((time.time() - t0) * 1000, 1),
    }
    if "pool_stats" in db_health:
        checks["database"]["pool_stats"] = db_health["pool_stats"]
    if not db_health.get("healthy", False):
        checks["database"]["error"] = db_health.get("error", "Database unhealthy")
    if settings.DATABASE_URL:
        log_health_check(
            "database",
            checks["database"]["ok"],
            checks["database"]["latency_ms"],
            error=checks["database"].get("error"),
        )

    # 3) Which backends are actually serving
    repository_name = getattr(services.repository, "name", "unknown")
    checks["backends"] = {
        "messages": repository_name,
        "presence": services.presence.last_backend,
        "cache": services.cache.backend_name,
    }
    if settings.DATABASE_URL and not checks["database"]["ok"]:
        overall_ok = "memory" in repository_name

    checks["configuration"] = {
        "environment": settings.environment,
        "encryption_enabled": is_encryption_enabled(),
        "verified_socket_identity": not settings.ALLOW_UNVERIFIED_SOCKET_IDENTITY,
    }

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}
