"""
Health check endpoints - used by load balancers, Docker healthcheck, and monitoring.

- GET /health       - basic liveness (always 200 if app running)
- GET /health/ready - readiness check (DB + Redis + worker heartbeats)
"""
import logging
from datetime import datetime, timezone
from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
from eventrelay.database import get_db
from eventrelay.services.enrichment import get_enrichment_dispatcher
from eventrelay.utils.redis_client import get_redis, heartbeat_key

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])

VERSION = "1.0.0"
MONITORED_WORKERS = ("webhook_worker", "rate_limit_sweeper")


@router.get("/health")
async def health_check():
    """Basic liveness check - returns 200 if the app is running."""
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": VERSION,
    }


@router.get("/health/ready")
async def readiness_check(
    db: AsyncSession = Depends(get_db),
):
    """
    Readiness check - verifies database and Redis connectivity.
    Worker heartbeats and enrichment stats are reported but are not critical:
    ingestion keeps working without them.
    """
    checks = {
        "database": await _check_database(db),
        "redis": await _check_redis(),
    }
    all_healthy = all(c["healthy"] for c in checks.values())

    return {
        "status": "ready" if all_healthy else "degraded",
        "checks": checks,
        "workers": await _check_workers(),
        "enrichment": get_enrichment_dispatcher().stats(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def _check_database(db: AsyncSession) -> dict:
    try:
        await db.execute(text("SELECT 1"))
        return {"healthy": True}
    except Exception as e:
        logger.error("Database health check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_redis() -> dict:
    try:
        redis = await get_redis()
        await redis.ping()
        return {"healthy": True}
    except Exception as e:
        logger.warning("Redis health check failed: %s", str(e))
        return {"healthy": False, "error": str(e)}


async def _check_workers() -> dict:
    """Worker heartbeat freshness - a key expires when its worker stops beating."""
    try:
        redis = await get_redis()
        workers = {}
        for name in MONITORED_WORKERS:
            heartbeat = await redis.get(heartbeat_key(name))
            workers[name] = {
                "healthy": heartbeat is not None,
                "last_heartbeat": heartbeat,
            }
        return {"healthy": all(w["healthy"] for w in workers.values()), "workers": workers}
    except Exception:
        return {"healthy": True, "note": "Unable to check worker heartbeats"}
