"""
Health endpoints for load balancers and monitoring.

- GET /health       - liveness, always 200 while the process runs
- GET /health/ready - readiness: database, token signing, and Redis when it
                      backs the rate limiter

The tracking endpoints hide their own failures from recipients; readiness is
where those failures become visible.
"""
import logging
from datetime import datetime, timezone

from fastapi import APIRouter
from sqlalchemy import text

logger = logging.getLogger(__name__)
router = APIRouter(tags=["health"])


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


async def _database_ok() -> bool:
    from src.database import get_session_factory
    try:
        async with get_session_factory()() as session:
            await session.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Readiness: database unavailable: %s", str(e))
        return False


def _signing_ok() -> bool:
    from src.services.tracking_tokens import get_token_codec
    try:
        get_token_codec()
        return True
    except Exception as e:
        logger.error("Readiness: token codec unavailable: %s", str(e))
        return False


async def _redis_ok() -> bool:
    from src.utils.redis_client import get_redis
    try:
        await (await get_redis()).ping()
        return True
    except Exception as e:
        logger.warning("Readiness: redis unavailable: %s", str(e))
        return False


@router.get("/health")
async def health_check():
    return {"status": "healthy", "timestamp": _now(), "version": "1.0.0"}


@router.get("/health/ready")
async def readiness_check():
    from src.config import get_settings
    checks = {"database": await _database_ok(), "tracking": _signing_ok()}
    if get_settings().rate_limit_backend == "redis":
        checks["redis"] = await _redis_ok()

    return {
        "status": "ready" if all(checks.values()) else "degraded",
        "checks": checks,
        "timestamp": _now(),
    }
