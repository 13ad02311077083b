"""
Health check service - dependency checks (DB, Redis, Celery broker, state machine).

Two levels:
- liveness: the process is up (no dependency checks)
- readiness: every external dependency plus the conversation state machine
"""
from typing import Any

import redis.asyncio as aioredis
from sqlalchemy import text

from app.core.config import settings
from app.core.logging import get_logger
from app.core.redis_client import get_redis
from app.db.database import AsyncSessionLocal
from app.state_machine.machine import get_state_machine

logger = get_logger(__name__)

_STATUS_HEALTHY = "healthy"
_STATUS_DEGRADED = "degraded"

_CHECK_OK = "ok"

# Filtered error messages, no infrastructure details
_ERROR_DB = "error: db_unavailable"
_ERROR_REDIS = "error: redis_unavailable"
_ERROR_CELERY = "error: celery_unavailable"
_ERROR_STATE_MACHINE = "error: state_machine_invalid"


async def _check_db() -> str:
    """Ping the database with a trivial query."""
    try:
        async with AsyncSessionLocal() as session:
            await session.execute(text("SELECT 1"))
        return _CHECK_OK
    except Exception as e:
        logger.warning("DB health check failed", extra_data={"error": str(e)})
        return _ERROR_DB


async def _check_redis() -> str:
    """PING the session cache."""
    try:
        client = await get_redis()
        await client.ping()
        return _CHECK_OK
    except Exception as e:
        logger.warning("Redis health check failed", extra_data={"error": str(e)})
        return _ERROR_REDIS


async def _check_celery() -> str:
    """PING the Celery broker."""
    try:
        client = aioredis.from_url(settings.CELERY_BROKER_URL, decode_responses=True)
        try:
            await client.ping()
            return _CHECK_OK
        finally:
            await client.aclose()
    except Exception as e:
        logger.warning("Celery health check failed", extra_data={"error": str(e)})
        return _ERROR_CELERY


def _check_state_machine() -> str:
    is_valid, errors = get_state_machine().validate_configuration()
    if is_valid:
        return _CHECK_OK
    logger.warning("State machine configuration invalid", extra_data={"errors": errors})
    return _ERROR_STATE_MACHINE


async def check_readiness() -> dict[str, Any]:
    """
    Full readiness check.

    Returns the overall status ("healthy" or "degraded") and one entry per
    dependency: db / redis / celery / state_machine, each "ok" or "error: ...".
    Redis being down degrades readiness, but conversations keep working on
    the database alone.
    """
    checks = {
        "db": await _check_db(),
        "redis": await _check_redis(),
        "celery": await _check_celery(),
        "state_machine": _check_state_machine(),
    }

    all_ok = all(v == _CHECK_OK for v in checks.values())
    overall_status = _STATUS_HEALTHY if all_ok else _STATUS_DEGRADED

    if not all_ok:
        logger.warning("Readiness check - system degraded", extra_data=checks)

    return {"status": overall_status, **checks}
