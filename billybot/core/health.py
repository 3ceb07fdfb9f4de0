"""
Health check utilities for monitoring application components.

Checks:
- Database connectivity
- Redis connectivity (OAuth state store, Celery broker)
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict

import redis.asyncio as redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


def _latency_ms(start_time: datetime) -> float:
    return round((datetime.now(timezone.utc) - start_time).total_seconds() * 1000, 2)


async def check_database(session_factory: async_sessionmaker[AsyncSession]) -> Dict[str, Any]:
    """
    Check PostgreSQL database connectivity.

    Returns:
        Dict with status, latency, and error (if any)
    """
    start_time = datetime.now(timezone.utc)

    try:
        async with session_factory() as session:
            result = await session.execute(text("SELECT 1"))
            result.scalar()
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

    return {"status": "healthy", "latency_ms": _latency_ms(start_time)}


async def check_redis(redis_client: redis.Redis) -> Dict[str, Any]:
    """
    Check Redis connectivity.

    Returns:
        Dict with status, latency, and error (if any)
    """
    start_time = datetime.now(timezone.utc)

    try:
        await redis_client.ping()
    except Exception as e:
        logger.error(f"Redis health check failed: {e}")
        return {"status": "unhealthy", "error": str(e)}

    return {"status": "healthy", "latency_ms": _latency_ms(start_time)}


async def get_health_metrics(session_factory, redis_client) -> Dict[str, Any]:
    """
    Overall status is 'unhealthy' if any component is down.
    """
    database = await check_database(session_factory)
    redis_status = await check_redis(redis_client)

    components = {"database": database, "redis": redis_status}
    healthy = all(component["status"] == "healthy" for component in components.values())

    return {
        "status": "healthy" if healthy else "unhealthy",
        "components": components,
    }
