"""Liveness and readiness probes for the API and worker deployments."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from fastapi import APIRouter, HTTPException, status
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from lead_importer.core.config import get_settings
from lead_importer.db.session import engine
from lead_importer.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/health", tags=["health"])


@router.get("/live", summary="Liveness probe")
async def live() -> dict[str, str]:
    """Indicates the API process is running."""
    return {"status": "ok", "service": get_settings().worker_name}


def _ping_database() -> None:
    with engine.connect() as conn:
        conn.execute(text("SELECT 1")).fetchone()


def _ping_redis(url: str) -> None:
    client = create_redis_client(url, decode_responses=True, socket_connect_timeout=2)
    try:
        client.ping()
    finally:
        client.close()


def _probe(label: str, ping: Callable[[], None], errors: tuple[type[Exception], ...]) -> dict[str, str]:
    try:
        ping()
    except errors as e:
        logger.error(f"{label} health check failed: {e}")
        return {"status": "unhealthy", "message": f"{label} connection failed: {e}"}
    return {"status": "healthy", "message": f"{label} connection successful"}


@router.get("/ready", summary="Readiness probe")
async def ready() -> dict[str, Any]:
    """Check the database, Redis and the Celery broker.

    The broker is reported but does not fail readiness: workers may run
    in a separate deployment.
    """
    settings = get_settings()
    checks = {
        "database": _probe("Database", _ping_database, (SQLAlchemyError,)),
        "redis": _probe("Redis", lambda: _ping_redis(settings.redis_url), (RedisError,)),
        "celery_broker": _probe(
            "Celery broker",
            lambda: _ping_redis(settings.celery_broker_url or settings.redis_url),
            (RedisError,),
        ),
    }
    healthy = all(checks[name]["status"] == "healthy" for name in ("database", "redis"))
    body = {
        "status": "ok" if healthy else "unhealthy",
        "service": settings.worker_name,
        "checks": checks,
    }
    if not healthy:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=body)
    return body
