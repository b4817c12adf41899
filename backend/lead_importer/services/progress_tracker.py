"""Shared helpers for publishing import progress snapshots to Redis."""

from __future__ import annotations

import json
import logging
from datetime import timedelta
from typing import Any

from redis.exceptions import RedisError

from lead_importer.core.config import get_settings
from lead_importer.db.models.import_job import ImportJob
from lead_importer.utils.redis_client import create_redis_client

logger = logging.getLogger(__name__)

settings = get_settings()
redis_client = create_redis_client(settings.redis_url, decode_responses=True)
PROGRESS_PREFIX = "imports:progress:"
PROGRESS_TTL = timedelta(hours=24)


def _key(job_id: str) -> str:
    return f"{PROGRESS_PREFIX}{job_id}"


def job_counters(job: ImportJob) -> dict[str, int]:
    return {
        "total": job.total_rows or 0,
        "valid": job.valid_rows or 0,
        "invalid": job.invalid_rows or 0,
        "imported": job.imported_rows or 0,
        "skipped": job.skipped_rows or 0,
        "processed": job.processed_rows or 0,
    }


def publish_progress(
    job_id: str,
    progress: float,
    message: str | None = None,
    *,
    status: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """Persist a progress snapshot so dashboards can poll it."""
    payload = {
        "job_id": job_id,
        "progress": max(0.0, min(progress, 1.0)),
        "message": message,
        "status": status,
        "meta": meta or {},
    }
    try:
        redis_client.set(
            _key(job_id),
            json.dumps(payload),
            ex=int(PROGRESS_TTL.total_seconds()),
        )
    except RedisError as exc:
        # Redis availability should not break ingestion.
        logger.debug(f"Progress snapshot for job {job_id} not published: {exc}")


def publish_job_progress(job: ImportJob, message: str | None = None) -> None:
    """Snapshot the job's persisted counters.

    Parsing has no known total until the file ends, so progress only
    moves during commit (imported + skipped over valid) and at the end.
    """
    counters = job_counters(job)
    if job.status in ("completed", "ready"):
        progress = 1.0 if job.status == "completed" else 0.5
    elif job.status == "importing" and counters["valid"]:
        progress = 0.5 + 0.5 * (counters["imported"] + counters["skipped"]) / counters["valid"]
    else:
        progress = 0.0
    publish_progress(job.id, progress, message, status=job.status, meta=counters)


def fetch_progress(job_id: str) -> dict[str, Any]:
    """Return the latest snapshot used by the job endpoints."""
    try:
        raw = redis_client.get(_key(job_id))
    except RedisError:
        return {}
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}
