"""Celery task delivering queue messages to the worker endpoints."""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from lead_importer.core.config import get_settings
from lead_importer.db.session import get_fresh_session
from lead_importer.services import job_state
from lead_importer.services.progress_tracker import publish_job_progress
from lead_importer.services.queue_dispatch import backoff_seconds, deliver_message
from lead_importer.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def dead_letter(job_id: str | None, error: str | None) -> None:
    """Fail the job once delivery retries are exhausted."""
    if not job_id:
        return
    session = get_fresh_session()
    try:
        if job_state.mark_failed(session, job_id, f"Queue delivery failed: {error}"):
            session.commit()
            job = job_state.load_job(session, job_id)
            if job is not None:
                publish_job_progress(job, "Import failed: queue delivery exhausted")
        else:
            session.rollback()
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(f"Could not dead-letter job {job_id}: {e}", exc_info=True)
        raise
    finally:
        session.close()


@celery_app.task(
    bind=True,
    name="lead_importer.workers.tasks.deliver_queue_message",
    max_retries=None,
)
def deliver_queue_message(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
    """POST one message, retrying 5xx and transport failures with backoff.

    4xx answers are final: the worker already recorded the terminal state.
    """
    result = deliver_message(path, payload)
    if result["success"]:
        return result

    job_id = payload.get("jobId")
    if not result["retryable"]:
        logger.warning(f"Queue message for job {job_id} dropped: {result['error']}")
        return result

    attempt = self.request.retries
    if attempt >= get_settings().queue_max_retries:
        logger.error(
            f"Queue message for job {job_id} exhausted {attempt} retries: {result['error']}"
        )
        dead_letter(job_id, result["error"])
        return result

    countdown = backoff_seconds(attempt)
    logger.warning(
        f"Queue message for job {job_id} failed ({result['error']}), "
        f"retry {attempt + 1} in {countdown}s"
    )
    raise self.retry(countdown=countdown)
