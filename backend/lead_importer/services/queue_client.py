"""Publish parse and commit messages onto the import queue."""

from __future__ import annotations

import logging
from typing import Any

from lead_importer.core.config import get_settings
from lead_importer.db.models.import_job import ImportJob
from lead_importer.services.import_types import (
    AssignmentConfig,
    CommitMessage,
    DuplicateConfig,
    ParseMessage,
)

logger = logging.getLogger(__name__)

PARSE_PATH = "/api/import/parse"
COMMIT_PATH = "/api/import/commit"


def publish_message(path: str, payload: dict[str, Any]) -> None:
    """Hand a message to the delivery task; broker errors propagate."""
    from lead_importer.workers.tasks.queue_delivery import deliver_queue_message

    deliver_queue_message.apply_async(args=(path, payload), queue="imports")


def enqueue_parse_job(job_id: str, start_chunk: int | None = None) -> ParseMessage:
    message = ParseMessage(job_id=job_id, start_chunk=start_chunk)
    publish_message(PARSE_PATH, message.model_dump(mode="json", by_alias=True, exclude_none=True))
    logger.info(f"Enqueued parse for job {job_id} (start chunk {start_chunk})")
    return message


def commit_message_for(job: ImportJob) -> CommitMessage:
    """Build the commit message from the job's stored options (defaults when absent)."""
    return CommitMessage(
        job_id=job.id,
        assignment=AssignmentConfig.model_validate(job.assignment_config or {}),
        duplicates=DuplicateConfig.model_validate(job.duplicate_config or {}),
        default_status=job.default_status or get_settings().default_lead_status,
        default_source=job.default_source or f"Import {job.file_name}",
    )


def enqueue_commit_job(message: CommitMessage) -> CommitMessage:
    publish_message(COMMIT_PATH, message.model_dump(mode="json", by_alias=True))
    logger.info(f"Enqueued commit for job {message.job_id}")
    return message
