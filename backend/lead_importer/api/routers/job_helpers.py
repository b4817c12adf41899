"""Shared helpers for shaping import job responses."""
from __future__ import annotations

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from lead_importer.api.schemas.job import ImportJobStatus
from lead_importer.db.models.import_job import ImportJob


def get_job_or_404(db: Session, job_id: str) -> ImportJob:
    job = db.get(ImportJob, job_id)
    if not job:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


def serialize_job(job: ImportJob, progress_payload: dict | None) -> ImportJobStatus:
    """Combine DB state + cached progress snapshot into a response schema.

    The database is authoritative for status and counters; the snapshot
    only contributes the progress fraction and message.
    """
    progress_payload = progress_payload or {}

    progress = progress_payload.get("progress")
    if progress is None and job.status == "completed":
        progress = 1.0

    message = progress_payload.get("message")
    if not message:
        message = f"{job.status}: {job.processed_rows or 0} rows parsed"

    return ImportJobStatus(
        id=job.id,
        status=job.status,
        file_name=job.file_name,
        file_type=job.file_type,
        created_by=job.created_by,
        progress=progress,
        message=message,
        total_rows=job.total_rows or 0,
        valid_rows=job.valid_rows or 0,
        invalid_rows=job.invalid_rows or 0,
        imported_rows=job.imported_rows or 0,
        skipped_rows=job.skipped_rows or 0,
        processed_rows=job.processed_rows or 0,
        current_chunk=job.current_chunk or 0,
        checkpoint=job.checkpoint,
        column_mapping=job.column_mapping,
        assignment_config=job.assignment_config,
        duplicate_config=job.duplicate_config,
        error_message=job.error_message,
        created_at=job.created_at,
        started_at=job.started_at,
        completed_at=job.completed_at,
        meta=job.meta or {},
    )
