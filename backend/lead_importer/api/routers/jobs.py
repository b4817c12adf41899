"""Import job lifecycle endpoints: mapping, options, start, cancel, resume, reports."""
from __future__ import annotations

import csv
import io
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import Response
from kombu.exceptions import KombuError
from redis.exceptions import RedisError
from sqlalchemy import select
from sqlalchemy.orm import Session

from lead_importer.api.dependencies.db import get_session
from lead_importer.api.routers.job_helpers import get_job_or_404, serialize_job
from lead_importer.api.schemas.job import ImportJobStatus, ImportOptionsUpdate, MappingUpdate
from lead_importer.db.models.import_job import ImportJob
from lead_importer.db.models.import_row import ImportRow
from lead_importer.services import job_state, queue_client
from lead_importer.services.column_mapping import (
    LEAD_FIELDS,
    check_required_mappings,
    mapping_summary,
)
from lead_importer.services.import_types import ColumnMappingConfig, JobStatus, RowStatus
from lead_importer.services.lead_records import STATUS_LABELS
from lead_importer.services.progress_tracker import fetch_progress

logger = logging.getLogger(__name__)

router = APIRouter()

OPTION_EDITABLE_STATUSES = (
    JobStatus.PENDING.value,
    JobStatus.QUEUED.value,
    JobStatus.PARSING.value,
)
QUEUE_ERRORS = (KombuError, RedisError, OSError)


def _conflict(job: ImportJob, action: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Cannot {action} a job that is {job.status}",
    )


@router.get(
    "/",
    summary="List import jobs",
    response_model=list[ImportJobStatus],
)
async def list_jobs(
    limit: int = Query(50, ge=1, le=500, description="Maximum number of jobs to return"),
    status_filter: str | None = Query(None, alias="status", description="Filter by job status"),
    owner_id: str | None = Query(None, description="Filter by uploader"),
    db: Session = Depends(get_session),
) -> list[ImportJobStatus]:
    """Newest first, each with its latest progress snapshot."""
    query = select(ImportJob)
    if status_filter:
        query = query.where(ImportJob.status == status_filter)
    if owner_id:
        query = query.where(ImportJob.created_by == owner_id)
    jobs = db.scalars(query.order_by(ImportJob.created_at.desc()).limit(limit)).all()
    return [serialize_job(job, fetch_progress(job.id)) for job in jobs]


@router.get(
    "/{job_id}",
    summary="Fetch job state, counters and latest progress",
    response_model=ImportJobStatus,
)
async def get_job(job_id: str, db: Session = Depends(get_session)) -> ImportJobStatus:
    job = get_job_or_404(db, job_id)
    return serialize_job(job, fetch_progress(job_id))


@router.put(
    "/{job_id}/mapping",
    summary="Replace the column mapping of a pending job",
    response_model=ImportJobStatus,
)
async def update_mapping(
    job_id: str,
    payload: MappingUpdate,
    db: Session = Depends(get_session),
) -> ImportJobStatus:
    job = get_job_or_404(db, job_id)
    targets = [m.target_field for m in payload.mappings if m.target_field]
    unknown = sorted(set(targets) - set(LEAD_FIELDS))
    if unknown:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown target field(s): {', '.join(unknown)}",
        )
    if len(targets) != len(set(targets)):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Each lead field can be mapped from one column only",
        )

    config = ColumnMappingConfig(
        mappings=tuple(sorted(payload.mappings, key=lambda m: m.source_index)),
        sheet_name=payload.sheet_name,
        delimiter=payload.delimiter,
        encoding=payload.encoding,
    )
    meta = {
        **(job.meta or {}),
        "mapping_summary": mapping_summary(config.mappings),
        "mapping_check": check_required_mappings(config.mappings),
    }
    if not job_state.update_if_status(
        db,
        job_id,
        (JobStatus.PENDING,),
        column_mapping=config.model_dump(mode="json"),
        meta=meta,
    ):
        raise _conflict(job, "edit the mapping of")
    db.commit()
    job = job_state.load_job(db, job_id)
    return serialize_job(job, fetch_progress(job_id))


@router.patch(
    "/{job_id}/options",
    summary="Set assignment and duplicate handling before commit",
    response_model=ImportJobStatus,
)
async def update_options(
    job_id: str,
    payload: ImportOptionsUpdate,
    db: Session = Depends(get_session),
) -> ImportJobStatus:
    job = get_job_or_404(db, job_id)
    if payload.default_status and payload.default_status not in STATUS_LABELS:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown lead status: {payload.default_status}",
        )
    values = {}
    if payload.assignment is not None:
        values["assignment_config"] = payload.assignment.model_dump(mode="json")
    if payload.duplicates is not None:
        values["duplicate_config"] = payload.duplicates.model_dump(mode="json")
    if payload.default_status is not None:
        values["default_status"] = payload.default_status
    if payload.default_source is not None:
        values["default_source"] = payload.default_source
    if not job_state.update_if_status(db, job_id, OPTION_EDITABLE_STATUSES, **values):
        raise _conflict(job, "change the options of")
    db.commit()
    job = job_state.load_job(db, job_id)
    return serialize_job(job, fetch_progress(job_id))


@router.post(
    "/{job_id}/start",
    summary="Queue a pending job for parsing",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportJobStatus,
)
async def start_import(job_id: str, db: Session = Depends(get_session)) -> ImportJobStatus:
    job = get_job_or_404(db, job_id)
    mapping = ColumnMappingConfig.model_validate(job.column_mapping or {})
    if not check_required_mappings(mapping.mappings)["has_contact_field"]:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Map at least one of email, phone or external id before starting",
        )
    if not job_state.transition(db, job_id, (JobStatus.PENDING,), JobStatus.QUEUED):
        raise _conflict(job, "start")
    db.commit()

    try:
        queue_client.enqueue_parse_job(job_id)
    except QUEUE_ERRORS as exc:
        logger.error(f"Error enqueueing parse for job {job_id}: {exc}", exc_info=True)
        job_state.mark_failed(db, job_id, "Failed to enqueue parse")
        db.commit()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start import process",
        ) from exc

    job = job_state.load_job(db, job_id)
    return serialize_job(job, fetch_progress(job_id))


@router.post(
    "/{job_id}/cancel",
    summary="Cancel a job that has not reached a terminal state",
    response_model=ImportJobStatus,
)
async def cancel_import(job_id: str, db: Session = Depends(get_session)) -> ImportJobStatus:
    job = get_job_or_404(db, job_id)
    if not job_state.cancel_job(db, job_id):
        raise _conflict(job, "cancel")
    db.commit()
    job = job_state.load_job(db, job_id)
    logger.info(f"Job {job_id} cancelled by request")
    return serialize_job(job, {"message": "Import cancelled"})


@router.post(
    "/{job_id}/resume",
    summary="Re-publish the queue message for the job's current phase",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=ImportJobStatus,
)
async def resume_import(job_id: str, db: Session = Depends(get_session)) -> ImportJobStatus:
    job = get_job_or_404(db, job_id)
    try:
        if job.status in (JobStatus.QUEUED.value, JobStatus.PARSING.value):
            checkpoint = job_state.read_checkpoint(job)
            queue_client.enqueue_parse_job(
                job_id, checkpoint.chunk_number if checkpoint else None
            )
        elif job.status in (JobStatus.READY.value, JobStatus.IMPORTING.value):
            queue_client.enqueue_commit_job(queue_client.commit_message_for(job))
        else:
            raise _conflict(job, "resume")
    except QUEUE_ERRORS as exc:
        logger.error(f"Error re-enqueueing job {job_id}: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Queue unavailable, try again",
        ) from exc
    return serialize_job(job, fetch_progress(job_id))


@router.get(
    "/{job_id}/error-report",
    summary="Download invalid rows as CSV",
)
async def error_report(job_id: str, db: Session = Depends(get_session)) -> Response:
    job = get_job_or_404(db, job_id)
    rows = db.scalars(
        select(ImportRow)
        .where(
            ImportRow.import_job_id == job_id,
            ImportRow.status == RowStatus.INVALID.value,
        )
        .order_by(ImportRow.row_number)
    ).all()

    columns: list[str] = []
    for row in rows:
        for key in row.raw_data or {}:
            if key not in columns:
                columns.append(key)

    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(["row_number", "errors", *columns])
    for row in rows:
        errors = "; ".join(
            f"{field}: {message}" for field, message in (row.validation_errors or {}).items()
        )
        raw = row.raw_data or {}
        writer.writerow([row.row_number, errors, *(raw.get(column, "") for column in columns)])

    filename = f"errors_{job.file_name.rsplit('.', 1)[0]}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
