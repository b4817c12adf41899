"""Endpoint for uploading an import file and creating its job."""

from __future__ import annotations

import io
import logging
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lead_importer.api.dependencies.db import get_session
from lead_importer.api.routers.job_helpers import serialize_job
from lead_importer.api.schemas.job import ImportJobStatus
from lead_importer.core.config import get_settings
from lead_importer.db.models.import_job import ImportJob
from lead_importer.services.column_mapping import (
    build_mapping_config,
    check_required_mappings,
    mapping_summary,
)
from lead_importer.services.import_types import ColumnMappingConfig, JobStatus
from lead_importer.services.lead_parser import LeadFileParseError, read_headers
from lead_importer.services.progress_tracker import publish_progress
from lead_importer.storage import blob_store

logger = logging.getLogger(__name__)

router = APIRouter()

FILE_TYPES = {".csv": "csv", ".txt": "csv", ".tsv": "csv", ".xlsx": "xlsx"}
REUSABLE_STATUSES = (JobStatus.FAILED.value, JobStatus.CANCELLED.value)


def _file_type(filename: str) -> str:
    file_type = FILE_TYPES.get(Path(filename).suffix.lower())
    if file_type is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV and XLSX uploads are supported",
        )
    return file_type


@router.post(
    "/upload",
    summary="Upload a lead file and create a pending import job",
    status_code=status.HTTP_201_CREATED,
    response_model=ImportJobStatus,
)
async def upload_import_file(
    file: UploadFile = File(...),
    owner_id: str = Form(..., min_length=1),
    sheet_name: str | None = Form(None),
    db: Session = Depends(get_session),
) -> ImportJobStatus:
    """Store the file, reject re-uploads of live jobs, and auto-detect the mapping."""
    if not file.filename:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Filename is required"
        )
    file_type = _file_type(file.filename)

    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="File is empty")
    if len(content) > get_settings().max_upload_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE, detail="File is too large"
        )

    file_hash = blob_store.content_hash(content)
    existing = db.scalars(
        select(ImportJob).where(
            ImportJob.created_by == owner_id,
            ImportJob.file_hash == file_hash,
            ImportJob.status.not_in(REUSABLE_STATUSES),
        )
    ).first()
    if existing:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": "This file was already imported", "job_id": existing.id},
        )

    try:
        headers, _sample = read_headers(
            io.BytesIO(content), file_type, ColumnMappingConfig(sheet_name=sheet_name)
        )
    except LeadFileParseError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    mapping = build_mapping_config(headers, sheet_name=sheet_name)

    try:
        storage_path, _, size = blob_store.save_upload(
            io.BytesIO(content), owner_id, file.filename
        )
    except OSError as exc:
        logger.error(f"OS error staging file: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        ) from exc

    try:
        job = ImportJob(
            created_by=owner_id,
            file_name=file.filename,
            file_type=file_type,
            storage_path=storage_path,
            file_hash=file_hash,
            file_size=size,
            status=JobStatus.PENDING.value,
            column_mapping=mapping.model_dump(mode="json"),
            meta={
                "mapping_summary": mapping_summary(mapping.mappings),
                "mapping_check": check_required_mappings(mapping.mappings),
            },
        )
        db.add(job)
        db.commit()
        db.refresh(job)
    except SQLAlchemyError as exc:
        db.rollback()
        blob_store.delete_upload(storage_path)
        logger.error(f"Database error creating import job: {exc}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create import job",
        ) from exc

    publish_progress(job.id, 0.0, "Uploaded", status=job.status, meta={})
    logger.info(f"Created import job {job.id} for file {file.filename}")
    return serialize_job(job, progress_payload={"progress": 0.0, "message": "Uploaded"})
