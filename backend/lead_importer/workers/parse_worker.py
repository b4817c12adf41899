"""Parse phase: stream the uploaded file into import rows, one checkpointed chunk at a time."""

from __future__ import annotations

import logging

from kombu.exceptions import KombuError
from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lead_importer.core.security import SignatureError
from lead_importer.db.models.import_row import ImportRow
from lead_importer.db.session import get_fresh_session
from lead_importer.services import job_state, queue_client
from lead_importer.services.import_types import (
    TERMINAL_STATUSES,
    Checkpoint,
    ColumnMappingConfig,
    JobStatus,
    RowStatus,
)
from lead_importer.services.lead_parser import LeadFileParseError, ParsedRow, iter_row_batches
from lead_importer.services.progress_tracker import publish_job_progress, publish_progress
from lead_importer.storage.blob_store import (
    BlobNotFoundError,
    create_signed_reference,
    open_signed_reference,
)
from lead_importer.workers.results import WorkerResult

logger = logging.getLogger(__name__)

PARSED_STATUSES = (JobStatus.READY.value, JobStatus.IMPORTING.value)


def _row_values(job_id: str, row: ParsedRow) -> dict:
    return {
        "import_job_id": job_id,
        "row_number": row.row_number,
        "chunk_number": row.chunk_number,
        "status": RowStatus.VALID.value if row.is_valid else RowStatus.INVALID.value,
        "raw_data": row.raw_data,
        "normalized_data": row.normalized_data,
        "validation_errors": row.errors or None,
    }


def _load_mapping(raw: dict | None) -> ColumnMappingConfig | None:
    if not raw:
        return None
    try:
        config = ColumnMappingConfig.model_validate(raw)
    except ValidationError:
        return None
    return config if config.field_for_index() else None


def _fail(session: Session, job_id: str, message: str, *, purge: bool = False) -> WorkerResult:
    session.rollback()
    if purge:
        job_state.purge_rows(session, job_id)
    job_state.mark_failed(session, job_id, message)
    session.commit()
    job = job_state.load_job(session, job_id)
    if job is not None:
        publish_job_progress(job, f"Import failed: {message}")
    return WorkerResult.terminal(message)


def handle_parse(job_id: str, start_chunk: int | None = None) -> WorkerResult:
    """Run (or resume) the parse phase for one job.

    Safe to call any number of times for the same job: a finished or
    terminal job is a no-op, and a resumed run purges whatever the last
    invocation wrote past its checkpoint before parsing again.
    """
    session = get_fresh_session()
    try:
        return _run_parse(session, job_id, start_chunk)
    except (LeadFileParseError, BlobNotFoundError, SignatureError) as exc:
        logger.warning(f"Parse of job {job_id} cannot continue: {exc}")
        return _fail(session, job_id, str(exc))
    except (SQLAlchemyError, RedisError, KombuError, OSError) as exc:
        session.rollback()
        logger.error(f"Transient failure parsing job {job_id}: {exc}", exc_info=True)
        return WorkerResult.retryable(f"Transient failure: {exc}")
    finally:
        session.close()


def _run_parse(session: Session, job_id: str, start_chunk: int | None) -> WorkerResult:
    job = job_state.load_job(session, job_id)
    if job is None:
        return WorkerResult.terminal(f"Job {job_id} not found")

    if job.status in TERMINAL_STATUSES:
        return WorkerResult.success(f"Job already {job.status}", status=job.status)

    if job.status in PARSED_STATUSES:
        counts = {"total": job.total_rows, "valid": job.valid_rows, "invalid": job.invalid_rows}
        if job.status == JobStatus.READY.value:
            # The only side effect of this no-op. A redelivered parse message
            # means the commit enqueue may have failed; commit is idempotent.
            queue_client.enqueue_commit_job(queue_client.commit_message_for(job))
        return WorkerResult.success("Job already parsed", status=job.status, **counts)

    if job.status in (JobStatus.PENDING.value, JobStatus.QUEUED.value):
        moved = job_state.transition(
            session,
            job_id,
            (JobStatus.PENDING, JobStatus.QUEUED),
            JobStatus.PARSING,
            started_at=job_state.utcnow(),
        )
        session.commit()
        if not moved:
            return WorkerResult.success("Superseded by another invocation")
        job = job_state.load_job(session, job_id)

    config = _load_mapping(job.column_mapping)
    if config is None:
        return _fail(session, job_id, "Column mapping is missing", purge=True)

    plan = job_state.plan_parse(job)
    if start_chunk is not None and isinstance(plan, job_state.FreshStart) and start_chunk > 0:
        logger.info(f"Job {job_id} has no checkpoint, ignoring start chunk {start_chunk}")
    start = job_state.apply_parse_plan(session, job_id, plan)
    if start is None:
        session.rollback()
        return WorkerResult.success("Superseded by another invocation")
    session.commit()

    file_type = job.file_type
    reference = create_signed_reference(job.storage_path)
    expected_processed = start.processed_rows
    valid_count = start.valid_count
    invalid_count = start.invalid_count

    with open_signed_reference(reference) as stream:
        for batch in iter_row_batches(stream, file_type, config, start_row=start.start_row):
            status = job_state.lock_job_status(session, job_id)
            if status != JobStatus.PARSING.value:
                session.rollback()
                if status == JobStatus.CANCELLED.value:
                    logger.info(f"Job {job_id} cancelled during parse")
                    return WorkerResult.success("Job cancelled", status=status)
                return WorkerResult.success("Superseded by another invocation", status=status)

            session.execute(insert(ImportRow), [_row_values(job_id, row) for row in batch])
            batch_valid = sum(1 for row in batch if row.is_valid)
            checkpoint = Checkpoint(
                chunk_number=batch[0].chunk_number,
                last_row_number=batch[-1].row_number,
                valid_count=valid_count + batch_valid,
                invalid_count=invalid_count + len(batch) - batch_valid,
                timestamp=job_state.utcnow(),
            )
            processed = expected_processed + len(batch)
            if not job_state.write_parse_checkpoint(
                session,
                job_id,
                expected_processed=expected_processed,
                processed_rows=processed,
                checkpoint=checkpoint,
            ):
                session.rollback()
                return WorkerResult.success("Superseded by another invocation")
            session.commit()

            expected_processed = processed
            valid_count = checkpoint.valid_count
            invalid_count = checkpoint.invalid_count
            publish_progress(
                job_id,
                0.0,
                f"Parsed {processed} rows",
                status=JobStatus.PARSING.value,
                meta={"processed": processed, "valid": valid_count, "invalid": invalid_count},
            )

    total = valid_count + invalid_count
    if not job_state.transition(
        session,
        job_id,
        (JobStatus.PARSING,),
        JobStatus.READY,
        total_rows=total,
        processed_rows=total,
        valid_rows=valid_count,
        invalid_rows=invalid_count,
    ):
        session.rollback()
        return WorkerResult.success("Job left parsing before completion")
    session.commit()

    job = job_state.load_job(session, job_id)
    publish_job_progress(job, f"Parsed {total} rows ({invalid_count} invalid)")
    logger.info(f"Job {job_id} parsed: {total} rows, {valid_count} valid, {invalid_count} invalid")

    queue_client.enqueue_commit_job(queue_client.commit_message_for(job))
    return WorkerResult.success("Parse complete", total=total, valid=valid_count, invalid=invalid_count)
