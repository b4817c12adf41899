"""Commit phase: dedupe, assign and write valid rows into the lead store."""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from redis.exceptions import RedisError
from sqlalchemy import case, insert, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lead_importer.core.config import get_settings
from lead_importer.db.models.import_job import ImportJob
from lead_importer.db.models.import_row import ImportRow
from lead_importer.db.models.lead import Lead, LeadHistory
from lead_importer.db.session import get_fresh_session
from lead_importer.services import dedupe, job_state
from lead_importer.services.assignment import (
    AssignmentContext,
    assign,
    build_assignment_context,
)
from lead_importer.services.import_types import (
    TERMINAL_STATUSES,
    AssignmentConfig,
    CommitMessage,
    DuplicateConfig,
    JobStatus,
    RowStatus,
)
from lead_importer.services.lead_records import build_lead_data, update_values
from lead_importer.services.progress_tracker import publish_job_progress
from lead_importer.utils.batching import chunked
from lead_importer.workers.results import WorkerResult

logger = logging.getLogger(__name__)

PRE_COMMIT_STATUSES = (
    JobStatus.PENDING.value,
    JobStatus.QUEUED.value,
    JobStatus.PARSING.value,
)


class CommitInterrupted(Exception):
    """The job left ``importing`` or another invocation won a row update."""

    def __init__(self, status: str | None, reason: str):
        super().__init__(reason)
        self.status = status
        self.reason = reason


@dataclass
class CommitOptions:
    assignment: AssignmentConfig
    duplicates: DuplicateConfig
    default_status: str
    default_source: str | None


@dataclass(frozen=True)
class PendingRow:
    id: int
    row_number: int
    data: dict[str, Any]
    raw: dict[str, Any]


@dataclass(frozen=True)
class PendingInsert:
    row: PendingRow
    values: dict[str, Any]
    status_fell_back: bool = False
    assignment_fell_back: bool = False
    duplicate_created: bool = False


PendingUpdate = tuple[PendingRow, dedupe.DedupeResult]
Classified = tuple[list[PendingInsert], list[PendingRow], list[PendingUpdate]]


@dataclass
class CommitRun:
    """State of one commit invocation.

    The counts here only feed this invocation's result; the job's own
    counters and meta are written unit by unit.
    """

    job_id: str
    created_by: str | None
    options: CommitOptions
    store_index: dict[str, str]
    file_keys: set[str]
    assignment: AssignmentContext
    imported: int = 0
    skipped: int = 0
    updated: int = 0
    duplicates_created: int = 0
    status_fallbacks: int = 0


def _options_from_job(job: ImportJob, message: CommitMessage) -> CommitOptions:
    """Options persisted on an ``importing`` job win over the redelivered message."""
    assignment = (
        AssignmentConfig.model_validate(job.assignment_config)
        if job.assignment_config
        else message.assignment
    )
    duplicates = (
        DuplicateConfig.model_validate(job.duplicate_config)
        if job.duplicate_config
        else message.duplicates
    )
    return CommitOptions(
        assignment=assignment,
        duplicates=duplicates,
        default_status=job.default_status or message.default_status,
        default_source=job.default_source or message.default_source,
    )


def handle_commit(message: CommitMessage) -> WorkerResult:
    """Run (or resume) the commit phase for one job."""
    session = get_fresh_session()
    job_id = message.job_id
    try:
        return _run_commit(session, message)
    except ValidationError as exc:
        session.rollback()
        job_state.mark_failed(session, job_id, f"Invalid commit options: {exc}")
        session.commit()
        return WorkerResult.terminal("Invalid commit options")
    except (SQLAlchemyError, RedisError) as exc:
        session.rollback()
        logger.error(f"Transient failure committing job {job_id}: {exc}", exc_info=True)
        return WorkerResult.retryable(f"Transient failure: {exc}")
    finally:
        session.close()


def _run_commit(session: Session, message: CommitMessage) -> WorkerResult:
    job_id = message.job_id
    job = job_state.load_job(session, job_id)
    if job is None:
        return WorkerResult.terminal(f"Job {job_id} not found")
    if job.status in TERMINAL_STATUSES:
        return WorkerResult.success(f"Job already {job.status}", status=job.status)
    if job.status in PRE_COMMIT_STATUSES:
        return WorkerResult.retryable(f"Job {job_id} is not parsed yet ({job.status})")

    if job.status == JobStatus.READY.value:
        moved = job_state.transition(
            session,
            job_id,
            (JobStatus.READY,),
            JobStatus.IMPORTING,
            assignment_config=message.assignment.model_dump(mode="json"),
            duplicate_config=message.duplicates.model_dump(mode="json"),
            default_status=message.default_status,
            default_source=message.default_source,
        )
        session.commit()
        job = job_state.load_job(session, job_id)
        if not moved and job.status != JobStatus.IMPORTING.value:
            return WorkerResult.success(f"Job moved to {job.status}", status=job.status)
    else:
        logger.info(f"Job {job_id} resuming commit with its persisted options")

    options = _options_from_job(job, message)
    run = CommitRun(
        job_id=job.id,
        created_by=job.created_by,
        options=options,
        store_index=dedupe.build_store_index(session, options.duplicates),
        file_keys=_seed_file_keys(session, job_id, options.duplicates),
        assignment=build_assignment_context(options.assignment),
    )
    session.commit()

    try:
        _commit_valid_rows(session, run)
    except CommitInterrupted as stop:
        session.rollback()
        logger.info(f"Commit of job {job_id} stopped: {stop.reason}")
        return WorkerResult.success(stop.reason, status=stop.status, **_stats(run))

    if not job_state.transition(
        session,
        job_id,
        (JobStatus.IMPORTING,),
        JobStatus.COMPLETED,
        completed_at=job_state.utcnow(),
    ):
        session.rollback()
        return WorkerResult.success("Job left importing before completion", **_stats(run))
    session.commit()

    job = job_state.load_job(session, job_id)
    publish_job_progress(job, "Import complete")
    logger.info(
        f"Job {job_id} completed: {job.imported_rows} imported, {job.skipped_rows} skipped"
    )
    return WorkerResult.success("Commit complete", **_stats(run))


def _stats(run: CommitRun) -> dict[str, int]:
    return {
        "imported": run.imported,
        "skipped": run.skipped,
        "updated": run.updated,
        "duplicates_created": run.duplicates_created,
        "status_fallbacks": run.status_fallbacks,
    }


def _insert_meta(batch: list[PendingInsert]) -> dict[str, Any]:
    """Observability counts carried by one insert unit."""
    per_user = Counter(item.values["assigned_to"] for item in batch if item.values["assigned_to"])
    return {
        "duplicates_created": sum(item.duplicate_created for item in batch),
        "status_fallbacks": sum(item.status_fell_back for item in batch),
        "assignment_fallbacks": sum(item.assignment_fell_back for item in batch),
        "assigned_per_user": dict(per_user),
    }


def _seed_file_keys(session: Session, job_id: str, config: DuplicateConfig) -> set[str]:
    """Keys of rows this job already imported, so a resumed run still sees them."""
    keys: set[str] = set()
    if not config.check_within_file:
        return keys
    imported = session.scalars(
        select(ImportRow.normalized_data).where(
            ImportRow.import_job_id == job_id,
            ImportRow.status == RowStatus.IMPORTED.value,
        )
    )
    for data in imported:
        dedupe.add_keys(data or {}, config.check_fields, keys)
    return keys


def _fetch_valid_rows(session: Session, job_id: str, after_row: int, limit: int) -> list[PendingRow]:
    rows = session.execute(
        select(ImportRow.id, ImportRow.row_number, ImportRow.normalized_data, ImportRow.raw_data)
        .where(
            ImportRow.import_job_id == job_id,
            ImportRow.status == RowStatus.VALID.value,
            ImportRow.row_number > after_row,
        )
        .order_by(ImportRow.row_number)
        .limit(limit)
    ).all()
    return [
        PendingRow(id=row_id, row_number=number, data=data or {}, raw=raw or {})
        for row_id, number, data, raw in rows
    ]


def _commit_valid_rows(session: Session, run: CommitRun) -> None:
    settings = get_settings()
    after_row = 0
    while True:
        rows = _fetch_valid_rows(
            session, run.job_id, after_row, settings.commit_fetch_batch_size
        )
        if not rows:
            return
        after_row = rows[-1].row_number
        to_insert, to_skip, to_update = _classify(run, rows)
        for batch in chunked(to_insert, settings.commit_insert_batch_size):
            _insert_batch(session, run, batch)
        if to_skip:
            _skip_rows(session, run, to_skip)
        if to_update:
            _update_duplicates(session, run, to_update)


def _classify(run: CommitRun, rows: list[PendingRow]) -> Classified:
    """Sort rows into inserts, skips and updates, in file order."""
    duplicates = run.options.duplicates
    store_index = run.store_index if duplicates.check_database else {}
    file_keys = run.file_keys if duplicates.check_within_file else set()

    to_insert: list[PendingInsert] = []
    to_skip: list[PendingRow] = []
    to_update: list[PendingUpdate] = []
    for row in rows:
        data = row.data
        result = dedupe.check_duplicate(data, duplicates.check_fields, store_index, file_keys)
        if result.is_duplicate:
            if duplicates.strategy == "skip":
                to_skip.append(row)
                continue
            if duplicates.strategy == "update":
                to_update.append((row, result))
                continue

        fallbacks_before = run.assignment.stats.fallbacks
        assigned_to = assign(run.assignment, row.raw)
        values, status_fell_back = build_lead_data(
            data,
            default_status=run.options.default_status,
            default_source=run.options.default_source,
            assigned_to=assigned_to,
            import_job_id=run.job_id,
            created_by=run.created_by,
        )
        values["id"] = str(uuid.uuid4())
        to_insert.append(
            PendingInsert(
                row=row,
                values=values,
                status_fell_back=status_fell_back,
                assignment_fell_back=run.assignment.stats.fallbacks > fallbacks_before,
                duplicate_created=result.is_duplicate,
            )
        )
        if duplicates.check_within_file:
            dedupe.add_keys(data, duplicates.check_fields, run.file_keys)
    return to_insert, to_skip, to_update


def _guard_importing(session: Session, job_id: str) -> None:
    status = job_state.lock_job_status(session, job_id)
    if status != JobStatus.IMPORTING.value:
        reason = "Job cancelled" if status == JobStatus.CANCELLED.value else f"Job is {status}"
        raise CommitInterrupted(status, reason)


def _mark_rows(session: Session, row_lead_ids: dict[int, str | None], status: RowStatus) -> None:
    """Flip still-valid rows to ``status``; any row already moved aborts the unit."""
    values: dict[str, Any] = {"status": status.value}
    lead_ids = {row_id: lead_id for row_id, lead_id in row_lead_ids.items() if lead_id}
    if lead_ids:
        values["lead_id"] = case(lead_ids, value=ImportRow.id)
    result = session.execute(
        update(ImportRow)
        .where(
            ImportRow.id.in_(list(row_lead_ids)),
            ImportRow.status == RowStatus.VALID.value,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != len(row_lead_ids):
        raise CommitInterrupted(JobStatus.IMPORTING.value, "Superseded by another invocation")


def _history(lead_id: str, event_type: str, run: CommitRun, row: PendingRow, **extra: Any) -> dict:
    return {
        "lead_id": lead_id,
        "event_type": event_type,
        "actor_id": run.created_by,
        "meta": {"import_job_id": run.job_id, "row_number": row.row_number, **extra},
    }


def _insert_batch(
    session: Session, run: CommitRun, batch: list[PendingInsert]
) -> None:
    _guard_importing(session, run.job_id)
    session.execute(insert(Lead), [item.values for item in batch])
    session.execute(
        insert(LeadHistory),
        [
            _history(
                item.values["id"], "imported", run, item.row, assigned_to=item.values["assigned_to"]
            )
            for item in batch
        ],
    )
    _mark_rows(session, {item.row.id: item.values["id"] for item in batch}, RowStatus.IMPORTED)
    meta = _insert_meta(batch)
    if not job_state.increment_commit_counters(
        session, run.job_id, imported=len(batch), meta_deltas=meta
    ):
        raise CommitInterrupted(None, "Job left importing")
    session.commit()
    run.imported += len(batch)
    run.duplicates_created += meta["duplicates_created"]
    run.status_fallbacks += meta["status_fallbacks"]
    _publish(session, run)


def _skip_rows(session: Session, run: CommitRun, rows: list[PendingRow]) -> None:
    _guard_importing(session, run.job_id)
    _mark_rows(session, {row.id: None for row in rows}, RowStatus.SKIPPED)
    if not job_state.increment_commit_counters(session, run.job_id, skipped=len(rows)):
        raise CommitInterrupted(None, "Job left importing")
    session.commit()
    run.skipped += len(rows)
    _publish(session, run)


def _update_duplicates(
    session: Session, run: CommitRun, pending: list[PendingUpdate]
) -> None:
    """Update the first matching lead for each duplicate; unresolved rows are skipped.

    Lookups run after this batch's inserts are committed, so a repeat of a
    row imported earlier in the same file resolves to that row's lead.
    """
    unresolved = [(r.field, r.value) for _, r in pending if not r.record_id]
    found = dedupe.find_existing_record_ids(session, unresolved) if unresolved else {}

    targets: list[tuple[PendingRow, str]] = []
    leftovers: list[PendingRow] = []
    for row, result in pending:
        lead_id = result.record_id or found.get(dedupe.dedupe_key(result.field, result.value))
        if lead_id:
            targets.append((row, lead_id))
        else:
            leftovers.append(row)

    if targets:
        _guard_importing(session, run.job_id)
        for row, lead_id in targets:
            values = update_values(row.data)
            if values:
                values["updated_at"] = job_state.utcnow()
                session.execute(
                    update(Lead)
                    .where(Lead.id == lead_id)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
        session.execute(
            insert(LeadHistory),
            [
                _history(lead_id, "updated", run, row, fields=sorted(update_values(row.data)))
                for row, lead_id in targets
            ],
        )
        _mark_rows(session, {row.id: lead_id for row, lead_id in targets}, RowStatus.IMPORTED)
        if not job_state.increment_commit_counters(
            session, run.job_id, imported=len(targets), meta_deltas={"updated": len(targets)}
        ):
            raise CommitInterrupted(None, "Job left importing")
        session.commit()
        run.imported += len(targets)
        run.updated += len(targets)
        if run.options.duplicates.check_within_file:
            for row, _ in targets:
                dedupe.add_keys(row.data, run.options.duplicates.check_fields, run.file_keys)
        _publish(session, run)

    if leftovers:
        _skip_rows(session, run, leftovers)


def _publish(session: Session, run: CommitRun) -> None:
    job = job_state.load_job(session, run.job_id)
    if job is not None:
        publish_job_progress(
            job, f"Imported {job.imported_rows}, skipped {job.skipped_rows} of {job.valid_rows}"
        )
