"""Import job lifecycle: guarded status transitions, checkpoints and resume plans.

Every write here is a conditional ``UPDATE ... WHERE`` on the state the
caller expects. The affected row count tells the caller whether it won;
losing means another invocation (or a cancel) got there first. None of
these helpers commit: the caller owns the transaction boundary.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.orm import Session

from lead_importer.db.models.import_job import ImportJob
from lead_importer.db.models.import_row import ImportRow
from lead_importer.services.import_types import (
    CANCELLABLE_STATUSES,
    TERMINAL_STATUSES,
    Checkpoint,
    JobStatus,
    RowStatus,
)

logger = logging.getLogger(__name__)

NON_TERMINAL_STATUSES = tuple(
    status.value for status in JobStatus if status.value not in TERMINAL_STATUSES
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _status_values(statuses: Iterable[str | JobStatus]) -> list[str]:
    return [status.value if isinstance(status, JobStatus) else status for status in statuses]


def load_job(db: Session, job_id: str, *, lock: bool = False) -> ImportJob | None:
    """Re-read the job from the database, optionally locking its row."""
    query = select(ImportJob).where(ImportJob.id == job_id)
    if lock:
        query = query.with_for_update()
    return db.scalars(query.execution_options(populate_existing=True)).first()


def lock_job_status(db: Session, job_id: str) -> str | None:
    """Lock the job row for the current transaction and return its status."""
    return db.scalar(
        select(ImportJob.status).where(ImportJob.id == job_id).with_for_update()
    )


def transition(
    db: Session,
    job_id: str,
    expected: Iterable[str | JobStatus],
    target: str | JobStatus,
    **values: Any,
) -> bool:
    """Move the job to ``target`` only if it is currently in ``expected``."""
    target_value = target.value if isinstance(target, JobStatus) else target
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_(_status_values(expected)))
        .values(status=target_value, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    won = result.rowcount == 1
    if won:
        logger.info(f"Job {job_id} -> {target_value}")
    return won


def cancel_job(db: Session, job_id: str) -> bool:
    return transition(
        db,
        job_id,
        CANCELLABLE_STATUSES,
        JobStatus.CANCELLED,
        completed_at=utcnow(),
    )


def mark_failed(db: Session, job_id: str, message: str) -> bool:
    """Fail the job unless it already reached a terminal state."""
    won = transition(
        db,
        job_id,
        NON_TERMINAL_STATUSES,
        JobStatus.FAILED,
        error_message=message[:2000],
        completed_at=utcnow(),
    )
    if won:
        logger.warning(f"Job {job_id} failed: {message}")
    return won


def purge_rows(db: Session, job_id: str, from_row: int = 1) -> int:
    result = db.execute(
        delete(ImportRow)
        .where(ImportRow.import_job_id == job_id, ImportRow.row_number >= from_row)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


def read_checkpoint(job: ImportJob) -> Checkpoint | None:
    if not job.checkpoint:
        return None
    return Checkpoint.model_validate(job.checkpoint)


@dataclass(frozen=True)
class FreshStart:
    expected_processed: int
    from_row: int = 1


@dataclass(frozen=True)
class Resuming:
    expected_processed: int
    checkpoint: Checkpoint

    @property
    def from_row(self) -> int:
        return self.checkpoint.last_row_number


@dataclass(frozen=True)
class ParsingFrom:
    """Where parsing restarts and the counts the surviving rows account for."""

    start_row: int
    processed_rows: int
    valid_count: int
    invalid_count: int
    chunk_number: int


def plan_parse(job: ImportJob) -> FreshStart | Resuming:
    """Decide how a parse invocation begins from the persisted checkpoint."""
    checkpoint = read_checkpoint(job)
    expected = job.processed_rows or 0
    if checkpoint is None or checkpoint.last_row_number <= 0:
        return FreshStart(expected_processed=expected)
    return Resuming(expected_processed=expected, checkpoint=checkpoint)


def apply_parse_plan(
    db: Session, job_id: str, plan: FreshStart | Resuming
) -> ParsingFrom | None:
    """Purge rows at or past the restart point and re-seed the running counts.

    Only ``processed_rows`` (the checkpoint guard) moves back to the number
    of surviving rows; the reported counters are rewritten by the next
    checkpoint. Returns None when the job moved on (another invocation
    advanced the checkpoint, or the job left ``parsing``); nothing is
    deleted then.
    """
    status = lock_job_status(db, job_id)
    if status != JobStatus.PARSING.value:
        return None

    job = load_job(db, job_id)
    if job is None or (job.processed_rows or 0) != plan.expected_processed:
        return None

    purged = purge_rows(db, job_id, plan.from_row)
    counts = dict(
        db.execute(
            select(ImportRow.status, func.count())
            .where(ImportRow.import_job_id == job_id)
            .group_by(ImportRow.status)
        ).all()
    )
    invalid = counts.get(RowStatus.INVALID.value, 0)
    valid = sum(count for status, count in counts.items() if status != RowStatus.INVALID.value)
    surviving = valid + invalid
    chunk_number = plan.checkpoint.chunk_number if isinstance(plan, Resuming) else 0

    result = db.execute(
        update(ImportJob)
        .where(
            ImportJob.id == job_id,
            ImportJob.status == JobStatus.PARSING.value,
            ImportJob.processed_rows == plan.expected_processed,
        )
        .values(processed_rows=surviving, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None

    if isinstance(plan, Resuming):
        logger.info(
            f"Job {job_id} resuming at row {plan.from_row} "
            f"(purged {purged} rows, {surviving} kept)"
        )
    elif purged:
        logger.info(f"Job {job_id} starting fresh (purged {purged} stale rows)")
    return ParsingFrom(
        start_row=plan.from_row,
        processed_rows=surviving,
        valid_count=valid,
        invalid_count=invalid,
        chunk_number=chunk_number,
    )


def write_parse_checkpoint(
    db: Session,
    job_id: str,
    *,
    expected_processed: int,
    processed_rows: int,
    checkpoint: Checkpoint,
) -> bool:
    """Advance counters and checkpoint together, guarded on the prior position."""
    result = db.execute(
        update(ImportJob)
        .where(
            ImportJob.id == job_id,
            ImportJob.status == JobStatus.PARSING.value,
            ImportJob.processed_rows == expected_processed,
        )
        .values(
            processed_rows=processed_rows,
            total_rows=checkpoint.last_row_number,
            valid_rows=checkpoint.valid_count,
            invalid_rows=checkpoint.invalid_count,
            current_chunk=checkpoint.chunk_number,
            checkpoint=checkpoint.model_dump(mode="json"),
            updated_at=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def add_meta_counts(meta: dict[str, Any] | None, deltas: dict[str, Any]) -> dict[str, Any]:
    """Add ``deltas`` to ``meta``; dict deltas (per-user counts) add key by key."""
    merged = dict(meta or {})
    for key, delta in deltas.items():
        if isinstance(delta, dict):
            nested = dict(merged.get(key) or {})
            for name, count in delta.items():
                nested[name] = nested.get(name, 0) + count
            merged[key] = nested
        else:
            merged[key] = merged.get(key, 0) + delta
    return merged


def increment_commit_counters(
    db: Session,
    job_id: str,
    *,
    imported: int = 0,
    skipped: int = 0,
    meta_deltas: dict[str, Any] | None = None,
) -> bool:
    """Add one unit's counts to the job while it is ``importing``.

    Meta counts ride in the same transaction as the row counters, so a
    committed unit never loses them. Callers hold the job row lock.
    """
    values: dict[str, Any] = {
        "imported_rows": ImportJob.imported_rows + imported,
        "skipped_rows": ImportJob.skipped_rows + skipped,
        "updated_at": utcnow(),
    }
    if meta_deltas:
        current = db.scalar(select(ImportJob.meta).where(ImportJob.id == job_id))
        values["meta"] = add_meta_counts(current, meta_deltas)
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == JobStatus.IMPORTING.value)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def update_if_status(
    db: Session, job_id: str, expected: Iterable[str | JobStatus], **values: Any
) -> bool:
    """Write ``values`` without changing status, only while the job is in ``expected``."""
    result = db.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status.in_(_status_values(expected)))
        .values(updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
