from __future__ import annotations

from sqlalchemy import func, insert, select
from sqlalchemy.orm import Session

from lead_importer.db.models import ImportRow
from lead_importer.services import job_state
from lead_importer.services.import_types import Checkpoint, JobStatus, RowStatus


def _add_rows(db: Session, job_id: str, numbers: range, invalid: set[int] = frozenset()) -> None:
    db.execute(
        insert(ImportRow),
        [
            {
                "import_job_id": job_id,
                "row_number": n,
                "chunk_number": (n - 1) // 4,
                "status": RowStatus.INVALID.value if n in invalid else RowStatus.VALID.value,
                "raw_data": {"email": f"u{n}@x.com"},
            }
            for n in numbers
        ],
    )
    db.commit()


def test_transition_only_from_expected_status(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.PENDING)

    assert not job_state.transition(db, job.id, (JobStatus.QUEUED,), JobStatus.PARSING)
    assert job_state.transition(db, job.id, (JobStatus.PENDING,), JobStatus.QUEUED)
    db.commit()

    assert job_state.load_job(db, job.id).status == "queued"


def test_cancel_is_rejected_once_terminal(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.IMPORTING)

    assert job_state.cancel_job(db, job.id)
    db.commit()
    assert not job_state.cancel_job(db, job.id)
    assert job_state.load_job(db, job.id).status == "cancelled"


def test_mark_failed_keeps_completed_jobs(db: Session, make_job) -> None:
    done = make_job(status=JobStatus.COMPLETED)
    running = make_job(status=JobStatus.PARSING, owner_id="agent-2")

    assert not job_state.mark_failed(db, done.id, "boom")
    assert job_state.mark_failed(db, running.id, "boom")
    db.commit()

    failed = job_state.load_job(db, running.id)
    assert failed.status == "failed"
    assert failed.error_message == "boom"
    assert failed.completed_at is not None


def test_plan_parse_without_checkpoint_starts_fresh(make_job) -> None:
    job = make_job(status=JobStatus.PARSING)

    plan = job_state.plan_parse(job)

    assert isinstance(plan, job_state.FreshStart)
    assert plan.from_row == 1


def test_resume_purges_rows_from_checkpoint_and_keeps_counters(db: Session, make_job) -> None:
    checkpoint = Checkpoint(chunk_number=1, last_row_number=8, valid_count=6, invalid_count=2)
    job = make_job(
        status=JobStatus.PARSING,
        processed_rows=9,
        total_rows=8,
        valid_rows=6,
        invalid_rows=2,
        checkpoint=checkpoint.model_dump(mode="json"),
    )
    # Row 9 was written by an invocation that died before its checkpoint landed.
    _add_rows(db, job.id, range(1, 10), invalid={3, 4})

    plan = job_state.plan_parse(job_state.load_job(db, job.id))
    assert isinstance(plan, job_state.Resuming)

    start = job_state.apply_parse_plan(db, job.id, plan)
    db.commit()

    assert start.start_row == 8
    assert (start.processed_rows, start.valid_count, start.invalid_count) == (7, 5, 2)
    remaining = db.scalars(
        select(ImportRow.row_number).where(ImportRow.import_job_id == job.id)
    ).all()
    assert sorted(remaining) == list(range(1, 8))
    refreshed = job_state.load_job(db, job.id)
    assert refreshed.processed_rows == 7
    assert (refreshed.valid_rows, refreshed.invalid_rows) == (6, 2)


def test_stale_plan_is_not_applied(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.PARSING, processed_rows=4)
    _add_rows(db, job.id, range(1, 5))
    plan = job_state.FreshStart(expected_processed=0)

    assert job_state.apply_parse_plan(db, job.id, plan) is None
    db.rollback()
    assert db.scalar(select(func.count()).select_from(ImportRow)) == 4


def test_checkpoint_write_is_guarded_on_processed_rows(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.PARSING, processed_rows=4)
    checkpoint = Checkpoint(chunk_number=1, last_row_number=8, valid_count=8, invalid_count=0)

    assert not job_state.write_parse_checkpoint(
        db, job.id, expected_processed=0, processed_rows=8, checkpoint=checkpoint
    )
    assert job_state.write_parse_checkpoint(
        db, job.id, expected_processed=4, processed_rows=8, checkpoint=checkpoint
    )
    db.commit()

    refreshed = job_state.load_job(db, job.id)
    assert refreshed.processed_rows == 8
    assert refreshed.current_chunk == 1
    assert job_state.read_checkpoint(refreshed).last_row_number == 8


def test_commit_counters_only_move_while_importing(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.READY)

    assert not job_state.increment_commit_counters(db, job.id, imported=2)
    job_state.transition(db, job.id, (JobStatus.READY,), JobStatus.IMPORTING)
    assert job_state.increment_commit_counters(db, job.id, imported=2, skipped=1)
    assert job_state.increment_commit_counters(db, job.id, imported=1)
    db.commit()

    refreshed = job_state.load_job(db, job.id)
    assert (refreshed.imported_rows, refreshed.skipped_rows) == (3, 1)


def test_meta_counts_are_added_with_the_unit_counters(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.IMPORTING, meta={"mapping_check": {"has_contact_field": True}})
    deltas = {"assignment_fallbacks": 1, "assigned_per_user": {"u-1": 2}}

    assert job_state.increment_commit_counters(db, job.id, imported=2, meta_deltas=deltas)
    assert job_state.increment_commit_counters(
        db, job.id, imported=1, meta_deltas={"assigned_per_user": {"u-1": 1, "u-2": 1}}
    )
    db.commit()

    meta = job_state.load_job(db, job.id).meta
    assert meta["mapping_check"] == {"has_contact_field": True}
    assert meta["assignment_fallbacks"] == 1
    assert meta["assigned_per_user"] == {"u-1": 3, "u-2": 1}


def test_meta_counts_are_not_written_once_the_job_left_importing(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.CANCELLED, meta={})

    assert not job_state.increment_commit_counters(
        db, job.id, imported=1, meta_deltas={"updated": 1}
    )
    db.commit()

    assert job_state.load_job(db, job.id).meta == {}
