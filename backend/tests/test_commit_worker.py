from __future__ import annotations

from collections import Counter

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from lead_importer.db.models import ImportRow, Lead, LeadHistory
from lead_importer.db.session import SessionLocal
from lead_importer.services import job_state, queue_client
from lead_importer.services.import_types import (
    AssignmentConfig,
    CommitMessage,
    DuplicateConfig,
    JobStatus,
    RowStatus,
)
from lead_importer.workers import commit_worker
from lead_importer.workers.commit_worker import handle_commit
from lead_importer.workers.parse_worker import handle_parse
from lead_importer.workers.results import WorkerOutcome


def _parsed_job(db: Session, make_job, content: str | None = None):
    job = make_job(content, status=JobStatus.QUEUED) if content else make_job(status=JobStatus.QUEUED)
    assert handle_parse(job.id).outcome is WorkerOutcome.SUCCESS
    return job_state.load_job(db, job.id)


def _message(db: Session, job_id: str, **updates) -> CommitMessage:
    message = queue_client.commit_message_for(job_state.load_job(db, job_id))
    return message.model_copy(update=updates)


def _row_statuses(db: Session, job_id: str) -> Counter:
    return Counter(
        db.scalars(select(ImportRow.status).where(ImportRow.import_job_id == job_id)).all()
    )


def _existing_lead(db: Session, **values) -> Lead:
    lead = Lead(id="existing-lead", email="existing@example.com", status="contacted", **values)
    db.add(lead)
    db.commit()
    return lead


def test_end_to_end_skip_existing_duplicate(db: Session, make_job, fake_redis) -> None:
    _existing_lead(db)
    job = _parsed_job(db, make_job)

    result = handle_commit(_message(db, job.id))

    assert result.outcome is WorkerOutcome.SUCCESS
    done = job_state.load_job(db, job.id)
    assert done.status == "completed"
    assert (done.imported_rows, done.skipped_rows, done.invalid_rows, done.total_rows) == (7, 1, 2, 10)
    assert done.completed_at is not None
    assert _row_statuses(db, job.id) == {"imported": 7, "skipped": 1, "invalid": 2}
    assert db.scalar(select(func.count()).select_from(Lead)) == 8
    assert db.scalar(
        select(func.count()).select_from(LeadHistory).where(LeadHistory.event_type == "imported")
    ) == 7

    alice = db.scalars(select(Lead).where(Lead.email == "alice@example.com")).one()
    assert alice.first_name == "Alice"
    assert alice.phone == "+33612345678"
    assert alice.country == "France"
    assert alice.status == "new"
    assert alice.status_label == "Nouveau"
    assert alice.source == "Import leads.csv"
    assert alice.import_job_id == job.id
    assert alice.created_by == "agent-1"

    imported = db.scalars(
        select(ImportRow).where(
            ImportRow.import_job_id == job.id, ImportRow.status == RowStatus.IMPORTED.value
        )
    ).all()
    assert all(row.lead_id for row in imported)
    assert len({row.lead_id for row in imported}) == 7
    assert '"status": "completed"' in fake_redis.store[f"imports:progress:{job.id}"]


def test_commit_is_idempotent_once_completed(db: Session, make_job) -> None:
    job = _parsed_job(db, make_job)
    handle_commit(_message(db, job.id))

    again = handle_commit(_message(db, job.id))

    assert again.outcome is WorkerOutcome.SUCCESS
    assert db.scalar(select(func.count()).select_from(Lead)) == 8
    assert job_state.load_job(db, job.id).imported_rows == 8


def test_cancel_before_commit_changes_nothing(db: Session, make_job) -> None:
    job = _parsed_job(db, make_job)
    assert job_state.cancel_job(db, job.id)
    db.commit()

    result = handle_commit(_message(db, job.id))

    assert result.outcome is WorkerOutcome.SUCCESS
    assert db.scalar(select(func.count()).select_from(Lead)) == 0
    assert _row_statuses(db, job.id) == {"valid": 8, "invalid": 2}
    cancelled = job_state.load_job(db, job.id)
    assert cancelled.status == "cancelled"
    assert (cancelled.imported_rows, cancelled.skipped_rows) == (0, 0)


def test_cancel_while_importing_stops_before_the_next_unit(db: Session, make_job) -> None:
    job = _parsed_job(db, make_job)
    job_state.transition(db, job.id, (JobStatus.READY,), JobStatus.IMPORTING)
    job_state.cancel_job(db, job.id)
    db.commit()
    cancelled = job_state.load_job(db, job.id)
    meta_before, updated_before = cancelled.meta, cancelled.updated_at

    result = handle_commit(_message(db, job.id))

    assert result.outcome is WorkerOutcome.SUCCESS
    assert db.scalar(select(func.count()).select_from(Lead)) == 0
    after = job_state.load_job(db, job.id)
    assert after.meta == meta_before
    assert after.updated_at == updated_before


def test_cancel_between_units_leaves_the_job_untouched(db: Session, make_job, monkeypatch) -> None:
    job = _parsed_job(db, make_job)
    seen: dict = {}

    def cancel_after_first_unit(session, run):
        if seen:
            return
        other = SessionLocal()
        try:
            job_state.cancel_job(other, run.job_id)
            other.commit()
            cancelled = job_state.load_job(other, run.job_id)
            seen.update(meta=cancelled.meta, updated_at=cancelled.updated_at)
        finally:
            other.close()

    monkeypatch.setattr(commit_worker, "_publish", cancel_after_first_unit)
    result = handle_commit(_message(db, job.id))

    assert result.outcome is WorkerOutcome.SUCCESS
    assert result.message == "Job cancelled"
    after = job_state.load_job(db, job.id)
    assert after.status == "cancelled"
    assert after.imported_rows == 2
    assert after.meta == seen["meta"]
    assert after.updated_at == seen["updated_at"]
    assert db.scalar(select(func.count()).select_from(Lead)) == 2


def test_meta_counts_survive_a_failed_unit_and_resume(db: Session, make_job, monkeypatch) -> None:
    content = "email,Commercial\n" + "".join(f"u{n}@x.com,Inconnu\n" for n in range(1, 7))
    job = _parsed_job(db, make_job, content)
    assignment = AssignmentConfig(
        mode="by_column",
        assignment_column="Commercial",
        user_map={"Alice": "u-alice"},
        fallback_user_id="u-manager",
    )
    real_increment = job_state.increment_commit_counters
    calls = []

    def fail_second_unit(*args, **kwargs):
        calls.append(kwargs)
        if len(calls) == 2:
            raise OperationalError("UPDATE import_jobs", {}, Exception("database is locked"))
        return real_increment(*args, **kwargs)

    monkeypatch.setattr(job_state, "increment_commit_counters", fail_second_unit)
    first = handle_commit(_message(db, job.id, assignment=assignment))

    assert first.outcome is WorkerOutcome.RETRYABLE
    stalled = job_state.load_job(db, job.id)
    assert stalled.status == "importing"
    assert stalled.imported_rows == 2
    assert stalled.meta["assignment_fallbacks"] == 2

    monkeypatch.setattr(job_state, "increment_commit_counters", real_increment)
    resumed = handle_commit(_message(db, job.id, assignment=assignment))

    assert resumed.outcome is WorkerOutcome.SUCCESS
    done = job_state.load_job(db, job.id)
    assert done.status == "completed"
    assert done.imported_rows == 6
    assert done.meta["assignment_fallbacks"] == 6
    assert done.meta["assigned_per_user"] == {"u-manager": 6}


def test_commit_before_parse_is_retryable(db: Session, make_job) -> None:
    job = make_job(status=JobStatus.PARSING)

    result = handle_commit(CommitMessage(job_id=job.id))

    assert result.outcome is WorkerOutcome.RETRYABLE
    assert result.http_status == 503


def test_duplicates_within_file_are_skipped(db: Session, make_job) -> None:
    content = "email,nom\nsame@x.com,Martin\nother@x.com,Durand\n SAME@X.com ,Petit\n"
    job = _parsed_job(db, make_job, content)

    handle_commit(_message(db, job.id))

    done = job_state.load_job(db, job.id)
    assert (done.imported_rows, done.skipped_rows) == (2, 1)
    skipped = db.scalars(
        select(ImportRow.row_number).where(
            ImportRow.import_job_id == job.id, ImportRow.status == RowStatus.SKIPPED.value
        )
    ).all()
    assert skipped == [3]


def test_within_file_check_can_be_disabled(db: Session, make_job) -> None:
    content = "email,nom\nsame@x.com,Martin\nsame@x.com,Petit\n"
    job = _parsed_job(db, make_job, content)

    handle_commit(
        _message(db, job.id, duplicates=DuplicateConfig(check_within_file=False))
    )

    assert job_state.load_job(db, job.id).imported_rows == 2


def test_update_strategy_updates_existing_leads(db: Session, make_job) -> None:
    _existing_lead(db, company="Old Co")
    content = "email,company,city\n existing@EXAMPLE.com ,New Co,\nfresh@x.com,Fresh,Lyon\n"
    job = _parsed_job(db, make_job, content)

    result = handle_commit(
        _message(db, job.id, duplicates=DuplicateConfig(strategy="update"))
    )

    assert result.stats["updated"] == 1
    done = job_state.load_job(db, job.id)
    assert (done.imported_rows, done.skipped_rows) == (2, 0)
    assert done.meta["updated"] == 1
    existing = db.get(Lead, "existing-lead")
    db.refresh(existing)
    assert existing.company == "New Co"
    assert existing.city is None
    assert existing.status == "contacted"
    assert db.scalar(select(func.count()).select_from(Lead)) == 2
    history = db.scalars(
        select(LeadHistory).where(LeadHistory.lead_id == "existing-lead")
    ).one()
    assert history.event_type == "updated"


def test_update_strategy_resolves_repeats_against_the_first_row(db: Session, make_job) -> None:
    content = "email,company\nsame@x.com,First\nsame@x.com,Second\n"
    job = _parsed_job(db, make_job, content)

    handle_commit(_message(db, job.id, duplicates=DuplicateConfig(strategy="update")))

    leads = db.scalars(select(Lead)).all()
    assert len(leads) == 1
    db.refresh(leads[0])
    assert leads[0].company == "Second"
    assert job_state.load_job(db, job.id).imported_rows == 2


def test_create_strategy_inserts_duplicates_and_counts_them(db: Session, make_job) -> None:
    _existing_lead(db)
    job = _parsed_job(db, make_job)

    result = handle_commit(
        _message(db, job.id, duplicates=DuplicateConfig(strategy="create"))
    )

    assert result.stats["duplicates_created"] == 1
    assert job_state.load_job(db, job.id).imported_rows == 8
    assert db.scalar(select(func.count()).select_from(Lead)) == 9


def test_round_robin_assignment_is_fair(db: Session, make_job) -> None:
    job = _parsed_job(db, make_job)
    users = ("u-1", "u-2", "u-3")

    handle_commit(
        _message(
            db,
            job.id,
            assignment=AssignmentConfig(mode="round_robin", round_robin_user_ids=users),
        )
    )

    counts = Counter(
        db.scalars(select(Lead.assigned_to).where(Lead.import_job_id == job.id)).all()
    )
    assert set(counts) == set(users)
    assert sorted(counts.values()) == [2, 3, 3]
    meta = job_state.load_job(db, job.id).meta
    assert sum(meta["assigned_per_user"].values()) == 8


def test_by_column_fallbacks_are_counted(db: Session, make_job) -> None:
    content = (
        "email,Commercial\n"
        "a@x.com,Alice\n"
        "b@x.com,Inconnu\n"
        "c@x.com,\n"
    )
    job = _parsed_job(db, make_job, content)
    assignment = AssignmentConfig(
        mode="by_column",
        assignment_column="Commercial",
        user_map={"Alice": "u-alice"},
        fallback_user_id="u-manager",
    )

    handle_commit(_message(db, job.id, assignment=assignment))

    owners = dict(db.execute(select(Lead.email, Lead.assigned_to)).all())
    assert owners == {"a@x.com": "u-alice", "b@x.com": "u-manager", "c@x.com": "u-manager"}
    assert job_state.load_job(db, job.id).meta["assignment_fallbacks"] == 2


def test_unknown_status_falls_back_and_is_counted(db: Session, make_job) -> None:
    content = "email,statut\na@x.com,Qualified\nb@x.com,Peut-être\n"
    job = _parsed_job(db, make_job, content)

    handle_commit(_message(db, job.id, default_status="contacted"))

    statuses = dict(db.execute(select(Lead.email, Lead.status)).all())
    assert statuses == {"a@x.com": "qualified", "b@x.com": "contacted"}
    assert job_state.load_job(db, job.id).meta["status_fallbacks"] == 1


def test_importing_job_resumes_with_persisted_options(db: Session, make_job) -> None:
    job = _parsed_job(db, make_job)
    first = _message(db, job.id, duplicates=DuplicateConfig(strategy="create"))
    job_state.transition(
        db,
        job.id,
        (JobStatus.READY,),
        JobStatus.IMPORTING,
        duplicate_config=first.duplicates.model_dump(mode="json"),
    )
    db.commit()
    _existing_lead(db)

    handle_commit(_message(db, job.id, duplicates=DuplicateConfig(strategy="skip")))

    done = job_state.load_job(db, job.id)
    assert done.status == "completed"
    assert (done.imported_rows, done.skipped_rows) == (8, 0)
