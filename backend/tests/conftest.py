from __future__ import annotations

import io
import os
import tempfile
from collections.abc import Callable, Iterator
from typing import Any

import pytest

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["STORAGE_DIR"] = tempfile.mkdtemp(prefix="lead-importer-tests-")
os.environ["QUEUE_SIGNING_KEY"] = "test-queue-key"
os.environ["QUEUE_NEXT_SIGNING_KEY"] = "rotated-queue-key"
os.environ["STORAGE_SIGNING_KEY"] = "test-storage-key"
os.environ["PARSE_CHUNK_SIZE"] = "4"
os.environ["COMMIT_FETCH_BATCH_SIZE"] = "3"
os.environ["COMMIT_INSERT_BATCH_SIZE"] = "2"

from sqlalchemy.orm import Session  # noqa: E402

from lead_importer.db import models  # noqa: E402,F401
from lead_importer.db.base import Base  # noqa: E402
from lead_importer.db.models import ImportJob  # noqa: E402
from lead_importer.db.session import SessionLocal, engine  # noqa: E402
from lead_importer.services import progress_tracker, queue_client  # noqa: E402
from lead_importer.services.column_mapping import build_mapping_config  # noqa: E402
from lead_importer.services.import_types import ColumnMappingConfig, JobStatus  # noqa: E402
from lead_importer.services.lead_parser import read_headers  # noqa: E402
from lead_importer.storage import blob_store  # noqa: E402

SAMPLE_CSV = (
    "first_name,last_name,email,phone,company\n"
    "alice,martin,alice@example.com,06 12 34 56 78,Acme\n"
    "bob,durand,bob@example.com,,Globex\n"
    "chloé,bernard,not-an-email,,Initech\n"
    "david,petit,,,Umbrella\n"
    "emma,robert,emma@example.com,,\n"
    "farid,richard, EXISTING@Example.com ,,\n"
    "gaspard,dubois,gaspard@example.com,,\n"
    "hugo,moreau,hugo@example.com,,\n"
    "inès,laurent,ines@example.com,,\n"
    "jules,simon,jules@example.com,,\n"
)


class FakeRedis:
    """Just enough of the redis client for progress snapshots."""

    def __init__(self) -> None:
        self.store: dict[str, str] = {}

    def set(self, key: str, value: str, ex: int | None = None) -> None:
        self.store[key] = value

    def get(self, key: str) -> str | None:
        return self.store.get(key)


class QueueRecorder:
    def __init__(self) -> None:
        self.messages: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, path: str, payload: dict[str, Any]) -> None:
        self.messages.append((path, payload))

    def paths(self) -> list[str]:
        return [path for path, _ in self.messages]

    def last(self, path: str) -> dict[str, Any]:
        return [payload for sent, payload in self.messages if sent == path][-1]


@pytest.fixture(autouse=True)
def database() -> Iterator[None]:
    Base.metadata.create_all(bind=engine)
    try:
        yield
    finally:
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch: pytest.MonkeyPatch) -> FakeRedis:
    client = FakeRedis()
    monkeypatch.setattr(progress_tracker, "redis_client", client)
    return client


@pytest.fixture(autouse=True)
def queue(monkeypatch: pytest.MonkeyPatch) -> QueueRecorder:
    recorder = QueueRecorder()
    monkeypatch.setattr(queue_client, "publish_message", recorder)
    return recorder


@pytest.fixture
def db() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_job(db: Session) -> Callable[..., ImportJob]:
    """Store ``content`` in the blob store and create a job pointing at it."""

    def factory(
        content: str | bytes = SAMPLE_CSV,
        *,
        owner_id: str = "agent-1",
        file_name: str = "leads.csv",
        file_type: str = "csv",
        status: JobStatus = JobStatus.PENDING,
        mapping: ColumnMappingConfig | None = None,
        with_mapping: bool = True,
        **values: Any,
    ) -> ImportJob:
        data = content.encode("utf-8") if isinstance(content, str) else content
        storage_path, file_hash, size = blob_store.save_upload(
            io.BytesIO(data), owner_id, file_name
        )
        if with_mapping and mapping is None:
            headers, _ = read_headers(io.BytesIO(data), file_type)
            mapping = build_mapping_config(headers)
        job = ImportJob(
            created_by=owner_id,
            file_name=file_name,
            file_type=file_type,
            storage_path=storage_path,
            file_hash=file_hash,
            file_size=size,
            status=status.value,
            column_mapping=mapping.model_dump(mode="json") if with_mapping else None,
            **values,
        )
        db.add(job)
        db.commit()
        db.refresh(job)
        return job

    return factory
