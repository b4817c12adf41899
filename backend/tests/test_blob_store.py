from __future__ import annotations

import io
import time

import pytest

from lead_importer.core.security import SignatureError
from lead_importer.storage import blob_store
from lead_importer.storage.blob_store import BlobNotFoundError


def test_signed_reference_opens_stored_file() -> None:
    path, digest, size = blob_store.save_upload(io.BytesIO(b"email\na@x.com\n"), "agent-1", "My Leads.csv")

    with blob_store.open_signed_reference(blob_store.create_signed_reference(path)) as handle:
        assert handle.read() == b"email\na@x.com\n"
    assert path.startswith("agent-1/")
    assert path.endswith("_My_Leads.csv")
    assert digest == blob_store.content_hash(b"email\na@x.com\n")
    assert size == 14


def test_tampered_reference_is_rejected() -> None:
    path, _, _ = blob_store.save_upload(io.BytesIO(b"x"), "agent-1", "a.csv")
    other, _, _ = blob_store.save_upload(io.BytesIO(b"y"), "agent-2", "b.csv")
    reference = blob_store.create_signed_reference(path)

    with pytest.raises(SignatureError):
        blob_store.open_signed_reference(reference.replace(path, other))
    with pytest.raises(SignatureError):
        blob_store.open_signed_reference(path)


def test_expired_reference_is_rejected(monkeypatch: pytest.MonkeyPatch) -> None:
    path, _, _ = blob_store.save_upload(io.BytesIO(b"x"), "agent-1", "a.csv")
    reference = blob_store.create_signed_reference(path, ttl_seconds=60)
    now = time.time()
    monkeypatch.setattr(blob_store.time, "time", lambda: now + 120)

    with pytest.raises(SignatureError, match="expired"):
        blob_store.open_signed_reference(reference)


def test_missing_and_escaping_paths() -> None:
    path, _, _ = blob_store.save_upload(io.BytesIO(b"x"), "agent-1", "a.csv")
    blob_store.delete_upload(path)
    blob_store.delete_upload(path)

    with pytest.raises(BlobNotFoundError):
        blob_store.open_signed_reference(blob_store.create_signed_reference(path))
    with pytest.raises(BlobNotFoundError):
        blob_store.open_signed_reference(blob_store.create_signed_reference("../outside.csv"))


@pytest.mark.parametrize(
    ("name", "expected"),
    [("../../etc/passwd", "passwd"), ("leads (1).xlsx", "leads_1_.xlsx"), (None, "upload"), ("...", "upload")],
)
def test_sanitize_filename(name, expected) -> None:
    assert blob_store.sanitize_filename(name) == expected
