"""Local filesystem blob store for uploaded import files.

Workers never read a storage path directly: they receive a signed,
expiring reference and exchange it for a readable handle.
"""

from __future__ import annotations

import hashlib
import re
import time
import uuid
from pathlib import Path
from typing import BinaryIO
from urllib.parse import parse_qs, urlencode

from lead_importer.core.config import get_settings
from lead_importer.core.security import SignatureError, sign, verify

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
HASH_CHUNK_SIZE = 1024 * 1024


class BlobNotFoundError(FileNotFoundError):
    """The referenced blob does not exist in the store."""


def _root() -> Path:
    return Path(get_settings().storage_dir).resolve()


def sanitize_filename(name: str | None) -> str:
    cleaned = _UNSAFE_CHARS.sub("_", Path(name or "upload").name).strip("._")
    return cleaned[:120] or "upload"


def _resolve(storage_path: str) -> Path:
    root = _root()
    path = (root / storage_path).resolve()
    if root not in path.parents:
        raise BlobNotFoundError(f"Blob path escapes the store: {storage_path}")
    return path


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def save_upload(file_obj: BinaryIO, owner_id: str, original_name: str | None) -> tuple[str, str, int]:
    """Persist an upload and return ``(storage_path, sha256 hex, size)``."""
    storage_path = f"{sanitize_filename(owner_id)}/{uuid.uuid4()}_{sanitize_filename(original_name)}"
    target = _resolve(storage_path)
    target.parent.mkdir(parents=True, exist_ok=True)
    digest = hashlib.sha256()
    size = 0
    file_obj.seek(0)
    with target.open("wb") as destination:
        while True:
            block = file_obj.read(HASH_CHUNK_SIZE)
            if not block:
                break
            digest.update(block)
            size += len(block)
            destination.write(block)
    return storage_path, digest.hexdigest(), size


def delete_upload(storage_path: str) -> None:
    """Cleanup a stored file; missing files are ignored."""
    try:
        _resolve(storage_path).unlink(missing_ok=True)
    except (BlobNotFoundError, OSError):
        pass


def create_signed_reference(storage_path: str, ttl_seconds: int | None = None) -> str:
    settings = get_settings()
    expires = int(time.time()) + (ttl_seconds or settings.signed_url_ttl_seconds)
    signature = sign(settings.storage_signing_key, f"{storage_path}:{expires}")
    return f"{storage_path}?{urlencode({'expires': expires, 'signature': signature})}"


def open_signed_reference(reference: str) -> BinaryIO:
    """Verify a signed reference and open the blob for binary reading."""
    storage_path, _, query = reference.partition("?")
    params = parse_qs(query)
    try:
        expires = int(params["expires"][0])
        signature = params["signature"][0]
    except (KeyError, IndexError, ValueError) as exc:
        raise SignatureError("Malformed blob reference") from exc
    if expires < int(time.time()):
        raise SignatureError("Blob reference expired")
    verify([get_settings().storage_signing_key], f"{storage_path}:{expires}", signature)

    path = _resolve(storage_path)
    if not path.is_file():
        raise BlobNotFoundError(f"Blob not found: {storage_path}")
    return path.open("rb")
