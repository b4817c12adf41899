"""HMAC signing shared by queue messages and signed blob references."""

from __future__ import annotations

import hashlib
import hmac
from collections.abc import Iterable

SIGNATURE_PREFIX = "sha256="


class SignatureError(ValueError):
    """A signature is missing, malformed, expired or does not match."""


def sign(secret: str, payload: bytes | str) -> str:
    """Return the hex HMAC-SHA256 of ``payload``."""
    if isinstance(payload, str):
        payload = payload.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def verify(secrets: Iterable[str], payload: bytes | str, signature: str | None) -> None:
    """Raise SignatureError unless one of ``secrets`` produced ``signature``.

    Accepts both the bare hex digest and the ``sha256=`` prefixed header form.
    """
    if not signature:
        raise SignatureError("Missing signature")
    if signature.startswith(SIGNATURE_PREFIX):
        signature = signature[len(SIGNATURE_PREFIX) :]
    for secret in secrets:
        if secret and hmac.compare_digest(sign(secret, payload), signature):
            return
    raise SignatureError("Invalid signature")
