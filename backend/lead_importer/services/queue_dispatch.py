"""Sign queue messages and deliver them to the worker endpoints over HTTP."""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx

from lead_importer.core.config import get_settings
from lead_importer.core.security import SIGNATURE_PREFIX, sign, verify

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Queue-Signature"
USER_AGENT = "Lead-Importer-Queue/1.0"


def encode_message(payload: dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def signature_header(body: bytes) -> str:
    return f"{SIGNATURE_PREFIX}{sign(get_settings().queue_signing_key, body)}"


def verify_message(body: bytes, header: str | None) -> None:
    """Raise SignatureError unless the current or next signing key matches."""
    verify(get_settings().queue_signing_keys, body, header)


def backoff_seconds(attempt: int) -> int:
    return get_settings().queue_retry_backoff_seconds * (2**attempt)


def deliver_message(path: str, payload: dict[str, Any]) -> dict[str, Any]:
    """POST one signed message and classify the outcome.

    Returns a dictionary with:
        - status: HTTP status code, "timeout" or "error"
        - response_time_ms: Round-trip time in milliseconds
        - success: True for a 2xx answer
        - retryable: True for 5xx answers and transport failures
        - error: Error description when not successful
    """
    settings = get_settings()
    url = f"{settings.worker_base_url.rstrip('/')}{path}"
    body = encode_message(payload)
    headers = {
        "Content-Type": "application/json",
        "User-Agent": USER_AGENT,
        SIGNATURE_HEADER: signature_header(body),
    }
    start_time = time.time()
    result: dict[str, Any] = {
        "status": None,
        "response_time_ms": None,
        "success": False,
        "retryable": False,
        "error": None,
    }

    try:
        with httpx.Client(timeout=settings.queue_request_timeout) as client:
            response = client.post(url, content=body, headers=headers)
        result["status"] = response.status_code
        result["success"] = 200 <= response.status_code < 300
        if not result["success"]:
            result["retryable"] = response.status_code >= 500
            result["error"] = f"HTTP {response.status_code}: {response.text[:200]}"
    except httpx.TimeoutException:
        result["status"] = "timeout"
        result["retryable"] = True
        result["error"] = f"Request timeout after {settings.queue_request_timeout}s"
    except httpx.RequestError as e:
        result["status"] = "error"
        result["retryable"] = True
        result["error"] = f"Request failed: {e}"

    result["response_time_ms"] = int((time.time() - start_time) * 1000)
    logger.info(
        f"Queue message to {path} for job {payload.get('jobId')}: "
        f"status={result['status']}, time={result['response_time_ms']}ms"
    )
    return result
