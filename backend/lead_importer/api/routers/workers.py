"""Queue-facing worker endpoints. Messages must carry a valid signature."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from lead_importer.core.config import get_settings
from lead_importer.core.security import SignatureError
from lead_importer.services.import_types import CommitMessage, ParseMessage
from lead_importer.services.queue_dispatch import SIGNATURE_HEADER, verify_message
from lead_importer.workers.commit_worker import handle_commit
from lead_importer.workers.parse_worker import handle_parse

logger = logging.getLogger(__name__)

router = APIRouter()


async def verified_body(request: Request) -> bytes:
    """Return the raw body once its queue signature checks out."""
    body = await request.body()
    try:
        verify_message(body, request.headers.get(SIGNATURE_HEADER))
    except SignatureError as exc:
        logger.warning(f"Rejected queue message on {request.url.path}: {exc}")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc)) from exc
    return body


def _worker_info(worker: str) -> dict[str, str]:
    return {"status": "ok", "worker": worker, "service": get_settings().worker_name}


@router.get("/parse", summary="Parse worker health")
async def parse_worker_info() -> dict[str, str]:
    return _worker_info("parse")


@router.get("/commit", summary="Commit worker health")
async def commit_worker_info() -> dict[str, str]:
    return _worker_info("commit")


@router.post("/parse", summary="Run or resume the parse phase")
def run_parse(body: bytes = Depends(verified_body)) -> JSONResponse:
    try:
        message = ParseMessage.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    result = handle_parse(message.job_id, message.start_chunk)
    logger.info(f"Parse of job {message.job_id}: {result.outcome.value} ({result.message})")
    return JSONResponse(status_code=result.http_status, content=result.as_dict())


@router.post("/commit", summary="Run or resume the commit phase")
def run_commit(body: bytes = Depends(verified_body)) -> JSONResponse:
    try:
        message = CommitMessage.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    result = handle_commit(message)
    logger.info(f"Commit of job {message.job_id}: {result.outcome.value} ({result.message})")
    return JSONResponse(status_code=result.http_status, content=result.as_dict())
