"""
Document Parse API Router
POST /api/v1/documents/parse

Uploads one PDF and streams the ingestion pipeline's progress back as
Server-Sent Events on the same response.

Request lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. Read multipart fields + file bytes (≤ limit + 1)      │
  │ 2. IngestionCoordinator.start() → background task        │
  │ 3. Return StreamingResponse draining the job's channel   │
  │ 4. Client disconnect / teardown → job.cancel.set()       │
  └─────────────────────────────────────────────────────────┘

Every validation failure is reported as an `error` frame on the stream,
not as an HTTP status, so the browser's stream reader sees one format.

Stream format::

    event: document_created
    data: {"documentId": "3f0c..."}

    event: status
    data: {"stage": "extracting", "message": "AI extracting content..."}

    event: error
    data: {"message": "PDF contains no extractable text", "code": "EMPTY_PDF"}
"""

from __future__ import annotations

import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File, Form, UploadFile
from fastapi.responses import StreamingResponse

from tutor_ingest.api.dependencies import get_coordinator, get_current_user
from tutor_ingest.core.config import settings
from tutor_ingest.services.authz import CurrentUser
from tutor_ingest.services.ingestion import IngestionCoordinator, IngestionHandle, UploadRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/documents", tags=["Documents"])

SSE_HEADERS = {
    "Cache-Control":     "no-cache",
    "X-Accel-Buffering": "no",    # disable nginx buffering for SSE
    "Connection":        "keep-alive",
}


def _parse_bool(value: str | None) -> bool:
    return (value or "").strip().lower() in {"true", "1", "yes", "on"}


@router.post(
    "/parse",
    summary="Upload a PDF and stream extraction progress",
    response_class=StreamingResponse,
)
async def parse_document(
    file:        UploadFile                     = File(..., description="PDF file"),
    doc_type:    str                            = Form("", description="lecture | exam | assignment"),
    title:       str                            = Form(""),
    course_id:   Optional[str]                  = Form(None),
    has_answers: Optional[str]                  = Form(None, description="'true' if the PDF includes answers"),
    user:        Optional[CurrentUser]          = Depends(get_current_user),
    coordinator: IngestionCoordinator           = Depends(get_coordinator),
) -> StreamingResponse:
    # Read one byte past the limit so oversize files are detected without
    # buffering the whole body.
    data = await file.read(settings.max_file_size_bytes + 1)

    upload = UploadRequest(
        user=user,
        doc_type=doc_type.strip().lower(),
        title=title or (file.filename or ""),
        data=data,
        filename=file.filename or "",
        content_type=file.content_type,
        course_id=(course_id or "").strip() or None,
        has_answers=_parse_bool(has_answers),
    )
    handle = coordinator.start(upload)

    return StreamingResponse(
        _event_stream(handle),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


async def _event_stream(handle: IngestionHandle) -> AsyncIterator[str]:
    """Drain the job's channel.

    Starlette stops iterating this generator when the client disconnects,
    so the finally block is where the job learns it has lost its reader.
    """
    try:
        async for frame in handle.channel.frames():
            yield frame
    finally:
        logger.debug("ParseStream | stream closed, signalling job")
        handle.cancel.set()
