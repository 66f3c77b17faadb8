"""
Progress event payloads and HTTP error envelopes.

Every frame on the parse stream is one of these named events:

    event: document_created   data: {"documentId": "..."}
    event: status             data: {"stage": "extracting", "message": "..."}
    event: progress           data: {"current": 3, "total": 5}
    event: item               data: {"index": 0, "type": "knowledge_point", "data": {...}}
    event: batch_saved        data: {"chunkIds": ["..."], "batchIndex": 0}
    event: error              data: {"message": "...", "code": "EMPTY_PDF"}
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from tutor_ingest.core.errors import IngestionErrorCode
from tutor_ingest.schemas.items import ItemType


class EventName(str, Enum):
    DOCUMENT_CREATED = "document_created"
    STATUS           = "status"
    PROGRESS         = "progress"
    ITEM             = "item"
    BATCH_SAVED      = "batch_saved"
    ERROR            = "error"


class Stage(str, Enum):
    PARSING_PDF = "parsing_pdf"
    EXTRACTING  = "extracting"
    EMBEDDING   = "embedding"
    COMPLETE    = "complete"


class _EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DocumentCreatedEvent(_EventPayload):
    document_id: str


class StatusEvent(_EventPayload):
    stage:   Stage
    message: str


class ProgressEvent(_EventPayload):
    current: int = Field(..., ge=0)
    total:   int = Field(..., ge=0)


class ItemEvent(_EventPayload):
    index: int = Field(..., ge=0)
    type:  ItemType
    data:  dict[str, Any]


class BatchSavedEvent(_EventPayload):
    chunk_ids:   list[str]
    batch_index: int = Field(..., ge=0)


class ErrorEvent(_EventPayload):
    message: str
    code:    IngestionErrorCode


EVENT_PAYLOADS: dict[EventName, type[_EventPayload]] = {
    EventName.DOCUMENT_CREATED: DocumentCreatedEvent,
    EventName.STATUS:           StatusEvent,
    EventName.PROGRESS:         ProgressEvent,
    EventName.ITEM:             ItemEvent,
    EventName.BATCH_SAVED:      BatchSavedEvent,
    EventName.ERROR:            ErrorEvent,
}


# ---------------------------------------------------------------------------
# Non-stream error envelope (request validation, admin endpoints)
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error; may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """Uniform error envelope for all non-stream 4xx/5xx responses."""
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Key pool monitoring
# ---------------------------------------------------------------------------

class CredentialView(BaseModel):
    id:              int
    masked_key:      str
    status:          str
    cooldown_until:  float | None
    cooldown_step:   int
    requests:        int
    errors:          int
    last_error_code: int | None
    last_error_at:   float | None


class KeyPoolSnapshotResponse(BaseModel):
    size:        int
    healthy:     int
    credentials: list[CredentialView]
