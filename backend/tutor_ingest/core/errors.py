"""
Ingestion Error Taxonomy

Every failure the pipeline can surface to the caller maps to exactly one
machine-readable code from IngestionErrorCode. The codes travel on the
`error` SSE frame as `{message, code}`.

Categories:
  (a) client input    : INVALID_FILE, FILE_TOO_LARGE, VALIDATION_ERROR, COURSE_REQUIRED, DUPLICATE
  (b) authz / quota   : FORBIDDEN, QUOTA_EXCEEDED, QUOTA_ERROR
  (c) upstream model  : LLM_QUOTA_EXCEEDED, EXTRACTION_ERROR
  (d) data            : PDF_PARSE_ERROR, EMPTY_PDF
  (e) internal        : INTERNAL_ERROR (detail is logged, never streamed)
"""

from __future__ import annotations

import re
from enum import Enum


class IngestionErrorCode(str, Enum):
    FORBIDDEN          = "FORBIDDEN"
    QUOTA_EXCEEDED     = "QUOTA_EXCEEDED"
    QUOTA_ERROR        = "QUOTA_ERROR"
    INVALID_FILE       = "INVALID_FILE"
    FILE_TOO_LARGE     = "FILE_TOO_LARGE"
    PDF_PARSE_ERROR    = "PDF_PARSE_ERROR"
    EMPTY_PDF          = "EMPTY_PDF"
    VALIDATION_ERROR   = "VALIDATION_ERROR"
    COURSE_REQUIRED    = "COURSE_REQUIRED"
    DUPLICATE          = "DUPLICATE"
    NOT_FOUND          = "NOT_FOUND"
    LLM_QUOTA_EXCEEDED = "LLM_QUOTA_EXCEEDED"
    EXTRACTION_ERROR   = "EXTRACTION_ERROR"
    INTERNAL_ERROR     = "INTERNAL_ERROR"


# User-facing messages: never include upstream error detail.
ERROR_MESSAGES: dict[IngestionErrorCode, str] = {
    IngestionErrorCode.FORBIDDEN:          "Admin access required",
    IngestionErrorCode.QUOTA_EXCEEDED:     "Usage limit reached",
    IngestionErrorCode.QUOTA_ERROR:        "Quota check failed",
    IngestionErrorCode.INVALID_FILE:       "File is not a valid PDF",
    IngestionErrorCode.FILE_TOO_LARGE:     "File too large",
    IngestionErrorCode.PDF_PARSE_ERROR:    "Failed to parse PDF content",
    IngestionErrorCode.EMPTY_PDF:          "PDF contains no extractable text",
    IngestionErrorCode.VALIDATION_ERROR:   "Invalid upload data",
    IngestionErrorCode.COURSE_REQUIRED:    "Admin must select a course for uploads",
    IngestionErrorCode.DUPLICATE:          "This file has already been uploaded",
    IngestionErrorCode.NOT_FOUND:          "Resource not found",
    IngestionErrorCode.LLM_QUOTA_EXCEEDED: "AI service quota exceeded. Please contact your administrator.",
    IngestionErrorCode.EXTRACTION_ERROR:   "Failed to extract content from PDF",
    IngestionErrorCode.INTERNAL_ERROR:     "Internal server error",
}


# ---------------------------------------------------------------------------
# Exception hierarchy
# ---------------------------------------------------------------------------

class IngestionError(Exception):
    """Base class for failures that carry a wire error code."""

    code: IngestionErrorCode = IngestionErrorCode.INTERNAL_ERROR

    def __init__(self, message: str | None = None, code: IngestionErrorCode | None = None) -> None:
        if code is not None:
            self.code = code
        super().__init__(message or ERROR_MESSAGES[self.code])

    @property
    def message(self) -> str:
        return str(self)


class ForbiddenError(IngestionError):
    code = IngestionErrorCode.FORBIDDEN


class CourseRequiredError(IngestionError):
    code = IngestionErrorCode.COURSE_REQUIRED


class QuotaExceededError(IngestionError):
    code = IngestionErrorCode.QUOTA_EXCEEDED


class QuotaServiceError(IngestionError):
    code = IngestionErrorCode.QUOTA_ERROR


class PdfParseError(IngestionError):
    code = IngestionErrorCode.PDF_PARSE_ERROR


class KeyPoolExhaustedError(Exception):
    """Raised by the key pool when no credential is currently selectable."""

    status_code = 429

    def __init__(self, message: str = "All LLM API keys are unavailable") -> None:
        super().__init__(message)


class LLMResponseError(Exception):
    """The model returned something the extraction stage cannot use."""


# ---------------------------------------------------------------------------
# Upstream error inspection
# ---------------------------------------------------------------------------

_QUOTA_MESSAGE_RE = re.compile(r"quota|rate.?limit|429|RESOURCE_EXHAUSTED", re.IGNORECASE)


def extract_status_code(exc: BaseException) -> int | None:
    """
    Read an HTTP status from an SDK exception.

    openai.APIStatusError exposes `status_code`; google / httpx style errors
    expose `status` or `code`. Non-integer values are ignored.
    """
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    if isinstance(value, int):
        return value
    return None


def is_quota_error(exc: BaseException) -> bool:
    """True if the failure means the upstream model refused for rate/quota reasons."""
    if isinstance(exc, KeyPoolExhaustedError):
        return True
    if extract_status_code(exc) == 429:
        return True
    return bool(_QUOTA_MESSAGE_RE.search(str(exc)))
