"""
PDF → ordered page texts.

pypdf is synchronous and CPU-bound, so extraction runs in a worker thread to
keep the event loop responsive while other jobs stream progress.
"""

from __future__ import annotations

import asyncio
import io
import logging
from dataclasses import dataclass
from typing import Sequence

from pypdf import PdfReader

from tutor_ingest.core.errors import PdfParseError

logger = logging.getLogger(__name__)

PDF_MAGIC = b"%PDF-"


@dataclass(frozen=True)
class PageText:
    page: int   # 1-based
    text: str


def has_pdf_signature(data: bytes) -> bool:
    """Check the magic bytes before handing anything to the parser."""
    return len(data) >= len(PDF_MAGIC) and data[: len(PDF_MAGIC)] == PDF_MAGIC


def all_pages_blank(pages: Sequence[PageText]) -> bool:
    return not any(p.text.strip() for p in pages)


class PdfTextExtractor:
    async def extract(self, data: bytes) -> list[PageText]:
        try:
            pages = await asyncio.to_thread(_extract_pages, data)
        except Exception as exc:
            logger.warning("PDF extraction failed | bytes=%d error=%s", len(data), exc)
            raise PdfParseError() from exc
        logger.debug("PDF extracted | pages=%d", len(pages))
        return pages


def _extract_pages(data: bytes) -> list[PageText]:
    reader = PdfReader(io.BytesIO(data))
    return [
        PageText(page=i, text=page.extract_text() or "")
        for i, page in enumerate(reader.pages, start=1)
    ]
