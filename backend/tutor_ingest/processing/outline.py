"""
Document Outline Generator
══════════════════════════

Groups a lecture's knowledge points into titled sections.

  points ≤ llm_threshold  → local outline: one section per window of
                            `section_pages` pages, by each point's first
                            source page
  points > llm_threshold  → one generate_json() call; any failure (provider
                            error, bad JSON, schema mismatch) falls back to
                            the local outline

Saving the outline is best-effort; the coordinator logs and continues if
this step fails.
"""

from __future__ import annotations

import json
import logging
from typing import Sequence

from pydantic import ValidationError

from tutor_ingest.core.errors import LLMResponseError
from tutor_ingest.llm.client import ModelClient
from tutor_ingest.processing.extraction import strip_code_fence
from tutor_ingest.schemas.items import KnowledgePoint
from tutor_ingest.schemas.outline import DocumentOutline, OutlineResponse, OutlineSection

logger = logging.getLogger(__name__)

DEFAULT_LLM_THRESHOLD = 10
DEFAULT_SECTION_PAGES = 10

OUTLINE_PROMPT = """You are an academic document outline generator. Create a structured outline for this document.

Document title: {title}

Knowledge points extracted ({count} total):
{points}

Generate an outline with:
- title: A descriptive title for the document
- summary: A 1-2 sentence summary of the document content
- sections: Group knowledge points into logical sections, each with:
  - title: Section heading
  - knowledgePoints: Array of knowledge point titles belonging to this section
  - briefDescription: One sentence describing the section

Rules:
- Every knowledge point must appear in exactly one section
- Section titles should reflect the academic content
- Order sections logically (introduction → core concepts → advanced topics → exercises)

Return ONLY a valid JSON object. No markdown, no explanation."""


def _first_page(kp: KnowledgePoint) -> int:
    return min(kp.source_pages) if kp.source_pages else 1


def build_local_outline(
    document_id:   str,
    title:         str,
    points:        Sequence[KnowledgePoint],
    section_pages: int = DEFAULT_SECTION_PAGES,
) -> DocumentOutline:
    windows: dict[int, list[KnowledgePoint]] = {}
    for kp in points:
        windows.setdefault((_first_page(kp) - 1) // section_pages, []).append(kp)

    sections = []
    for window in sorted(windows):
        members = windows[window]
        start   = window * section_pages + 1
        end     = max(_first_page(kp) for kp in members)
        sections.append(
            OutlineSection(
                title=f"Pages {start}-{end}" if end > start else f"Page {start}",
                knowledge_points=[kp.title for kp in members],
                brief_description=f"Covers {', '.join(kp.title for kp in members)}.",
            )
        )

    return DocumentOutline(
        document_id=document_id,
        title=title or "Untitled Document",
        summary=f"Document covering {len(points)} knowledge points across {len(sections)} sections.",
        total_knowledge_points=len(points),
        sections=sections,
    )


class OutlineGenerator:
    def __init__(
        self,
        model_client:  ModelClient,
        llm_threshold: int = DEFAULT_LLM_THRESHOLD,
        section_pages: int = DEFAULT_SECTION_PAGES,
    ) -> None:
        self._client        = model_client
        self._llm_threshold = llm_threshold
        self._section_pages = section_pages

    async def generate(
        self,
        document_id: str,
        title:       str,
        points:      Sequence[KnowledgePoint],
    ) -> DocumentOutline:
        if len(points) <= self._llm_threshold:
            return build_local_outline(document_id, title, points, self._section_pages)

        prompt = OUTLINE_PROMPT.format(
            title=title,
            count=len(points),
            points="\n".join(f'- "{kp.title}": {kp.definition[:150]}' for kp in points),
        )
        try:
            text = await self._client.generate_json(prompt)
            try:
                raw = json.loads(strip_code_fence(text))
            except json.JSONDecodeError as exc:
                raise LLMResponseError(f"Outline response is not valid JSON: {exc}") from exc
            parsed = OutlineResponse.model_validate(raw)
        except (LLMResponseError, ValidationError) as exc:
            logger.warning("Outline | invalid model response, using local outline: %s", exc)
            return build_local_outline(document_id, title, points, self._section_pages)
        except Exception as exc:
            logger.warning("Outline | model call failed, using local outline: %s: %s", type(exc).__name__, exc)
            return build_local_outline(document_id, title, points, self._section_pages)

        return DocumentOutline(
            document_id=document_id,
            title=parsed.title,
            summary=parsed.summary,
            total_knowledge_points=len(points),
            sections=parsed.sections,
        )
