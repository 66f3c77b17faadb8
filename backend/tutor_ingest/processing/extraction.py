"""
Structured Extraction Stage
═══════════════════════════

Turns ordered page texts into schema-validated structured items by asking
the generative model for a strict JSON array.

  pages ──► batches of `page_batch_size` (page order kept)
        ──► one generate_json() call per batch, sequentially
        ──► json.loads once ──► validate each entry, drop the bad ones
        ──► concatenate in batch order
        ──► lecture: deduplicate_by_title   exam/assignment: number order_num 1..N

Design notes:
  • Batches run one after another, never concurrently; at most one batch of
    pages is in flight per job.
  • A single malformed entry is dropped on its own; it never fails the batch.
  • A response whose root is not an array yields [] for that batch.
  • A response that is not JSON at all is a failure (LLMResponseError).
  • Provider errors (rate limit, auth, 5xx after pool exhaustion) propagate
    unchanged so the coordinator can classify them.
"""

from __future__ import annotations

import json
import logging
import math
import re
from typing import Callable, Sequence

from pydantic import ValidationError

from tutor_ingest.core.errors import LLMResponseError
from tutor_ingest.llm.client import ModelClient
from tutor_ingest.processing.pdf import PageText
from tutor_ingest.schemas.items import ContentCategory, KnowledgePoint, Question, StructuredItem

logger = logging.getLogger(__name__)

DEFAULT_PAGE_BATCH_SIZE = 10

BatchProgressCallback = Callable[[int, int], None]

_CODE_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL | re.IGNORECASE)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

LECTURE_PROMPT = """You are an expert academic content analyzer. Analyze the following lecture content and extract structured knowledge points.

For each knowledge point, extract:
- title: A clear, concise title for the concept
- definition: A comprehensive explanation/definition
- keyFormulas: Any relevant mathematical formulas (optional, omit if none)
- keyConcepts: Related key terms and concepts (optional, omit if none)
- examples: Concrete examples mentioned (optional, omit if none)
- sourcePages: Array of page numbers where this concept appears

Return ONLY a valid JSON array of knowledge points. No markdown, no explanation.

Lecture content:
{pages}"""

QUESTION_PROMPT = """You are an expert academic content analyzer. Analyze the following exam/assignment document and extract each individual question.

For each question, extract:
- questionNumber: The question number/label as shown (e.g. "1", "1a", "Q1")
- content: The full question text including any sub-parts
- options: Array of answer options if it's a multiple choice question (omit if not MC)
{answer_instruction}
- score: Points/marks allocated if shown (omit if not shown)
- type: One of "choice", "fill_blank", "short_answer", "calculation", "proof", "essay" (omit if unclear)
- sourcePage: The page number where the question appears

Return ONLY a valid JSON array of questions. No markdown, no explanation.

Document content:
{pages}"""

_ANSWERS_PRESENT = "- referenceAnswer: The reference answer or solution provided (extract from the document)"
_ANSWERS_ABSENT  = "- referenceAnswer: Omit this field (no answers provided in document)"


def format_pages(pages: Sequence[PageText]) -> str:
    return "\n\n".join(f"[Page {p.page}]\n{p.text}" for p in pages)


def build_prompt(pages: Sequence[PageText], category: ContentCategory, has_answers: bool = False) -> str:
    if category is ContentCategory.LECTURE:
        return LECTURE_PROMPT.format(pages=format_pages(pages))
    return QUESTION_PROMPT.format(
        pages=format_pages(pages),
        answer_instruction=_ANSWERS_PRESENT if has_answers else _ANSWERS_ABSENT,
    )


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------

def strip_code_fence(text: str) -> str:
    match = _CODE_FENCE_RE.match(text)
    return match.group(1) if match else text.strip()


def parse_items(text: str, category: ContentCategory) -> list[StructuredItem]:
    """
    Decode one model response into validated items.

    Raises LLMResponseError if the text is not JSON. Returns [] if the root
    is not an array. Entries that fail validation are skipped.
    """
    try:
        raw = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as exc:
        raise LLMResponseError(f"Model response is not valid JSON: {exc}") from exc

    if not isinstance(raw, list):
        logger.warning("Extraction | non-array response root=%s, batch yields 0 items", type(raw).__name__)
        return []

    model = KnowledgePoint if category is ContentCategory.LECTURE else Question
    items: list[StructuredItem] = []
    dropped = 0
    for entry in raw:
        if not isinstance(entry, dict):
            dropped += 1
            continue
        try:
            items.append(model.model_validate(entry))
        except ValidationError:
            dropped += 1

    if dropped:
        logger.info("Extraction | dropped %d invalid entries of %d", dropped, len(raw))
    return items


def deduplicate_by_title(points: Sequence[KnowledgePoint]) -> list[KnowledgePoint]:
    """Collapse by case-insensitive title; first occurrence wins, order kept."""
    seen: set[str] = set()
    unique: list[KnowledgePoint] = []
    for kp in points:
        key = kp.title.lower()
        if key in seen:
            continue
        seen.add(key)
        unique.append(kp)
    return unique


def page_batches(pages: Sequence[PageText], batch_size: int) -> list[list[PageText]]:
    if len(pages) <= batch_size:
        return [list(pages)]
    return [list(pages[i : i + batch_size]) for i in range(0, len(pages), batch_size)]


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

class StructuredExtractor:
    def __init__(self, model_client: ModelClient, page_batch_size: int = DEFAULT_PAGE_BATCH_SIZE) -> None:
        if page_batch_size < 1:
            raise ValueError("page_batch_size must be >= 1")
        self._client          = model_client
        self._page_batch_size = page_batch_size

    async def extract(
        self,
        pages:             Sequence[PageText],
        category:          ContentCategory,
        has_answers:       bool                         = False,
        on_batch_progress: BatchProgressCallback | None = None,
    ) -> list[StructuredItem]:
        if not pages:
            return []

        batches = page_batches(pages, self._page_batch_size)
        total   = math.ceil(len(pages) / self._page_batch_size)

        collected: list[StructuredItem] = []
        for index, batch in enumerate(batches):
            prompt = build_prompt(batch, category, has_answers)
            text   = await self._client.generate_json(prompt)
            items  = parse_items(text, category)
            collected.extend(items)

            logger.info(
                "Extraction | category=%s batch=%d/%d pages=%d-%d items=%d",
                category.value, index + 1, total, batch[0].page, batch[-1].page, len(items),
            )
            if on_batch_progress:
                on_batch_progress(index + 1, total)

        if category is ContentCategory.LECTURE:
            return list(deduplicate_by_title(collected))  # type: ignore[arg-type]

        for order, question in enumerate(collected, start=1):
            question.order_num = order  # type: ignore[union-attr]
        return collected
