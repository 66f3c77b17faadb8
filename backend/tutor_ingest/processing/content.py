"""Embedding text for structured items."""

from __future__ import annotations

from tutor_ingest.schemas.items import KnowledgePoint, Question, StructuredItem


def build_chunk_content(item: StructuredItem) -> str:
    if isinstance(item, KnowledgePoint):
        return _knowledge_point_content(item)
    if isinstance(item, Question):
        return _question_content(item)
    raise TypeError(f"Cannot build chunk content for {type(item).__name__}")


def _knowledge_point_content(kp: KnowledgePoint) -> str:
    lines = [f"## {kp.title}", kp.definition]
    if kp.formulas:
        lines.append(f"Formulas: {'; '.join(kp.formulas)}")
    if kp.concepts:
        lines.append(f"Concepts: {', '.join(kp.concepts)}")
    if kp.examples:
        lines.append(f"Examples: {'; '.join(kp.examples)}")
    return "\n".join(lines)


def _question_content(q: Question) -> str:
    label = q.question_number or str(q.order_num)
    lines = [f"Q{label}: {q.content}"]
    if q.options:
        lines.append(f"Options: {' | '.join(q.options)}")
    if q.reference_answer:
        lines.append(f"Answer: {q.reference_answer}")
    return "\n".join(lines)
