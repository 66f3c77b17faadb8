"""
SQLAlchemy ORM Models: Ingested Records, Chunks, Questions

One durable record row per upload, in the table for its category:

    lecture     → lecture_documents  ─┬─< lecture_chunks   (embedding-bearing)
                                      └── knowledge_cards  (per course, by title)
    exam        → exam_papers        ──< exam_questions
    assignment  → assignments        ──< assignment_items

Record status machine (status column):
    parsing / draft → processing → ready | error
    Lecture rows start in 'parsing', exam and assignment rows in 'draft'.
    No transition leaves 'ready' or 'error'; a re-upload creates a new row.

file_hash is the MD5 of the uploaded bytes. Only a 'ready' row of the same
category and course with at least one saved item blocks a re-upload of the
same file; failed and empty runs can be retried.

lecture_documents.outline holds the generated document outline (JSONB),
written once after extraction and never required.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, declared_attr, mapped_column


class Base(DeclarativeBase):
    pass


class RecordStatus(str, Enum):
    PARSING    = "parsing"
    DRAFT      = "draft"
    PROCESSING = "processing"
    READY      = "ready"
    ERROR      = "error"


_STATUS_CHECK = "status IN ('parsing', 'draft', 'processing', 'ready', 'error')"


# ---------------------------------------------------------------------------
# Shared record columns
# ---------------------------------------------------------------------------

class RecordMixin:
    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
    owner_id:  Mapped[str]           = mapped_column(Text, nullable=False, index=True)
    course_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title:     Mapped[str]           = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(Text, nullable=False)
    status_message: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="User-facing message; populated on 'error'",
    )

    doc_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata",
        JSONB,
        nullable=False,
        default=dict,
        server_default="{}",
    )
    file_hash:  Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    item_count: Mapped[int]           = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )

    @declared_attr.directive
    def __table_args__(cls) -> tuple:
        name = cls.__tablename__  # type: ignore[attr-defined]
        return (
            CheckConstraint(_STATUS_CHECK, name=f"{name}_status_check"),
            Index(f"idx_{name}_course_hash", "course_id", "file_hash"),
        )


class LectureDocument(RecordMixin, Base):
    __tablename__ = "lecture_documents"

    outline: Mapped[Optional[dict[str, Any]]] = mapped_column(JSONB, nullable=True)


class ExamPaper(RecordMixin, Base):
    __tablename__ = "exam_papers"


class Assignment(RecordMixin, Base):
    __tablename__ = "assignments"


# ---------------------------------------------------------------------------
# Derived artifacts
# ---------------------------------------------------------------------------

class LectureChunk(Base):
    """One embedded knowledge point; the retrieval unit for lecture content."""

    __tablename__ = "lecture_chunks"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    lecture_document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("lecture_documents.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    content:   Mapped[str]                 = mapped_column(Text, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(ARRAY(Float), nullable=True)
    chunk_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default="{}",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(),
    )


class KnowledgeCard(Base):
    """Searchable flash-card view of a knowledge point, unique per (course, title)."""

    __tablename__ = "knowledge_cards"
    __table_args__ = (
        UniqueConstraint("course_id", "title_key", name="uq_knowledge_cards_course_title"),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    course_id:  Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    title:      Mapped[str]           = mapped_column(Text, nullable=False)
    title_key:  Mapped[str]           = mapped_column(Text, nullable=False, comment="lower(title)")
    definition: Mapped[str]           = mapped_column(Text, nullable=False)
    card_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default="{}",
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now(),
    )


class ExamQuestion(Base):
    __tablename__ = "exam_questions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    paper_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("exam_papers.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    order_num:   Mapped[int]                       = mapped_column(Integer, nullable=False)
    type:        Mapped[str]                       = mapped_column(Text, nullable=False, default="")
    content:     Mapped[str]                       = mapped_column(Text, nullable=False)
    options:     Mapped[Optional[dict[str, str]]]  = mapped_column(JSONB, nullable=True)
    answer:      Mapped[str]                       = mapped_column(Text, nullable=False, default="")
    explanation: Mapped[str]                       = mapped_column(Text, nullable=False, default="")
    points:      Mapped[float]                     = mapped_column(Float, nullable=False, default=0)
    question_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default="{}",
    )


class AssignmentItem(Base):
    __tablename__ = "assignment_items"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    assignment_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("assignments.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    order_num:        Mapped[int]                      = mapped_column(Integer, nullable=False)
    type:             Mapped[str]                      = mapped_column(Text, nullable=False, default="")
    content:          Mapped[str]                      = mapped_column(Text, nullable=False)
    options:          Mapped[Optional[dict[str, str]]] = mapped_column(JSONB, nullable=True)
    reference_answer: Mapped[str]                      = mapped_column(Text, nullable=False, default="")
    explanation:      Mapped[str]                      = mapped_column(Text, nullable=False, default="")
    points:           Mapped[float]                    = mapped_column(Float, nullable=False, default=0)
    item_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONB, nullable=False, default=dict, server_default="{}",
    )
