"""
Repository contracts used by the ingestion pipeline.

The pipeline never touches SQLAlchemy directly; it talks to these protocols
so the storage technology stays swappable and tests can use in-memory fakes.
Every method is one short transaction.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from tutor_ingest.models.records import RecordStatus
from tutor_ingest.schemas.items import ContentCategory, KnowledgePoint, Question


@dataclass(frozen=True)
class NewRecord:
    owner_id:  str
    title:     str
    course_id: str | None = None
    file_hash: str | None = None


@dataclass(frozen=True)
class NewChunk:
    record_id: str
    content:   str
    embedding: list[float]
    metadata:  dict[str, Any] = field(default_factory=dict)


class RecordRepository(Protocol):
    category:       ContentCategory
    initial_status: RecordStatus

    async def create(self, record: NewRecord) -> str: ...

    async def update_status(
        self,
        record_id:  str,
        status:     RecordStatus,
        message:    str | None = None,
        item_count: int | None = None,
    ) -> None: ...

    async def update_metadata(self, record_id: str, metadata: dict[str, Any]) -> None:
        """Merge `metadata` into the record's existing metadata."""
        ...

    async def delete_items(self, record_id: str) -> None:
        """Remove everything stored for the record's items (chunks or question rows)."""
        ...

    async def find_by_hash(self, course_id: str | None, file_hash: str) -> str | None:
        """Id of a 'ready' record with at least one item and this file hash, if any."""
        ...


class LectureRecordRepository(RecordRepository, Protocol):
    async def save_outline(self, record_id: str, outline: dict[str, Any]) -> None: ...


class QuestionRecordRepository(RecordRepository, Protocol):
    async def insert_items(self, record_id: str, items: Sequence[Question]) -> list[str]: ...


class ChunkRepository(Protocol):
    async def insert_chunks(self, chunks: Sequence[NewChunk]) -> list[str]:
        """Persist chunks in one write; returns ids in input order."""
        ...


class KnowledgeCardRepository(Protocol):
    async def upsert_from_points(self, course_id: str | None, points: Sequence[KnowledgePoint]) -> int: ...


@dataclass
class RepositoryRegistry:
    lecture:    LectureRecordRepository
    exam:       QuestionRecordRepository
    assignment: QuestionRecordRepository
    chunks:     ChunkRepository
    cards:      KnowledgeCardRepository

    def records_for(self, category: ContentCategory) -> RecordRepository:
        if category is ContentCategory.LECTURE:
            return self.lecture
        if category is ContentCategory.EXAM:
            return self.exam
        if category is ContentCategory.ASSIGNMENT:
            return self.assignment
        raise ValueError(f"Unknown content category: {category!r}")
