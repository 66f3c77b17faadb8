"""
SQLAlchemy implementations of the repository contracts.

All repositories share one async_sessionmaker and open a fresh transaction
per call. Record tables share their columns (RecordMixin), so one generic
SqlRecordRepository covers create / status / metadata / dedup lookups and
the category subclasses only differ in how items are stored. Lecture items
are embedded chunks written through SqlChunkRepository; the lecture record
repository deletes them on cleanup and stores the document outline.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Sequence

from sqlalchemy import delete, literal, select, update
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tutor_ingest.db.session import get_session
from tutor_ingest.models.records import (
    Assignment,
    AssignmentItem,
    ExamPaper,
    ExamQuestion,
    KnowledgeCard,
    LectureChunk,
    LectureDocument,
    RecordMixin,
    RecordStatus,
)
from tutor_ingest.repositories.base import NewChunk, NewRecord, RepositoryRegistry
from tutor_ingest.schemas.items import ContentCategory, KnowledgePoint, Question

logger = logging.getLogger(__name__)


def option_map(options: Sequence[str] | None) -> dict[str, str] | None:
    """["x", "y"] → {"A": "x", "B": "y"}"""
    if not options:
        return None
    return {chr(65 + i): opt for i, opt in enumerate(options)}


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class SqlRecordRepository:
    model:          type[RecordMixin]
    category:       ContentCategory
    initial_status: RecordStatus = RecordStatus.DRAFT

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def create(self, record: NewRecord) -> str:
        row = self.model(
            id=uuid.uuid4(),
            owner_id=record.owner_id,
            course_id=record.course_id,
            title=record.title,
            status=self.initial_status.value,
            file_hash=record.file_hash,
            doc_metadata={},
            item_count=0,
        )
        async with get_session(self._sessions) as session:
            session.add(row)
        logger.info("Record created | category=%s id=%s", self.category.value, row.id)
        return str(row.id)

    async def update_status(
        self,
        record_id:  str,
        status:     RecordStatus,
        message:    str | None = None,
        item_count: int | None = None,
    ) -> None:
        values: dict[str, Any] = {"status": status.value, "status_message": message}
        if item_count is not None:
            values["item_count"] = item_count
        async with get_session(self._sessions) as session:
            await session.execute(
                update(self.model).where(self.model.id == uuid.UUID(record_id)).values(**values)
            )

    async def update_metadata(self, record_id: str, metadata: dict[str, Any]) -> None:
        async with get_session(self._sessions) as session:
            await session.execute(
                update(self.model)
                .where(self.model.id == uuid.UUID(record_id))
                .values(doc_metadata=self.model.doc_metadata.op("||")(literal(metadata, type_=JSONB)))
            )

    async def find_by_hash(self, course_id: str | None, file_hash: str) -> str | None:
        stmt = select(self.model.id).where(
            self.model.file_hash == file_hash,
            self.model.status == RecordStatus.READY.value,
            self.model.item_count > 0,
        )
        if course_id is None:
            stmt = stmt.where(self.model.course_id.is_(None))
        else:
            stmt = stmt.where(self.model.course_id == course_id)
        async with get_session(self._sessions) as session:
            found = (await session.execute(stmt.limit(1))).scalar_one_or_none()
        return str(found) if found is not None else None


class SqlLectureRepository(SqlRecordRepository):
    model          = LectureDocument
    category       = ContentCategory.LECTURE
    initial_status = RecordStatus.PARSING

    async def save_outline(self, record_id: str, outline: dict[str, Any]) -> None:
        async with get_session(self._sessions) as session:
            await session.execute(
                update(LectureDocument)
                .where(LectureDocument.id == uuid.UUID(record_id))
                .values(outline=outline)
            )

    async def delete_items(self, record_id: str) -> None:
        async with get_session(self._sessions) as session:
            await session.execute(
                delete(LectureChunk).where(LectureChunk.lecture_document_id == uuid.UUID(record_id))
            )


class SqlExamRepository(SqlRecordRepository):
    model    = ExamPaper
    category = ContentCategory.EXAM

    async def insert_items(self, record_id: str, items: Sequence[Question]) -> list[str]:
        rows = [
            ExamQuestion(
                id=uuid.uuid4(),
                paper_id=uuid.UUID(record_id),
                order_num=q.order_num,
                type=q.question_type or "",
                content=q.content,
                options=option_map(q.options),
                answer=q.reference_answer or "",
                explanation="",
                points=q.points,
                question_metadata={"sourcePage": q.source_page, "questionNumber": q.question_number},
            )
            for q in items
        ]
        async with get_session(self._sessions) as session:
            session.add_all(rows)
        return [str(r.id) for r in rows]

    async def delete_items(self, record_id: str) -> None:
        async with get_session(self._sessions) as session:
            await session.execute(delete(ExamQuestion).where(ExamQuestion.paper_id == uuid.UUID(record_id)))


class SqlAssignmentRepository(SqlRecordRepository):
    model    = Assignment
    category = ContentCategory.ASSIGNMENT

    async def insert_items(self, record_id: str, items: Sequence[Question]) -> list[str]:
        rows = [
            AssignmentItem(
                id=uuid.uuid4(),
                assignment_id=uuid.UUID(record_id),
                order_num=q.order_num,
                type=q.question_type or "",
                content=q.content,
                options=option_map(q.options),
                reference_answer=q.reference_answer or "",
                explanation="",
                points=q.points,
                item_metadata={"sourcePage": q.source_page, "questionNumber": q.question_number},
            )
            for q in items
        ]
        async with get_session(self._sessions) as session:
            session.add_all(rows)
        return [str(r.id) for r in rows]

    async def delete_items(self, record_id: str) -> None:
        async with get_session(self._sessions) as session:
            await session.execute(
                delete(AssignmentItem).where(AssignmentItem.assignment_id == uuid.UUID(record_id))
            )


# ---------------------------------------------------------------------------
# Chunks and knowledge cards
# ---------------------------------------------------------------------------

class SqlChunkRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def insert_chunks(self, chunks: Sequence[NewChunk]) -> list[str]:
        rows = [
            LectureChunk(
                id=uuid.uuid4(),
                lecture_document_id=uuid.UUID(c.record_id),
                content=c.content,
                embedding=c.embedding,
                chunk_metadata=c.metadata,
            )
            for c in chunks
        ]
        async with get_session(self._sessions) as session:
            session.add_all(rows)
        return [str(r.id) for r in rows]


class SqlKnowledgeCardRepository:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._sessions = session_factory

    async def upsert_from_points(self, course_id: str | None, points: Sequence[KnowledgePoint]) -> int:
        if not points:
            return 0
        values = [
            {
                "id":         uuid.uuid4(),
                "course_id":  course_id,
                "title":      kp.title,
                "title_key":  kp.title.lower(),
                "definition": kp.definition,
                "metadata":   {
                    "formulas":    kp.formulas or [],
                    "concepts":    kp.concepts or [],
                    "examples":    kp.examples or [],
                    "sourcePages": kp.source_pages,
                },
            }
            for kp in points
        ]
        stmt = pg_insert(KnowledgeCard.__table__).values(values)
        stmt = stmt.on_conflict_do_update(
            constraint="uq_knowledge_cards_course_title",
            set_={
                "title":      stmt.excluded["title"],
                "definition": stmt.excluded["definition"],
                "metadata":   stmt.excluded["metadata"],
            },
        )
        async with get_session(self._sessions) as session:
            await session.execute(stmt)
        return len(values)


def build_sql_repositories(session_factory: async_sessionmaker[AsyncSession]) -> RepositoryRegistry:
    return RepositoryRegistry(
        lecture=SqlLectureRepository(session_factory),
        exam=SqlExamRepository(session_factory),
        assignment=SqlAssignmentRepository(session_factory),
        chunks=SqlChunkRepository(session_factory),
        cards=SqlKnowledgeCardRepository(session_factory),
    )
