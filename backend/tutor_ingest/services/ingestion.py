"""
Ingestion Coordinator

Drives one upload through a fixed, linear stage sequence while streaming
progress on an EventChannel:

  1. Authorize (role)                      → FORBIDDEN
  2. Validate fields, size                 → VALIDATION_ERROR / FILE_TOO_LARGE
  3. Course access                         → COURSE_REQUIRED / FORBIDDEN
  4. Consume quota                         → QUOTA_EXCEEDED / QUOTA_ERROR
  5. PDF magic bytes                       → INVALID_FILE
  6. Duplicate check (MD5 per course)      → DUPLICATE
     (only ready records with items count)
     ── nothing is persisted before this line ──
  7. Create record (parsing/draft), emit document_created
  8. Extract page texts                    → PDF_PARSE_ERROR / EMPTY_PDF
  9. Record → processing; stop quietly (record → ready) if already cancelled
 10. Structured extraction                 → LLM_QUOTA_EXCEEDED / EXTRACTION_ERROR
 11. Zero items → ready, not an error
 12. Branch:
       lecture          cards upsert, outline (both best effort) → embed + flush chunks
       exam/assignment  insert questions → write questionTypes to metadata
 13. Record → ready, emit status complete

Invariants:
  - Once a record exists, its persisted status is updated before the
    matching event is emitted.
  - Any uncaught exception sets the record to error, attempts cleanup of
    derived rows (cleanup failures are only logged) and emits INTERNAL_ERROR.
  - A hard cancel (task.cancel(), e.g. shutdown timeout) is handled like
    an uncaught exception, then CancelledError is re-raised.
  - The channel is closed exactly once, on every path.
  - Cancellation is cooperative: checked before extraction and per item in
    the embedding loop. A cancelled lecture keeps what was already embedded
    and ends 'ready'.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field

from tutor_ingest.core.errors import (
    ERROR_MESSAGES,
    IngestionError,
    IngestionErrorCode,
    PdfParseError,
    is_quota_error,
)
from tutor_ingest.models.records import RecordStatus
from tutor_ingest.processing.embeddings import EmbeddingOrchestrator
from tutor_ingest.processing.extraction import StructuredExtractor
from tutor_ingest.processing.outline import OutlineGenerator
from tutor_ingest.processing.pdf import PageText, PdfTextExtractor, all_pages_blank, has_pdf_signature
from tutor_ingest.repositories.base import NewRecord, RecordRepository, RepositoryRegistry
from tutor_ingest.schemas.events import (
    BatchSavedEvent,
    DocumentCreatedEvent,
    ErrorEvent,
    EventName,
    ItemEvent,
    ProgressEvent,
    Stage,
    StatusEvent,
)
from tutor_ingest.schemas.items import (
    ContentCategory,
    KnowledgePoint,
    Question,
    StructuredItem,
    item_type_of,
)
from tutor_ingest.services.authz import Authorizer, CurrentUser
from tutor_ingest.services.events import EventChannel
from tutor_ingest.services.quota import QuotaService, enforce_quota

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPES = frozenset({"application/pdf", "application/x-pdf"})

INTERRUPTED_MESSAGE = "Processing was interrupted"


# ---------------------------------------------------------------------------
# Checksum computation
# ---------------------------------------------------------------------------

def compute_md5(data: bytes) -> str:
    """Return MD5 hex digest of file bytes."""
    return hashlib.md5(data, usedforsecurity=False).hexdigest()


# ---------------------------------------------------------------------------
# Job types
# ---------------------------------------------------------------------------

@dataclass
class UploadRequest:
    user:         CurrentUser | None
    doc_type:     str
    title:        str
    data:         bytes
    filename:     str        = "upload.pdf"
    content_type: str | None = "application/pdf"
    course_id:    str | None = None
    has_answers:  bool       = False


@dataclass
class IngestionJob:
    """Ephemeral state for one request; discarded when the stream closes."""
    record_id: str
    category:  ContentCategory
    request:   UploadRequest
    records:   RecordRepository
    channel:   EventChannel
    cancel:    asyncio.Event
    pages:     list[PageText]       = field(default_factory=list)
    items:     list[StructuredItem] = field(default_factory=list)


@dataclass
class IngestionHandle:
    task:    asyncio.Task
    channel: EventChannel
    cancel:  asyncio.Event


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------

class IngestionCoordinator:
    def __init__(
        self,
        *,
        repositories:        RepositoryRegistry,
        pdf_extractor:       PdfTextExtractor,
        extractor:           StructuredExtractor,
        embedder:            EmbeddingOrchestrator,
        outliner:            OutlineGenerator,
        quota:               QuotaService,
        authorizer:          Authorizer,
        max_file_size_bytes: int,
    ) -> None:
        self._repos         = repositories
        self._pdf           = pdf_extractor
        self._extractor     = extractor
        self._embedder      = embedder
        self._outliner      = outliner
        self._quota         = quota
        self._authz         = authorizer
        self._max_file_size = max_file_size_bytes
        self._active: dict[asyncio.Task, asyncio.Event] = {}

    # ------------------------------------------------------------------
    # Task management
    # ------------------------------------------------------------------

    def start(self, request: UploadRequest) -> IngestionHandle:
        """Schedule the pipeline and hand back its channel immediately."""
        channel = EventChannel()
        cancel  = asyncio.Event()
        task    = asyncio.create_task(self.run(request, channel, cancel), name="ingestion-job")
        self._active[task] = cancel
        task.add_done_callback(self._active.pop)
        return IngestionHandle(task=task, channel=channel, cancel=cancel)

    @property
    def active_jobs(self) -> int:
        return len(self._active)

    async def shutdown(self, timeout: float = 30.0) -> None:
        """Signal cancellation to every running job and wait for them to settle."""
        if not self._active:
            return
        tasks = list(self._active)
        for cancel in self._active.values():
            cancel.set()
        logger.info("Coordinator | shutting down jobs=%d", len(tasks))
        _, pending = await asyncio.wait(tasks, timeout=timeout)
        if not pending:
            return
        logger.warning("Coordinator | cancelling jobs past shutdown timeout jobs=%d", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.wait(pending, timeout=timeout)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def run(self, request: UploadRequest, channel: EventChannel, cancel: asyncio.Event) -> None:
        job: IngestionJob | None = None
        try:
            job = await self._admit(request, channel, cancel)
            if job is not None:
                await self._process(job)
        except asyncio.CancelledError:
            logger.warning(
                "Ingestion interrupted | record=%s category=%s",
                job.record_id if job else None, request.doc_type,
            )
            await self._fail_internal(job, channel, INTERRUPTED_MESSAGE)
            raise
        except Exception:
            logger.exception(
                "Ingestion failed | record=%s category=%s",
                job.record_id if job else None, request.doc_type,
            )
            await self._fail_internal(job, channel)
        finally:
            channel.close()

    async def _admit(
        self,
        request: UploadRequest,
        channel: EventChannel,
        cancel:  asyncio.Event,
    ) -> IngestionJob | None:
        """Run every pre-record check; create the record if all pass."""
        try:
            user     = self._authz.ensure_can_upload(request.user)
            category = self._validate(request)
            self._authz.ensure_course_access(user, request.course_id)
            await enforce_quota(self._quota, user.id)

            if not has_pdf_signature(request.data):
                raise IngestionError(code=IngestionErrorCode.INVALID_FILE)

            records   = self._repos.records_for(category)
            file_hash = compute_md5(request.data)
            if await records.find_by_hash(request.course_id, file_hash):
                raise IngestionError(code=IngestionErrorCode.DUPLICATE)
        except IngestionError as exc:
            logger.info(
                "Ingestion rejected | code=%s user=%s doc_type=%s",
                exc.code.value, request.user.id if request.user else None, request.doc_type,
            )
            channel.send(EventName.ERROR, ErrorEvent(message=exc.message, code=exc.code))
            return None

        record_id = await records.create(
            NewRecord(
                owner_id=user.id,
                title=request.title.strip(),
                course_id=request.course_id,
                file_hash=file_hash,
            )
        )
        channel.send(EventName.DOCUMENT_CREATED, DocumentCreatedEvent(document_id=record_id))
        logger.info(
            "Ingestion started | record=%s category=%s bytes=%d",
            record_id, category.value, len(request.data),
        )
        return IngestionJob(
            record_id=record_id,
            category=category,
            request=request,
            records=records,
            channel=channel,
            cancel=cancel,
        )

    def _validate(self, request: UploadRequest) -> ContentCategory:
        try:
            category = ContentCategory(request.doc_type)
        except ValueError:
            raise IngestionError(code=IngestionErrorCode.VALIDATION_ERROR) from None

        if not request.title or not request.title.strip():
            raise IngestionError(code=IngestionErrorCode.VALIDATION_ERROR)

        is_pdf_type = (request.content_type or "").lower() in PDF_CONTENT_TYPES
        if not request.data or not (is_pdf_type or request.filename.lower().endswith(".pdf")):
            raise IngestionError("Only PDF files are supported", code=IngestionErrorCode.INVALID_FILE)

        if len(request.data) > self._max_file_size:
            raise IngestionError(code=IngestionErrorCode.FILE_TOO_LARGE)
        return category

    async def _process(self, job: IngestionJob) -> None:
        channel = job.channel

        # ── PDF → pages ──
        channel.send(EventName.STATUS, StatusEvent(stage=Stage.PARSING_PDF, message="Parsing PDF..."))
        try:
            job.pages = await self._pdf.extract(job.request.data)
        except PdfParseError as exc:
            await self._fail(job, exc.code, exc.message)
            return

        if all_pages_blank(job.pages):
            await self._fail(job, IngestionErrorCode.EMPTY_PDF)
            return

        await job.records.update_status(job.record_id, RecordStatus.PROCESSING)

        if job.cancel.is_set():
            await job.records.update_status(
                job.record_id, RecordStatus.READY, message="Cancelled before extraction", item_count=0,
            )
            logger.info("Ingestion cancelled before extraction | record=%s", job.record_id)
            return

        # ── Structured extraction ──
        channel.send(EventName.STATUS, StatusEvent(stage=Stage.EXTRACTING, message="AI extracting content..."))
        try:
            job.items = await self._extractor.extract(
                job.pages,
                job.category,
                has_answers=job.request.has_answers,
                on_batch_progress=lambda done, total: channel.send(
                    EventName.PROGRESS, ProgressEvent(current=done, total=total)
                ),
            )
        except Exception as exc:
            quota = is_quota_error(exc)
            logger.warning(
                "Extraction failed | record=%s quota=%s error=%s: %s",
                job.record_id, quota, type(exc).__name__, exc,
            )
            code = IngestionErrorCode.LLM_QUOTA_EXCEEDED if quota else IngestionErrorCode.EXTRACTION_ERROR
            await self._fail(job, code)
            return

        if not job.items:
            await job.records.update_status(
                job.record_id, RecordStatus.READY, message="No content extracted", item_count=0,
            )
            channel.send(EventName.PROGRESS, ProgressEvent(current=0, total=0))
            channel.send(EventName.STATUS, StatusEvent(stage=Stage.COMPLETE, message="No content extracted"))
            return

        # ── Category branch ──
        if job.category is ContentCategory.LECTURE:
            saved, cancelled = await self._ingest_lecture(job)
        else:
            saved, cancelled = await self._ingest_questions(job), False

        if cancelled:
            message = f"Cancelled: {saved} of {len(job.items)} items saved"
        else:
            message = f"Done! {len(job.items)} items extracted."
        await job.records.update_status(job.record_id, RecordStatus.READY, message=message, item_count=saved)
        channel.send(EventName.STATUS, StatusEvent(stage=Stage.COMPLETE, message=message))
        logger.info(
            "Ingestion complete | record=%s category=%s items=%d saved=%d cancelled=%s",
            job.record_id, job.category.value, len(job.items), saved, cancelled,
        )

    async def _ingest_lecture(self, job: IngestionJob) -> tuple[int, bool]:
        points  = [i for i in job.items if isinstance(i, KnowledgePoint)]
        channel = job.channel

        try:
            await self._repos.cards.upsert_from_points(job.request.course_id, points)
        except Exception as exc:
            logger.warning("Knowledge card upsert failed (non-fatal) | record=%s: %s", job.record_id, exc)

        channel.send(
            EventName.STATUS,
            StatusEvent(stage=Stage.EMBEDDING, message="Generating embeddings & saving..."),
        )
        self._emit_items(job)
        await self._save_outline(job, points)

        result = await self._embedder.run(
            job.record_id,
            points,
            channel,
            job.cancel,
            chunk_metadata={"documentName": job.request.title.strip()},
        )
        return result.saved_count, result.cancelled

    async def _save_outline(self, job: IngestionJob, points: list[KnowledgePoint]) -> None:
        try:
            outline = await self._outliner.generate(job.record_id, job.request.title.strip(), points)
            await self._repos.lecture.save_outline(job.record_id, outline.to_wire())
        except Exception as exc:
            logger.warning("Outline save failed (non-fatal) | record=%s: %s", job.record_id, exc)
            return
        logger.info("Outline saved | record=%s sections=%d", job.record_id, len(outline.sections))

    async def _ingest_questions(self, job: IngestionJob) -> int:
        questions = [i for i in job.items if isinstance(i, Question)]
        channel   = job.channel
        total     = len(questions)
        records   = self._repos.exam if job.category is ContentCategory.EXAM else self._repos.assignment

        channel.send(EventName.STATUS, StatusEvent(stage=Stage.EMBEDDING, message="Saving questions..."))
        for index, question in enumerate(questions):
            channel.send(
                EventName.ITEM,
                ItemEvent(index=index, type=item_type_of(question), data=question.to_wire()),
            )
            channel.send(EventName.PROGRESS, ProgressEvent(current=index + 1, total=total))

        ids = await records.insert_items(job.record_id, questions)
        channel.send(EventName.BATCH_SAVED, BatchSavedEvent(chunk_ids=ids, batch_index=0))

        question_types = list(dict.fromkeys(q.question_type for q in questions if q.question_type))
        if question_types:
            await records.update_metadata(job.record_id, {"questionTypes": question_types})
        return len(ids)

    def _emit_items(self, job: IngestionJob) -> None:
        for index, item in enumerate(job.items):
            job.channel.send(
                EventName.ITEM,
                ItemEvent(index=index, type=item_type_of(item), data=item.to_wire()),
            )

    # ------------------------------------------------------------------
    # Failure paths
    # ------------------------------------------------------------------

    async def _fail(self, job: IngestionJob, code: IngestionErrorCode, message: str | None = None) -> None:
        """Persist the error status, then emit the matching error frame."""
        message = message or ERROR_MESSAGES[code]
        await job.records.update_status(job.record_id, RecordStatus.ERROR, message=message)
        job.channel.send(EventName.ERROR, ErrorEvent(message=message, code=code))
        logger.info("Ingestion failed | record=%s code=%s", job.record_id, code.value)

    async def _fail_internal(
        self,
        job:     IngestionJob | None,
        channel: EventChannel,
        message: str | None = None,
    ) -> None:
        code    = IngestionErrorCode.INTERNAL_ERROR
        message = message or ERROR_MESSAGES[code]
        if job is not None:
            try:
                await job.records.update_status(job.record_id, RecordStatus.ERROR, message=message)
            except Exception as exc:
                logger.error("Could not mark record as error | record=%s: %s", job.record_id, exc)
            await self._cleanup(job)
        channel.send(EventName.ERROR, ErrorEvent(message=message, code=code))

    async def _cleanup(self, job: IngestionJob) -> None:
        try:
            await job.records.delete_items(job.record_id)
        except Exception as exc:
            logger.warning("Cleanup failed (ignored) | record=%s: %s", job.record_id, exc)
