"""
Embedding & Persistence Orchestrator
════════════════════════════════════

Lecture path only. Turns knowledge points into embedded, persisted chunks:

    items ──► build_chunk_content ──► embed in groups of EMBEDDING_BATCH
          ──► accumulate ──► flush every WRITE_BATCH chunks ──► batch_saved

Two independent batch sizes:
  embedding_batch_size  texts per embedding call  (model throughput)
  write_batch_size      chunks per store write    (store round-trips, and
                                                   how much is lost if the
                                                   process dies mid-run)

Cancellation:
  The cancel event is checked once per item before it is admitted to an
  embedding call. Calls already in flight are allowed to finish. On
  cancellation everything already embedded is flushed and the run returns
  cancelled=True; the caller treats that partial result as a success.

Progress frames:
  progress {0, total} once before the first call, then after every flush
  batch_saved {chunkIds, batchIndex} followed by progress {saved, total}.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

from tutor_ingest.llm.client import ModelClient
from tutor_ingest.processing.content import build_chunk_content
from tutor_ingest.repositories.base import ChunkRepository, NewChunk
from tutor_ingest.schemas.events import BatchSavedEvent, EventName, ProgressEvent
from tutor_ingest.schemas.items import KnowledgePoint, item_type_of
from tutor_ingest.services.events import EventChannel

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_EMBEDDING_BATCH_SIZE = 16
DEFAULT_WRITE_BATCH_SIZE     = 3


@dataclass
class EmbeddingRunResult:
    saved_ids:  list[str] = field(default_factory=list)
    cancelled:  bool      = False
    batches:    int       = 0
    elapsed_ms: float     = 0.0

    @property
    def saved_count(self) -> int:
        return len(self.saved_ids)


class EmbeddingOrchestrator:
    def __init__(
        self,
        model_client:         ModelClient,
        chunk_repo:           ChunkRepository,
        embedding_batch_size: int = DEFAULT_EMBEDDING_BATCH_SIZE,
        write_batch_size:     int = DEFAULT_WRITE_BATCH_SIZE,
    ) -> None:
        if embedding_batch_size < 1 or write_batch_size < 1:
            raise ValueError("batch sizes must be >= 1")
        self._client               = model_client
        self._chunks               = chunk_repo
        self._embedding_batch_size = embedding_batch_size
        self._write_batch_size     = write_batch_size

    async def run(
        self,
        record_id:      str,
        items:          Sequence[KnowledgePoint],
        channel:        EventChannel,
        cancel:         asyncio.Event,
        chunk_metadata: dict[str, Any] | None = None,
    ) -> EmbeddingRunResult:
        t0       = time.perf_counter()
        total    = len(items)
        contents = [build_chunk_content(item) for item in items]
        extra    = chunk_metadata or {}

        result  = EmbeddingRunResult()
        pending: list[NewChunk] = []

        channel.send(EventName.PROGRESS, ProgressEvent(current=0, total=total))

        async def flush() -> None:
            if not pending:
                return
            ids = await self._chunks.insert_chunks(list(pending))
            pending.clear()
            result.saved_ids.extend(ids)
            channel.send(
                EventName.BATCH_SAVED,
                BatchSavedEvent(chunk_ids=ids, batch_index=result.batches),
            )
            channel.send(EventName.PROGRESS, ProgressEvent(current=len(result.saved_ids), total=total))
            result.batches += 1

        cursor = 0
        while cursor < total and not result.cancelled:
            admitted: list[int] = []
            while cursor < total and len(admitted) < self._embedding_batch_size:
                if cancel.is_set():
                    result.cancelled = True
                    break
                admitted.append(cursor)
                cursor += 1

            if not admitted:
                break

            vectors = await self._client.embed([contents[i] for i in admitted])
            for i, vector in zip(admitted, vectors):
                item = items[i]
                pending.append(
                    NewChunk(
                        record_id=record_id,
                        content=contents[i],
                        embedding=vector,
                        metadata={"type": item_type_of(item).value, **item.to_wire(), **extra},
                    )
                )
                if len(pending) >= self._write_batch_size:
                    await flush()

        await flush()

        result.elapsed_ms = (time.perf_counter() - t0) * 1000
        logger.info(
            "Embedding run done | record=%s saved=%d/%d cancelled=%s elapsed=%.0fms",
            record_id, result.saved_count, total, result.cancelled, result.elapsed_ms,
        )
        return result
