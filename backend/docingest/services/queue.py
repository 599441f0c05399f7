"""
Processing Queue Scheduler

Picks the oldest pending document and runs it through the isolation layer:

  1. Load document, flip status → processing (or claim atomically)
  2. execute_document_processing() up to MAX_RETRIES (3) attempts
       permanent error  (not found / unsupported / corrupt / permission)
           → fail immediately, no further attempts
       anything else    (timeouts, crashed workers, network, unknown)
           → sleep min(base·2^(n-1)·(0.5+U·0.5), cap), try again
  3. Success: title/outline/counts + status=completed + new chunk set
     written in ONE transaction (DocumentRepository.complete_processing).
     A failed commit counts as a failed attempt and is classified like one.
  4. Embeddings are generated after the commit. An embedding failure is
     logged and leaves the document completed; the embed_pending_chunks
     task picks the chunks up later.
  5. Retries exhausted / permanent error: status=failed, last error message.

Concurrency:
  One document at a time per scheduler. tick() is guarded by an in-process
  busy flag so a slow document never causes overlapping ticks. Across
  instances, enable settings.claim_atomically so only one scheduler can move
  a given row out of pending.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from typing import Awaitable, Callable

from docingest.core.config import settings
from docingest.core.errors import EmbeddingServiceError, is_retryable_error
from docingest.core.retry import Sleep, compute_backoff_delay
from docingest.db.repository import DocumentRepository
from docingest.models.documents import Document
from docingest.observability.tracing import traced
from docingest.processing.embeddings import EmbeddingService
from docingest.schemas.documents import ProcessingResult
from docingest.services.periodic import PeriodicService
from docingest.workers.isolation import execute_document_processing

logger = logging.getLogger(__name__)

Processor = Callable[[str, str], Awaitable[ProcessingResult]]


class ProcessingQueue(PeriodicService):
    name = "processing-queue"

    def __init__(
        self,
        repository: DocumentRepository | None = None,
        embedding_service: EmbeddingService | None = None,
        *,
        processor: Processor = execute_document_processing,
        max_retries: int | None = None,
        base_delay: float | None = None,
        max_delay: float | None = None,
        interval: float | None = None,
        claim_atomically: bool | None = None,
        embed_after_processing: bool = True,
        sleep: Sleep = asyncio.sleep,
        rand: Callable[[], float] = random.random,
    ) -> None:
        super().__init__(interval or settings.queue_interval_seconds)
        self._repository = repository or DocumentRepository()
        self._embedding_service = embedding_service
        self._processor = processor
        self._max_retries = max_retries or settings.max_retries
        self._base_delay = settings.retry_base_delay_seconds if base_delay is None else base_delay
        self._max_delay = settings.retry_max_delay_seconds if max_delay is None else max_delay
        self._claim_atomically = (
            settings.claim_atomically if claim_atomically is None else claim_atomically
        )
        self._embed_after_processing = embed_after_processing
        self._sleep = sleep
        self._rand = rand
        self._busy = False

    @property
    def is_processing(self) -> bool:
        return self._busy

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def process_document_by_id(self, document_id: uuid.UUID) -> bool:
        """
        Process one document regardless of queue order.
        Returns True if it ended completed, False if failed or missing.
        """
        document = await self._repository.get(document_id)
        if document is None:
            logger.error("Document not found | doc=%s", document_id)
            return False

        await self._repository.mark_processing(document.id)
        return await self._process(document)

    async def process_next_pending_document(self) -> bool:
        """Process the oldest pending document. Returns whether one was found."""
        document = await self._repository.find_oldest_pending()
        if document is None:
            return False

        if self._claim_atomically:
            if not await self._repository.claim(document.id):
                logger.info("Claim lost to another scheduler | doc=%s", document.id)
                return True
        else:
            await self._repository.mark_processing(document.id)

        await self._process(document)
        return True

    async def tick(self) -> bool:
        """One scheduler tick; skipped while a previous tick is still running."""
        if self._busy:
            logger.debug("Queue busy, skipping tick")
            return False
        self._busy = True
        try:
            return await self.process_next_pending_document()
        finally:
            self._busy = False

    async def run_once(self) -> bool:
        return await self.tick()

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    @traced("process_document")
    async def _process(self, document: Document) -> bool:
        last_error: Exception | None = None

        for attempt in range(1, self._max_retries + 1):
            logger.info(
                "Processing | doc=%s file=%s mime=%s attempt=%d/%d",
                document.id, document.filename, document.mime_type,
                attempt, self._max_retries,
            )
            try:
                result = await self._processor(document.file_path, document.mime_type)
                # Persisting is part of the attempt: a failed commit is
                # classified and retried like a failed parse.
                chunk_count = await self._repository.complete_processing(document.id, result)
            except Exception as exc:
                last_error = exc
                if not is_retryable_error(exc):
                    logger.warning(
                        "Permanent failure, not retrying | doc=%s error=%s", document.id, exc,
                    )
                    break
                if attempt >= self._max_retries:
                    logger.warning(
                        "Retries exhausted | doc=%s attempts=%d error=%s",
                        document.id, attempt, exc,
                    )
                    break
                delay = compute_backoff_delay(
                    attempt, self._base_delay, self._max_delay, rand=self._rand,
                )
                logger.warning(
                    "Transient failure, retrying | doc=%s attempt=%d delay=%.2fs error=%s",
                    document.id, attempt, delay, exc,
                )
                await self._sleep(delay)
                continue

            logger.info(
                "Processing complete | doc=%s title=%r sections=%d chunks=%d words=%d",
                document.id, result.title, len(result.outline), chunk_count, result.word_count,
            )
            await self._embed(document.id)
            return True

        message = (str(last_error) or type(last_error).__name__) if last_error else "Unknown error"
        await self._repository.mark_failed(document.id, message)
        logger.error("Processing failed | doc=%s error=%s", document.id, message)
        return False

    async def _embed(self, document_id: uuid.UUID) -> None:
        if not self._embed_after_processing:
            return
        if self._embedding_service is None:
            self._embedding_service = EmbeddingService(repository=self._repository)
        try:
            await self._embedding_service.embed_document_chunks(document_id)
        except EmbeddingServiceError as exc:
            logger.error(
                "Embedding failed, chunks left for backfill | doc=%s error=%s",
                document_id, exc,
            )
        except Exception:
            # The document is already committed as completed; a repository
            # error here must not turn into a document failure.
            logger.exception(
                "Embedding pass crashed, chunks left for backfill | doc=%s", document_id,
            )
