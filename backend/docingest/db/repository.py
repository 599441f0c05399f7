"""
Document Repository — every SQL statement the pipeline issues.

The scheduler, sweeper and embedding service never build queries
themselves; they call this class. That keeps the transactional boundaries
in one place and lets tests swap in an in-memory fake with the same
method names.

Atomicity guarantees:
  - complete_processing(): delete old chunks + update document + insert new
    chunks run in ONE transaction. Readers see either the old chunk set or
    the new one, never a mix.
  - mark_failed() / reset_to_pending(): chunk deletion and the status flip
    share a transaction, so no partial chunk set survives a failure.

Race note:
  find_oldest_pending() followed by mark_processing() is read-then-update.
  Two scheduler instances can pick the same row. claim() is a conditional
  UPDATE … WHERE status='pending' that only one caller can win; the
  scheduler uses it when settings.claim_atomically is on.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docingest.db.session import get_session
from docingest.models.documents import Document, DocumentChunk
from docingest.schemas.documents import DocumentStatus, ProcessingResult

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DocumentRepository:
    """
    Thin persistence gateway. One instance can be shared process-wide;
    every method opens its own short transaction.
    """

    def __init__(self, session_factory: SessionFactory = get_session) -> None:
        self._session = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, document_id: uuid.UUID) -> Document | None:
        async with self._session() as db:
            result = await db.execute(select(Document).where(Document.id == document_id))
            return result.scalars().first()

    async def find_oldest_pending(self) -> Document | None:
        """Oldest upload first — FIFO by uploaded_at."""
        async with self._session() as db:
            result = await db.execute(
                select(Document)
                .where(Document.status == DocumentStatus.PENDING.value)
                .order_by(Document.uploaded_at.asc())
                .limit(1)
            )
            return result.scalars().first()

    async def find_auto_retry_candidates(
        self,
        uploaded_since: datetime,
        max_auto_retries: int,
        limit: int,
    ) -> Sequence[Document]:
        """Failed documents uploaded after `uploaded_since` with budget left."""
        async with self._session() as db:
            result = await db.execute(
                select(Document)
                .where(
                    Document.status == DocumentStatus.FAILED.value,
                    Document.uploaded_at >= uploaded_since,
                    Document.retry_count < max_auto_retries,
                )
                .order_by(Document.uploaded_at.asc())
                .limit(limit)
            )
            return result.scalars().all()

    async def find_documents_by_status(
        self, statuses: Iterable[DocumentStatus]
    ) -> Sequence[Document]:
        async with self._session() as db:
            result = await db.execute(
                select(Document)
                .where(Document.status.in_([s.value for s in statuses]))
                .order_by(Document.uploaded_at.asc())
            )
            return result.scalars().all()

    async def list_chunks(self, document_id: uuid.UUID) -> Sequence[DocumentChunk]:
        async with self._session() as db:
            result = await db.execute(
                select(DocumentChunk)
                .where(DocumentChunk.document_id == document_id)
                .order_by(DocumentChunk.chunk_index.asc())
            )
            return result.scalars().all()

    async def find_documents_with_unembedded_chunks(self, limit: int = 10) -> list[uuid.UUID]:
        """Completed documents that still have chunks without a vector."""
        async with self._session() as db:
            result = await db.execute(
                select(DocumentChunk.document_id)
                .join(Document, Document.id == DocumentChunk.document_id)
                .where(
                    Document.status == DocumentStatus.COMPLETED.value,
                    DocumentChunk.embedding.is_(None),
                )
                .group_by(DocumentChunk.document_id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_chunks(self, document_id: uuid.UUID) -> tuple[int, int]:
        """Return (total_chunks, embedded_chunks)."""
        async with self._session() as db:
            result = await db.execute(
                select(
                    func.count(DocumentChunk.id),
                    func.count(DocumentChunk.embedding),
                ).where(DocumentChunk.document_id == document_id)
            )
            total, embedded = result.one()
            return int(total), int(embedded)

    # ------------------------------------------------------------------
    # Status transitions
    # ------------------------------------------------------------------

    async def mark_processing(self, document_id: uuid.UUID) -> None:
        async with self._session() as db:
            await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(status=DocumentStatus.PROCESSING.value)
            )

    async def claim(self, document_id: uuid.UUID) -> bool:
        """
        Atomic pending → processing. Returns False if another caller got
        there first (rowcount 0).
        """
        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status == DocumentStatus.PENDING.value,
                )
                .values(status=DocumentStatus.PROCESSING.value)
            )
            return result.rowcount == 1

    async def complete_processing(
        self,
        document_id: uuid.UUID,
        result: ProcessingResult,
    ) -> int:
        """
        Replace the document's chunk set and mark it completed, atomically.
        Returns the number of chunks written.
        """
        async with self._session() as db:
            await db.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(
                    title=result.title,
                    outline=[s.model_dump() for s in result.outline],
                    page_count=result.page_count,
                    word_count=result.word_count,
                    status=DocumentStatus.COMPLETED.value,
                    processing_error=None,
                    processed_at=_utcnow(),
                )
            )
            db.add_all(
                DocumentChunk(
                    document_id=document_id,
                    content=chunk.content,
                    section_id=chunk.section_id,
                    section_title=chunk.section_title,
                    chunk_index=chunk.chunk_index,
                    start_char=chunk.start_char,
                    end_char=chunk.end_char,
                )
                for chunk in result.chunks
            )
        return len(result.chunks)

    async def mark_failed(self, document_id: uuid.UUID, error_message: str) -> None:
        async with self._session() as db:
            await db.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            await db.execute(
                update(Document)
                .where(Document.id == document_id)
                .values(
                    status=DocumentStatus.FAILED.value,
                    processing_error=error_message,
                )
            )

    async def reset_to_pending(
        self,
        document_id: uuid.UUID,
        *,
        from_statuses: Iterable[DocumentStatus],
        retry_count: int | None = None,
        increment_retry_count: bool = False,
    ) -> bool:
        """
        Move a document back to pending and drop its chunks.

        Only rows currently in `from_statuses` are touched; returns False if
        the row was not in one of them (someone else moved it first).
        """
        values: dict = {
            "status": DocumentStatus.PENDING.value,
            "processing_error": None,
        }
        if increment_retry_count:
            values["retry_count"] = Document.retry_count + 1
        elif retry_count is not None:
            values["retry_count"] = retry_count

        async with self._session() as db:
            result = await db.execute(
                update(Document)
                .where(
                    Document.id == document_id,
                    Document.status.in_([s.value for s in from_statuses]),
                )
                .values(**values)
            )
            if result.rowcount != 1:
                return False
            await db.execute(
                delete(DocumentChunk).where(DocumentChunk.document_id == document_id)
            )
            return True

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    async def update_chunk_embedding(
        self,
        chunk_id: uuid.UUID,
        embedding: list[float],
    ) -> None:
        """Per-row vector write."""
        async with self._session() as db:
            await db.execute(
                update(DocumentChunk)
                .where(DocumentChunk.id == chunk_id)
                .values(embedding=embedding)
            )
