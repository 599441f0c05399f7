"""
Document lifecycle operations outside the scheduler.

  retry_document      failed → pending, fresh auto-retry budget
  reprocess_document  completed | failed → pending (explicit re-run)
  requeue_documents   bulk reprocess, e.g. after a parser upgrade
  get_status          status + chunk/embedding counts for polling

Every transition drops the document's chunks in the same transaction as
the status flip, so a pending document never carries a stale chunk set.
"""

from __future__ import annotations

import logging
import uuid
from typing import Iterable

from docingest.core.errors import InvalidStateTransitionError
from docingest.db.repository import DocumentRepository
from docingest.schemas.documents import DocumentStatus, DocumentStatusResponse

logger = logging.getLogger(__name__)

REPROCESSABLE = (DocumentStatus.COMPLETED, DocumentStatus.FAILED)


class DocumentService:
    def __init__(self, repository: DocumentRepository | None = None) -> None:
        self._repository = repository or DocumentRepository()

    async def _require(self, document_id: uuid.UUID):
        document = await self._repository.get(document_id)
        if document is None:
            raise LookupError(f"Document {document_id} does not exist")
        return document

    async def retry_document(self, document_id: uuid.UUID) -> None:
        """Manual retry. Only failed documents qualify."""
        document = await self._require(document_id)
        if document.status != DocumentStatus.FAILED.value:
            raise InvalidStateTransitionError(
                f"Only failed documents can be retried (status={document.status})"
            )

        moved = await self._repository.reset_to_pending(
            document_id,
            from_statuses=[DocumentStatus.FAILED],
            retry_count=0,
        )
        if not moved:
            raise InvalidStateTransitionError(
                f"Document {document_id} left the failed state before retry"
            )
        logger.info("Manual retry queued | doc=%s", document_id)

    async def reprocess_document(self, document_id: uuid.UUID) -> None:
        document = await self._require(document_id)
        if document.status not in {s.value for s in REPROCESSABLE}:
            raise InvalidStateTransitionError(
                f"Cannot reprocess a document in status={document.status}"
            )

        moved = await self._repository.reset_to_pending(
            document_id, from_statuses=REPROCESSABLE, retry_count=0,
        )
        if not moved:
            raise InvalidStateTransitionError(
                f"Document {document_id} changed status before reprocess"
            )
        logger.info("Reprocess queued | doc=%s previous_status=%s", document_id, document.status)

    async def requeue_documents(
        self,
        statuses: Iterable[DocumentStatus] = REPROCESSABLE,
    ) -> int:
        """Reset every document in `statuses` to pending. Returns how many moved."""
        statuses = tuple(statuses)
        if DocumentStatus.PROCESSING in statuses or DocumentStatus.PENDING in statuses:
            raise InvalidStateTransitionError("Only completed or failed documents can be requeued")

        documents = await self._repository.find_documents_by_status(statuses)
        requeued = 0
        for document in documents:
            if await self._repository.reset_to_pending(
                document.id, from_statuses=statuses, retry_count=0,
            ):
                requeued += 1

        logger.info(
            "Requeued documents | count=%d statuses=%s",
            requeued, ",".join(s.value for s in statuses),
        )
        return requeued

    async def get_status(self, document_id: uuid.UUID) -> DocumentStatusResponse:
        document = await self._require(document_id)
        total, embedded = await self._repository.count_chunks(document_id)
        return DocumentStatusResponse(
            document_id=document.id,
            status=DocumentStatus(document.status),
            processing_error=document.processing_error,
            retry_count=document.retry_count,
            chunk_count=total,
            embedded_count=embedded,
            title=document.title,
            processed_at=document.processed_at,
        )
