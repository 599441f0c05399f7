"""
Embedding Service  —  Batch Embeddings with Retry
══════════════════════════════════════════════════

Design goals:
  • Batch efficiency: one API call per EMBEDDING_BATCH_SIZE texts (default 100)
  • Retry logic: exponential back-off, ONLY on rate-limit / network failures
  • Fixed dimensionality: every vector must match settings.embedding_dimensions;
    a mismatch is a hard failure (no truncation, no padding)
  • Decoupled accounting: embedding failures never consume the document's
    processing retries

OpenAI embedding model:
  text-embedding-3-small  → 1536 dims (default)

Persistence:
  Vectors are written one row at a time through DocumentRepository.
  The ORM cannot express a bulk "set a different vector per row" update,
  and per-row writes keep each transaction tiny.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from typing import Sequence

from docingest.core.config import settings
from docingest.core.errors import EmbeddingDimensionError, EmbeddingServiceError
from docingest.core.retry import Sleep, retry_with_backoff
from docingest.db.repository import DocumentRepository
from docingest.observability.tracing import traced

logger = logging.getLogger(__name__)

_TRANSIENT_MESSAGE_RE = re.compile(r"rate.?limit|network|connection|timed?.?out", re.IGNORECASE)
_TRANSIENT_ERROR_NAMES = {"RateLimitError", "APIConnectionError", "APITimeoutError"}


def is_transient_embedding_error(exc: BaseException) -> bool:
    """Rate limits and network failures are worth another try; nothing else is."""
    if isinstance(exc, EmbeddingDimensionError):
        return False
    if type(exc).__name__ in _TRANSIENT_ERROR_NAMES:
        return True
    return _TRANSIENT_MESSAGE_RE.search(str(exc)) is not None


class EmbeddingService:
    """
    One instance per process. The OpenAI client is created lazily so that
    importing this module never needs an API key.

    Usage:
        service = EmbeddingService()
        vector  = await service.generate_embedding("refund policy")
        written = await service.embed_document_chunks(document_id)
    """

    def __init__(
        self,
        client=None,
        repository: DocumentRepository | None = None,
        *,
        model:         str | None = None,
        dimensions:    int | None = None,
        batch_size:    int | None = None,
        max_attempts:  int | None = None,
        initial_delay: float | None = None,
        sleep:         Sleep = asyncio.sleep,
    ) -> None:
        self._client        = client
        self._repository    = repository or DocumentRepository()
        self._model         = model or settings.embedding_model
        self._dimensions    = dimensions or settings.embedding_dimensions
        self._batch_size    = batch_size or settings.embedding_batch_size
        self._max_attempts  = max_attempts or settings.embedding_max_attempts
        self._initial_delay = (
            settings.embedding_initial_delay_seconds if initial_delay is None else initial_delay
        )
        self._sleep = sleep

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _get_client(self):
        if self._client is None:
            from openai import AsyncOpenAI
            self._client = AsyncOpenAI(api_key=settings.openai_api_key)
        return self._client

    # ------------------------------------------------------------------
    # API calls
    # ------------------------------------------------------------------

    async def _create(self, inputs: list[str], label: str) -> list[list[float]]:
        client = self._get_client()

        async def _call():
            return await client.embeddings.create(
                model=self._model,
                input=inputs,
                dimensions=self._dimensions,
            )

        t_api = time.monotonic()
        try:
            response = await retry_with_backoff(
                _call,
                max_attempts=self._max_attempts,
                initial_delay=self._initial_delay,
                should_retry=is_transient_embedding_error,
                sleep=self._sleep,
                label=label,
            )
        except EmbeddingServiceError:
            raise
        except Exception as exc:
            raise EmbeddingServiceError(f"Failed to generate embeddings: {exc}") from exc

        vectors = [item.embedding for item in response.data]
        if len(vectors) != len(inputs):
            raise EmbeddingServiceError(
                f"Embedding API returned {len(vectors)} vectors for {len(inputs)} inputs"
            )
        for vector in vectors:
            if len(vector) != self._dimensions:
                raise EmbeddingDimensionError(self._dimensions, len(vector))

        logger.debug(
            "OpenAI embeddings | %s size=%d api_ms=%.0f",
            label, len(inputs), (time.monotonic() - t_api) * 1000,
        )
        return vectors

    async def generate_embedding(self, text: str) -> list[float]:
        """Embed a single string (query-time use)."""
        vectors = await self._create([text], label="single")
        return vectors[0]

    async def generate_embeddings(self, texts: Sequence[str]) -> list[list[float]]:
        """
        Embed many strings, EMBEDDING_BATCH_SIZE per API call, preserving order.
        Batches run sequentially so a rate-limited account is not hammered.
        """
        embeddings: list[list[float]] = []
        for batch_idx, i in enumerate(range(0, len(texts), self._batch_size)):
            batch = list(texts[i : i + self._batch_size])
            embeddings.extend(await self._create(batch, label=f"batch={batch_idx}"))
        return embeddings

    # ------------------------------------------------------------------
    # Document-level entry point
    # ------------------------------------------------------------------

    @traced("embed_document_chunks")
    async def embed_document_chunks(
        self,
        document_id: uuid.UUID,
        *,
        only_missing: bool = False,
    ) -> int:
        """
        Embed the chunks of a document and persist each vector.
        With only_missing, chunks that already carry a vector are skipped.
        Returns the number of chunks written.
        """
        chunks = list(await self._repository.list_chunks(document_id))
        if only_missing:
            chunks = [c for c in chunks if c.embedding is None]
        if not chunks:
            logger.info("No chunks to embed | doc=%s", document_id)
            return 0

        t0 = time.monotonic()
        vectors = await self.generate_embeddings([c.content for c in chunks])

        for chunk, vector in zip(chunks, vectors):
            await self._repository.update_chunk_embedding(chunk.id, vector)

        logger.info(
            "Embedded document | doc=%s chunks=%d elapsed_ms=%.0f",
            document_id, len(chunks), (time.monotonic() - t0) * 1000,
        )
        return len(chunks)

    async def embed_pending_chunks(self, limit: int = 10) -> int:
        """
        Backfill: embed missing vectors for up to `limit` completed documents.
        A failure on one document is logged and the rest still run.
        """
        document_ids = await self._repository.find_documents_with_unembedded_chunks(limit)
        written = 0
        for document_id in document_ids:
            try:
                written += await self.embed_document_chunks(document_id, only_missing=True)
            except EmbeddingServiceError as exc:
                logger.error("Embedding backfill failed | doc=%s error=%s", document_id, exc)
        if document_ids:
            logger.info(
                "Embedding backfill | documents=%d chunks=%d", len(document_ids), written,
            )
        return written
