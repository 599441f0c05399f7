"""
Vector Similarity Search — pgvector cosine distance

    SELECT c.*, d.filename, d.title, 1 - (c.embedding <=> :q) AS similarity
    FROM document_chunks c JOIN documents d ON d.id = c.document_id
    WHERE d.project_id = :scope AND c.embedding IS NOT NULL
    ORDER BY c.embedding <=> :q
    LIMIT :limit

Ordering is by raw distance so the hnsw vector_cosine_ops index is usable;
the similarity reported back is 1 - distance, clamped to [0, 1] (cosine
distance ranges over [0, 2], so opposed vectors would otherwise go negative).
Chunks without an embedding are never returned.
"""

from __future__ import annotations

import logging
import uuid

from sqlalchemy import select

from docingest.db.repository import SessionFactory
from docingest.db.session import get_session
from docingest.models.documents import Document, DocumentChunk
from docingest.observability.tracing import traced
from docingest.processing.embeddings import EmbeddingService
from docingest.schemas.documents import SearchResult

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 5


def similarity_from_distance(distance: float) -> float:
    return max(0.0, min(1.0, 1.0 - float(distance)))


@traced("similarity_search")
async def search_similar_chunks(
    scope_id: uuid.UUID,
    query: str,
    limit: int = DEFAULT_LIMIT,
    *,
    embedding_service: EmbeddingService | None = None,
    session_factory: SessionFactory = get_session,
) -> list[SearchResult]:
    """
    Top-`limit` chunks in the scope most similar to `query`, most similar
    first. Returns [] for a blank query or non-positive limit.
    """
    if limit <= 0 or not query.strip():
        return []

    embedding_service = embedding_service or EmbeddingService()
    query_vector = await embedding_service.generate_embedding(query)

    distance = DocumentChunk.embedding.cosine_distance(query_vector).label("distance")
    stmt = (
        select(DocumentChunk, Document.filename, Document.title, distance)
        .join(Document, Document.id == DocumentChunk.document_id)
        .where(
            Document.project_id == scope_id,
            DocumentChunk.embedding.is_not(None),
        )
        .order_by(distance)
        .limit(limit)
    )

    async with session_factory() as db:
        rows = (await db.execute(stmt)).all()

    results = [
        SearchResult(
            chunk_id=chunk.id,
            document_id=chunk.document_id,
            content=chunk.content,
            similarity=similarity_from_distance(dist),
            section_id=chunk.section_id,
            section_title=chunk.section_title,
            chunk_index=chunk.chunk_index,
            filename=filename,
            document_title=title,
        )
        for chunk, filename, title, dist in rows
    ]
    logger.info(
        "Similarity search | scope=%s limit=%d results=%d top=%.3f",
        scope_id, limit, len(results), results[0].similarity if results else 0.0,
    )
    return results
