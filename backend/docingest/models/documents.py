"""
SQLAlchemy ORM Models — Documents & Chunks

Using SQLAlchemy mapped classes (2.x style) for full async support.

Ownership: the documents row is created by the upload subsystem. This
pipeline only transitions status / processing_error / title / outline /
counts / timestamps / retry_count, and owns every document_chunks row.

Embeddings live in a pgvector column on document_chunks; similarity search
uses the cosine distance operator (<=>) against it.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pgvector.sqlalchemy import Vector
from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

# Fixed by the embedding API configuration; a mismatch is a hard failure.
EMBEDDING_DIMENSIONS = 1536


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Document model — documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    Tracks a single uploaded file from upload → parsing → chunking → embedding.

    State machine (status column):
        pending    — stored on disk, waiting for the queue scheduler
        processing — claimed by the scheduler, inside the isolation layer
        completed  — chunks persisted (embeddings may still be filling in)
        failed     — permanent error or retries exhausted (see processing_error)

    retry_count counts AUTOMATIC retries granted by the sweeper. It is an
    explicit column so that rewording an error message can never reset it.
    """

    __tablename__ = "documents"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="documents_status_check",
        ),
        Index("idx_documents_status_uploaded", "status", "uploaded_at"),
        Index("idx_documents_project_id", "project_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Search scope — owned by the project subsystem
    project_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    # Source file — read-only for this pipeline
    filename: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Original filename shown in citations",
    )
    file_path: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Absolute path of the stored upload",
    )
    mime_type: Mapped[str] = mapped_column(Text, nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")

    # Ingestion state machine
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    processing_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )
    retry_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Automatic retries granted by the sweeper",
    )

    # Extraction output
    title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    outline: Mapped[list] = mapped_column(
        JSONB,
        nullable=False,
        default=list,
        server_default="[]",
        comment="[{id, title, level, position}, ...] regenerated on every pass",
    )
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    word_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    # Timestamps
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    chunks: Mapped[list["DocumentChunk"]] = relationship(
        back_populates="document",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="DocumentChunk.chunk_index",
    )

    def __repr__(self) -> str:
        return (
            f"<Document id={self.id} status={self.status} "
            f"file={self.filename!r} retries={self.retry_count}>"
        )


# ---------------------------------------------------------------------------
# DocumentChunk model — document_chunks
# ---------------------------------------------------------------------------

class DocumentChunk(Base):
    """
    One bounded span of extracted text.
    chunk_index is contiguous per document and follows outline order.
    """

    __tablename__ = "document_chunks"
    __table_args__ = (
        CheckConstraint("start_char < end_char", name="document_chunks_span_check"),
        UniqueConstraint("document_id", "chunk_index", name="uq_document_chunks_position"),
        Index("idx_document_chunks_document_id", "document_id"),
        Index(
            "idx_document_chunks_embedding",
            "embedding",
            postgresql_using="hnsw",
            postgresql_ops={"embedding": "vector_cosine_ops"},
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    section_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    section_title: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    chunk_index: Mapped[int] = mapped_column(Integer, nullable=False)
    start_char: Mapped[int] = mapped_column(Integer, nullable=False)
    end_char: Mapped[int] = mapped_column(Integer, nullable=False)
    embedding: Mapped[Optional[list[float]]] = mapped_column(
        Vector(EMBEDDING_DIMENSIONS),
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    document: Mapped[Document] = relationship(back_populates="chunks")

    def __repr__(self) -> str:
        return (
            f"<DocumentChunk doc={self.document_id} idx={self.chunk_index} "
            f"section={self.section_title!r}>"
        )
