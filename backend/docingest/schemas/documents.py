"""
Document Pipeline — Pydantic Schemas

Covers every payload that moves between pipeline stages:
  - Parser output (ParsedDocument, with the full extracted text)
  - Isolation-boundary payload (ProcessingResult, WITHOUT the full text)
  - Child-process status line (ChildStatus)
  - Retrieval results (SearchResult) and status polling (DocumentStatusResponse)

Design decisions:
  - full_text never crosses the isolation boundary; a multi-megabyte string
    would be serialized, piped and parsed twice for nothing. Chunks carry
    everything downstream stages need.
  - Section ids are deterministic (see processing.parsers.generate_section_id)
    so citations survive reprocessing.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from uuid import UUID

from pydantic import BaseModel, Field, model_validator


# ---------------------------------------------------------------------------
# Document state machine
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """
    Maps to documents.status column.
    Transitions: pending → processing → completed | failed
                 failed → pending (manual retry or auto-retry sweeper)
                 completed → pending (explicit reprocess only)
    """
    PENDING    = "pending"
    PROCESSING = "processing"
    COMPLETED  = "completed"
    FAILED     = "failed"


# ---------------------------------------------------------------------------
# Parser / chunker output
# ---------------------------------------------------------------------------

class OutlineSection(BaseModel):
    """One detected structural section. Regenerated wholesale on each pass."""
    id:       str
    title:    str
    level:    int = Field(..., ge=1, le=6)
    position: int = Field(..., ge=0)


class ChunkPayload(BaseModel):
    """A chunk as produced by the chunker, before it is persisted."""
    content:       str
    chunk_index:   int = Field(..., ge=0)
    start_char:    int = Field(..., ge=0)
    end_char:      int
    section_id:    str | None = None
    section_title: str | None = None

    @model_validator(mode="after")
    def _check_span(self) -> "ChunkPayload":
        if self.start_char >= self.end_char:
            raise ValueError(
                f"start_char ({self.start_char}) must be < end_char ({self.end_char})"
            )
        if not self.content.strip():
            raise ValueError("chunk content must not be empty")
        return self


class ParsedDocument(BaseModel):
    """Full parser output. Lives only inside the isolated worker."""
    title:      str
    outline:    list[OutlineSection]
    full_text:  str
    page_count: int | None = None
    word_count: int = 0


class ProcessingResult(BaseModel):
    """What the isolation layer hands back to the scheduler."""
    title:      str
    outline:    list[OutlineSection]
    page_count: int | None = None
    word_count: int = 0
    chunks:     list[ChunkPayload] = Field(default_factory=list)


class ChildStatus(BaseModel):
    """
    Single JSON line printed on the isolated child's stdout.
    The full result goes to the temp file, never to the pipe.
    """
    success: bool
    error:   str | None = None


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------

class SearchResult(BaseModel):
    """One nearest-neighbour hit, with enough provenance to render a citation."""
    chunk_id:       UUID
    document_id:    UUID
    content:        str
    similarity:     float = Field(..., ge=0.0, le=1.0)
    section_id:     str | None = None
    section_title:  str | None = None
    chunk_index:    int
    filename:       str
    document_title: str | None = None


# ---------------------------------------------------------------------------
# Status polling
# ---------------------------------------------------------------------------

class DocumentStatusResponse(BaseModel):
    """Returned by DocumentService.get_status for display in the upload UI."""
    document_id:      UUID
    status:           DocumentStatus
    processing_error: str | None = None
    retry_count:      int = 0
    chunk_count:      int = 0
    embedded_count:   int = 0
    title:            str | None = None
    processed_at:     datetime | None = None
