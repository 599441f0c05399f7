"""
Section-Aware Chunker  —  Overlapping Character Windows
════════════════════════════════════════════════════════

Two layers:

  chunk_text()                 fixed-size sliding window with overlap
  chunk_document_by_section()  runs chunk_text() inside each outline section
                               and tags the output with section id / title

Window mechanics
────────────────
  size=1000, overlap=200  →  windows start at 0, 800, 1600, …
  Consecutive windows overlap (or touch), so their [start_char, end_char)
  spans together cover the whole input. Whitespace-only windows are
  dropped and never produce an empty chunk.

  If overlap >= size the window would never advance; in that case the
  next window starts where the previous one ended. Termination is
  guaranteed for every (size, overlap) pair with size > 0.

Section location
────────────────
  A section starts at the first occurrence of its title in full_text and
  ends at the next section title found after it (or end of text). This
  re-derives offsets by string search: a title that also appears earlier
  in the body will be located at the wrong place. The outline is
  best-effort and nothing correctness-critical depends on it.

  Sections whose title cannot be found are skipped. If NONE can be found,
  the whole text is chunked once without section tags.

chunk_index is global across sections, contiguous, and follows outline order.
"""

from __future__ import annotations

import logging

from docingest.core.config import settings
from docingest.schemas.documents import ChunkPayload, OutlineSection, ParsedDocument

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

CHUNK_SIZE    = 1000   # characters per window
CHUNK_OVERLAP = 200    # characters shared by consecutive windows


# ---------------------------------------------------------------------------
# Sliding window
# ---------------------------------------------------------------------------

def chunk_text(
    text: str,
    chunk_size: int = CHUNK_SIZE,
    overlap: int = CHUNK_OVERLAP,
) -> list[ChunkPayload]:
    """
    Split `text` into overlapping windows.

    Returns chunks with chunk_index 0..n-1 and offsets relative to `text`.
    Empty or whitespace-only input yields no chunks.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")

    if not text or not text.strip():
        return []

    if len(text) <= chunk_size:
        return [ChunkPayload(
            content=text.strip(),
            chunk_index=0,
            start_char=0,
            end_char=len(text),
        )]

    chunks: list[ChunkPayload] = []
    start = 0
    length = len(text)

    while start < length:
        end = min(start + chunk_size, length)
        content = text[start:end].strip()

        if content:
            chunks.append(ChunkPayload(
                content=content,
                chunk_index=len(chunks),
                start_char=start,
                end_char=end,
            ))

        if end >= length:
            break

        next_start = end - overlap
        # overlap >= chunk_size would stall or move backwards
        start = end if next_start <= start else next_start

    return chunks


# ---------------------------------------------------------------------------
# Section-aware pass
# ---------------------------------------------------------------------------

def _locate_sections(
    full_text: str,
    outline: list[OutlineSection],
) -> list[tuple[OutlineSection, int, int]]:
    """Return (section, start, end) for every section whose title is found."""
    spans: list[tuple[OutlineSection, int, int]] = []

    for i, section in enumerate(outline):
        start = full_text.find(section.title)
        if start == -1:
            logger.debug("Section title not found in text, skipping | title=%r", section.title)
            continue

        end = len(full_text)
        if i + 1 < len(outline):
            next_start = full_text.find(outline[i + 1].title, start + len(section.title))
            if next_start != -1:
                end = next_start

        spans.append((section, start, end))

    return spans


def chunk_document_by_section(
    doc: ParsedDocument,
    chunk_size: int | None = None,
    overlap: int | None = None,
) -> list[ChunkPayload]:
    """
    Chunk each outline section independently and tag the chunks.

    Offsets in the returned chunks are relative to doc.full_text.
    """
    chunk_size = chunk_size or settings.chunk_size
    overlap = settings.chunk_overlap if overlap is None else overlap

    chunks: list[ChunkPayload] = []

    for section, start, end in _locate_sections(doc.full_text, doc.outline):
        # Leading whitespace is impossible (the span starts at the title),
        # so only the tail needs trimming for offsets to stay valid.
        section_text = doc.full_text[start:end].rstrip()

        for piece in chunk_text(section_text, chunk_size, overlap):
            chunks.append(ChunkPayload(
                content=piece.content,
                chunk_index=len(chunks),
                start_char=start + piece.start_char,
                end_char=start + piece.end_char,
                section_id=section.id,
                section_title=section.title,
            ))

    if not chunks:
        chunks = chunk_text(doc.full_text, chunk_size, overlap)
        logger.info(
            "No locatable sections, chunked as one pass | chunks=%d", len(chunks),
        )
    else:
        logger.info(
            "Chunked by section | sections=%d chunks=%d",
            len(doc.outline), len(chunks),
        )

    return chunks
