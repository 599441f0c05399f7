"""
Parse + chunk in one call — the unit of work executed inside the
isolation layer (worker pool process or spawned child).

The full extracted text is dropped here, before anything is returned
across the isolation boundary.
"""

from __future__ import annotations

import logging
import time

from docingest.processing.chunking import chunk_document_by_section
from docingest.processing.parsers import parse_document
from docingest.schemas.documents import ProcessingResult

logger = logging.getLogger(__name__)


def run_document_pipeline(file_path: str, mime_type: str) -> ProcessingResult:
    t0 = time.monotonic()

    parsed = parse_document(file_path, mime_type)
    chunks = chunk_document_by_section(parsed)

    logger.info(
        "Pipeline | mime=%s sections=%d chunks=%d words=%d elapsed_ms=%.0f",
        mime_type, len(parsed.outline), len(chunks), parsed.word_count,
        (time.monotonic() - t0) * 1000,
    )
    return ProcessingResult(
        title=parsed.title,
        outline=parsed.outline,
        page_count=parsed.page_count,
        word_count=parsed.word_count,
        chunks=chunks,
    )
