"""
Document Processing Package
════════════════════════════

Turns a stored file into searchable chunks:

  Parse (pdf / docx / xlsx / markdown) → Outline → Section-aware chunks → Embeddings

Modules
───────
  parsers.py     One parser per format behind a closed DocumentFormat enum;
                 unknown mime types raise UnsupportedFormatError
  chunking.py    Sliding-window chunker (1000 chars, 200 overlap) run per section
  pipeline.py    parse + chunk, the unit of work executed in isolation
  embeddings.py  Batched OpenAI embeddings with retry on transient failures

Design principles
─────────────────
  • parsers / chunking / pipeline are pure and synchronous; they run inside
    a worker process or spawned child, never in the scheduler process.
  • embeddings.py is async and talks to the database through DocumentRepository.
"""

from docingest.processing.chunking import chunk_document_by_section, chunk_text
from docingest.processing.parsers import DocumentFormat, parse_document
from docingest.processing.pipeline import run_document_pipeline

__all__ = [
    "DocumentFormat",
    "chunk_document_by_section",
    "chunk_text",
    "parse_document",
    "run_document_pipeline",
]
