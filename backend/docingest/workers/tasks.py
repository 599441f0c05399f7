"""
Celery Tasks — Document Ingestion Pipeline

Task: process_next_pending
  Beat-driven queue tick. Picks the oldest pending document and runs it
  through ProcessingQueue (isolation layer, classified retries, atomic
  chunk replacement, embeddings).

Task: process_document
  On-demand processing of one document by id (e.g. right after upload).

Task: auto_retry_failed_documents
  Beat-driven AutoRetrySweeper pass.

Task: embed_pending_chunks
  Backfill for completed documents whose chunks are still missing vectors
  (embedding failures never fail the document itself).

Concurrency:
  Document processing is serialized across the whole deployment, not just
  within one worker process. Celery prefork runs several children and beat
  keeps firing every 15 s while one document may take minutes, so the two
  processing tasks take a PostgreSQL advisory lock (PROCESSING_LOCK_KEY)
  before touching the queue. A task that finds it held returns
  {"status": "busy"}; a document passed to process_document stays pending
  and the next tick picks it up.

  Every task also takes a process-local non-blocking lock so threads in one
  worker never queue behind each other.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from typing import Any, Awaitable, TypeVar

from docingest.workers.celery_app import celery_app

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROCESSING_LOCK_KEY = 0x646F6369   # "doci"

_queue_lock = threading.Lock()
_sweep_lock = threading.Lock()
_embed_lock = threading.Lock()


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro: Awaitable[T]) -> T:
    """Execute an async coroutine from a synchronous Celery task."""

    async def _with_engine_cleanup() -> T:
        from docingest.db.session import engine
        try:
            return await coro
        finally:
            # asyncpg connections are bound to the loop that opened them;
            # every task gets a fresh loop, so the pool must not outlive it.
            await engine.dispose()

    return asyncio.run(_with_engine_cleanup())


# ---------------------------------------------------------------------------
# Queue tick
# ---------------------------------------------------------------------------

@celery_app.task(name="docingest.workers.tasks.process_next_pending")
def process_next_pending() -> dict[str, Any]:
    if not _queue_lock.acquire(blocking=False):
        return {"status": "busy"}
    try:
        outcome = run_async(_process_next_pending_async())
    finally:
        _queue_lock.release()
    return {"status": outcome}


async def _process_next_pending_async() -> str:
    from docingest.db.session import try_advisory_lock
    from docingest.services.queue import ProcessingQueue

    async with try_advisory_lock(PROCESSING_LOCK_KEY) as acquired:
        if not acquired:
            logger.info("Processing lock held elsewhere, skipping tick")
            return "busy"
        found = await ProcessingQueue().process_next_pending_document()
    return "processed" if found else "idle"


@celery_app.task(name="docingest.workers.tasks.process_document")
def process_document(*, document_id: str) -> dict[str, Any]:
    """Process one document now, bypassing queue order."""
    if not _queue_lock.acquire(blocking=False):
        return {"status": "busy", "document_id": document_id}
    try:
        outcome = run_async(_process_document_async(uuid.UUID(document_id)))
    finally:
        _queue_lock.release()
    return {"status": outcome, "document_id": document_id}


async def _process_document_async(document_id: uuid.UUID) -> str:
    from docingest.db.session import try_advisory_lock
    from docingest.services.queue import ProcessingQueue

    async with try_advisory_lock(PROCESSING_LOCK_KEY) as acquired:
        if not acquired:
            logger.info("Processing lock held elsewhere, left pending | doc=%s", document_id)
            return "busy"
        completed = await ProcessingQueue().process_document_by_id(document_id)
    return "completed" if completed else "failed"


# ---------------------------------------------------------------------------
# Auto-retry sweep — runs every 60 seconds via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(name="docingest.workers.tasks.auto_retry_failed_documents")
def auto_retry_failed_documents() -> dict[str, Any]:
    if not _sweep_lock.acquire(blocking=False):
        return {"status": "busy"}
    try:
        requeued = run_async(_auto_retry_async())
    finally:
        _sweep_lock.release()
    return {"status": "ok", "requeued": requeued}


async def _auto_retry_async() -> int:
    from docingest.services.sweeper import AutoRetrySweeper
    return await AutoRetrySweeper().sweep()


# ---------------------------------------------------------------------------
# Embedding backfill
# ---------------------------------------------------------------------------

@celery_app.task(name="docingest.workers.tasks.embed_pending_chunks")
def embed_pending_chunks(limit: int = 10) -> dict[str, Any]:
    if not _embed_lock.acquire(blocking=False):
        return {"status": "busy"}
    try:
        embedded = run_async(_embed_pending_chunks_async(limit))
    finally:
        _embed_lock.release()
    return {"status": "ok", "embedded": embedded}


async def _embed_pending_chunks_async(limit: int) -> int:
    from docingest.processing.embeddings import EmbeddingService
    return await EmbeddingService().embed_pending_chunks(limit=limit)
