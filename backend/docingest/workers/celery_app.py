"""
Celery Application Factory

Alternative driver for the ingestion pipeline: instead of the in-process
asyncio loops started by docingest.main, Celery Beat fires the periodic
ticks and Celery workers run them.

Broker: Redis (redis://) by default; RabbitMQ (amqp://) works unchanged.
Result backend: Redis (optional, document state lives in PostgreSQL).

Queue topology:
  documents.process      queue ticks + on-demand processing by id
  documents.maintenance  auto-retry sweeps + embedding backfill

Beat schedule:
  process_next_pending          every queue_interval_seconds (15)
  auto_retry_failed_documents   every auto_retry_interval_seconds (60)
  embed_pending_chunks          every 60 s

Task payloads carry document ids only, never file contents.

Document processing runs one at a time across all workers: the tasks on
documents.process hold a PostgreSQL advisory lock (see workers/tasks.py), so
extra prefork children or extra hosts consuming that queue only return
"busy" while a document is in flight.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import after_setup_logger, task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from docingest.core.config import settings
from docingest.observability.tracing import apply_log_format

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

DOCUMENTS_EXCHANGE = Exchange("documents", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "documents.process",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.process",
        durable=True,
    ),
    Queue(
        "documents.maintenance",
        exchange=DOCUMENTS_EXCHANGE,
        routing_key="documents.maintenance",
        durable=True,
    ),
)

TASK_ROUTES = {
    "docingest.workers.tasks.process_next_pending":        {"queue": "documents.process"},
    "docingest.workers.tasks.process_document":            {"queue": "documents.process"},
    "docingest.workers.tasks.auto_retry_failed_documents": {"queue": "documents.maintenance"},
    "docingest.workers.tasks.embed_pending_chunks":        {"queue": "documents.maintenance"},
}

EMBED_BACKFILL_INTERVAL_SECONDS = 60.0

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("docingest")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="documents.process",
        task_default_exchange="documents",
        task_default_routing_key="documents.process",

        # --- Reliability ---
        worker_prefetch_multiplier=1,  # one tick at a time per worker

        # --- Timeouts ---
        # 3 attempts x processing timeout + backoff, with headroom
        task_soft_time_limit=int(settings.processing_timeout_seconds * settings.max_retries + 120),
        task_time_limit=int(settings.processing_timeout_seconds * settings.max_retries + 180),

        # --- Result TTL ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule ---
        # expires: a tick that sat in the broker longer than one interval is dropped
        beat_schedule={
            "process-next-pending": {
                "task":     "docingest.workers.tasks.process_next_pending",
                "schedule": settings.queue_interval_seconds,
                "options":  {"queue": "documents.process", "expires": settings.queue_interval_seconds},
            },
            "auto-retry-failed-documents": {
                "task":     "docingest.workers.tasks.auto_retry_failed_documents",
                "schedule": settings.auto_retry_interval_seconds,
                "options":  {
                    "queue": "documents.maintenance",
                    "expires": settings.auto_retry_interval_seconds,
                },
            },
            "embed-pending-chunks": {
                "task":     "docingest.workers.tasks.embed_pending_chunks",
                "schedule": EMBED_BACKFILL_INTERVAL_SECONDS,
                "options":  {
                    "queue": "documents.maintenance",
                    "expires": EMBED_BACKFILL_INTERVAL_SECONDS,
                },
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,   # recycle workers to cap parser memory creep
    )

    app.autodiscover_tasks(["docingest.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — logging
# ---------------------------------------------------------------------------

@after_setup_logger.connect
def on_after_setup_logger(logger, **_):
    apply_log_format(logger)


@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s doc=%s",
        task_id, task.name, kwargs.get("document_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s result=%s",
        task_id, task.name, state, retval,
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s doc=%s error=%s",
        task_id, kwargs.get("document_id", "-"), exception,
        exc_info=True,
    )
