"""
Observability — Logging Setup + Span Timing

Every pipeline stage is instrumented with the `@traced(name)` decorator:
  document processing → isolation layer → embedding → similarity search

Log format is plain `logging` with pipe-delimited key=value pairs so that
any log shipper can parse it without a JSON formatter:

    2026-01-01 12:00:00 INFO docingest.services.queue Processing | doc=… attempt=1/3

Call configure_logging() once per process (docingest.main, the Celery
after_setup_logger signal, and the isolated child all do).
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Coroutine, TypeVar

from docingest.core.config import settings

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Coroutine[Any, Any, Any]])

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def configure_logging(level: str | None = None) -> None:
    """Root logger setup from settings (DEBUG when settings.debug is on)."""
    resolved = "DEBUG" if settings.debug else (level or settings.log_level)
    logging.basicConfig(level=resolved.upper(), format=LOG_FORMAT)

    # Quiet chatty client libraries unless we are debugging
    if not settings.debug:
        for noisy in ("httpx", "openai", "sqlalchemy.engine"):
            logging.getLogger(noisy).setLevel(logging.WARNING)


def apply_log_format(target: logging.Logger) -> None:
    """Give an externally created logger (e.g. Celery's) our format."""
    formatter = logging.Formatter(LOG_FORMAT)
    for handler in target.handlers:
        handler.setFormatter(formatter)


# ---------------------------------------------------------------------------
# @traced decorator
# ---------------------------------------------------------------------------

def traced(name: str | None = None) -> Callable[[F], F]:
    """
    Decorator that instruments an async function with timing and error logging.

    Usage::

        @traced("similarity_search")
        async def search_similar_chunks(...): ...

        @traced()   # uses function name as span name
        async def embed_query(text: str) -> list[float]: ...
    """
    def decorator(func: F) -> F:
        span_name = name or func.__qualname__

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            t0 = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.debug("trace | span=%s elapsed_ms=%.1f ok", span_name, elapsed_ms)
                return result
            except Exception as exc:
                elapsed_ms = (time.perf_counter() - t0) * 1000
                logger.warning(
                    "trace | span=%s elapsed_ms=%.1f error=%s",
                    span_name, elapsed_ms, exc,
                )
                raise

        return wrapper  # type: ignore[return-value]
    return decorator
