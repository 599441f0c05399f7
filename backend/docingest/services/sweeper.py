"""
Auto-Retry Sweeper

Every auto_retry_interval_seconds (60):
  - select failed documents uploaded in the last auto_retry_window_minutes (60)
    whose retry_count is below max_auto_retries (2), oldest first, at most
    auto_retry_batch_size (10)
  - reset each to pending, clear the error, drop stale chunks and bump
    retry_count, all in one conditional update

retry_count is a plain integer column. It survives any change to error
message wording, and a manual retry resets it to 0.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from docingest.core.config import settings
from docingest.db.repository import DocumentRepository
from docingest.schemas.documents import DocumentStatus
from docingest.services.periodic import PeriodicService

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AutoRetrySweeper(PeriodicService):
    name = "auto-retry-sweeper"

    def __init__(
        self,
        repository: DocumentRepository | None = None,
        *,
        max_auto_retries: int | None = None,
        window_minutes: int | None = None,
        batch_size: int | None = None,
        interval: float | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        super().__init__(interval or settings.auto_retry_interval_seconds)
        self._repository = repository or DocumentRepository()
        self._max_auto_retries = (
            settings.max_auto_retries if max_auto_retries is None else max_auto_retries
        )
        self._window = timedelta(minutes=window_minutes or settings.auto_retry_window_minutes)
        self._batch_size = batch_size or settings.auto_retry_batch_size
        self._clock = clock

    async def sweep(self) -> int:
        """Returns the number of documents moved back to pending."""
        since = self._clock() - self._window
        candidates = await self._repository.find_auto_retry_candidates(
            uploaded_since=since,
            max_auto_retries=self._max_auto_retries,
            limit=self._batch_size,
        )

        requeued = 0
        for document in candidates:
            if document.retry_count >= self._max_auto_retries:
                logger.debug(
                    "Auto-retry budget spent | doc=%s retries=%d",
                    document.id, document.retry_count,
                )
                continue

            moved = await self._repository.reset_to_pending(
                document.id,
                from_statuses=[DocumentStatus.FAILED],
                increment_retry_count=True,
            )
            if not moved:
                continue
            requeued += 1
            logger.info(
                "Auto-retry queued | doc=%s retry=%d/%d last_error=%s",
                document.id, document.retry_count + 1, self._max_auto_retries,
                document.processing_error,
            )

        if requeued:
            logger.info("Sweep complete | requeued=%d", requeued)
        return requeued

    async def run_once(self) -> int:
        return await self.sweep()
