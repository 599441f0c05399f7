"""
Unit Tests — AutoRetrySweeper
══════════════════════════════
  ✅ Recent failed documents below the budget → pending, retry_count + 1
  ✅ Documents at / above max_auto_retries are left failed
  ✅ Documents older than the window are left failed
  ✅ Batch size caps one sweep
  ✅ Stale chunks and the error message are cleared
  ✅ Non-failed documents are never touched
"""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from docingest.services.sweeper import AutoRetrySweeper


@pytest.fixture
def make_sweeper(fake_repo):
    def _build(**kwargs):
        kwargs.setdefault("max_auto_retries", 2)
        kwargs.setdefault("window_minutes", 60)
        kwargs.setdefault("batch_size", 10)
        return AutoRetrySweeper(repository=fake_repo, **kwargs)
    return _build


@pytest.mark.unit
@pytest.mark.queue
class TestSweep:

    async def test_requeues_recent_failures(self, make_document, make_sweeper):
        doc = make_document(status="failed", retry_count=0, processing_error="network timeout")

        requeued = await make_sweeper().sweep()

        assert requeued == 1
        assert doc.status == "pending"
        assert doc.retry_count == 1
        assert doc.processing_error is None

    async def test_budget_is_respected(self, make_document, make_sweeper):
        spent = make_document(status="failed", retry_count=2)
        last_chance = make_document(status="failed", retry_count=1)

        requeued = await make_sweeper().sweep()

        assert requeued == 1
        assert spent.status == "failed"
        assert spent.retry_count == 2
        assert last_chance.status == "pending"
        assert last_chance.retry_count == 2

    async def test_repeated_sweeps_stop_at_budget(self, make_document, fake_repo, make_sweeper):
        doc = make_document(status="failed")
        sweeper = make_sweeper()

        for _ in range(5):
            await sweeper.sweep()
            if doc.status == "pending":
                await fake_repo.mark_failed(doc.id, "network timeout")

        assert doc.retry_count == 2
        assert doc.status == "failed"

    async def test_old_failures_are_ignored(self, make_document, make_sweeper):
        old = make_document(status="failed", age_minutes=90)

        assert await make_sweeper().sweep() == 0
        assert old.status == "failed"

    async def test_batch_size_caps_one_sweep(self, make_document, make_sweeper):
        docs = [make_document(status="failed", age_minutes=10 + i) for i in range(5)]

        requeued = await make_sweeper(batch_size=3).sweep()

        assert requeued == 3
        # oldest first
        assert [d.status for d in docs] == ["failed", "failed", "pending", "pending", "pending"]

    async def test_stale_chunks_are_deleted(
        self, make_document, fake_repo, make_sweeper, processing_result
    ):
        doc = make_document()
        await fake_repo.complete_processing(doc.id, processing_result)
        doc.status = "failed"

        await make_sweeper().sweep()

        assert doc.status == "pending"
        assert await fake_repo.list_chunks(doc.id) == []

    async def test_other_statuses_untouched(self, make_document, make_sweeper):
        pending = make_document(status="pending")
        processing = make_document(status="processing")
        completed = make_document(status="completed")

        assert await make_sweeper().sweep() == 0
        assert (pending.status, processing.status, completed.status) == (
            "pending", "processing", "completed",
        )

    async def test_window_uses_injected_clock(self, make_document, make_sweeper):
        doc = make_document(status="failed", age_minutes=5)
        far_future = datetime(2100, 1, 1, tzinfo=timezone.utc)

        assert await make_sweeper(clock=lambda: far_future).sweep() == 0
        assert doc.status == "failed"
