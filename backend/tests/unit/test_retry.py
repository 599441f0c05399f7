"""
Unit Tests — Error Classification + Backoff
════════════════════════════════════════════
  ✅ Permanent patterns (case-insensitive) are never retryable
  ✅ Timeouts / network / unknown messages are retryable
  ✅ Every permanent error class produces a non-retryable message
  ✅ Isolation errors are retryable
  ✅ Scheduler backoff: equal-jitter bounds, strictly growing, capped
  ✅ retry_with_backoff: stops early when should_retry rejects, re-raises last error
  ✅ retry_with_backoff: max_attempts < 1 is a ValueError
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest

from docingest.core.errors import (
    CorruptDocumentError,
    DocumentNotFoundError,
    FilePermissionError,
    MalformedStatusError,
    ProcessingTimeoutError,
    UnsupportedFormatError,
    WorkerExitError,
    is_retryable_error,
)
from docingest.core.retry import compute_backoff_delay, compute_jittered_delay, retry_with_backoff


@pytest.mark.unit
class TestIsRetryableError:

    @pytest.mark.parametrize("message", [
        "File not found: /data/a.pdf",
        "Invalid file structure",
        "INVALID FORMAT in header",
        "Unsupported file type: image/png",
        "Corrupt document: bad xref",
        "Permission Denied",
        "ENOENT: no such file or directory",
        "EACCES: permission denied, open '/x'",
    ])
    def test_permanent_messages(self, message):
        assert is_retryable_error(message) is False
        assert is_retryable_error(RuntimeError(message)) is False

    @pytest.mark.parametrize("message", [
        "network timeout",
        "Document processing timed out after 120s",
        "ECONNRESET",
        "Child process exited with code 137: Killed",
        "something odd happened",
        "",
    ])
    def test_transient_messages(self, message):
        assert is_retryable_error(RuntimeError(message)) is True

    def test_permanent_classes_classify_as_permanent(self):
        for exc in (
            UnsupportedFormatError("application/zip"),
            DocumentNotFoundError("/data/a.pdf"),
            CorruptDocumentError("truncated"),
            FilePermissionError("/data/a.pdf"),
        ):
            assert not is_retryable_error(exc), exc

    def test_isolation_errors_are_retryable(self):
        for exc in (
            ProcessingTimeoutError(120),
            WorkerExitError(137, "Killed"),
            MalformedStatusError("Invalid status output from child process"),
        ):
            assert is_retryable_error(exc), exc


@pytest.mark.unit
class TestBackoff:

    def test_equal_jitter_bounds(self):
        assert compute_backoff_delay(1, 1.0, 30.0, rand=lambda: 0.0) == 0.5
        assert compute_backoff_delay(3, 1.0, 30.0, rand=lambda: 0.0) == 2.0
        assert compute_backoff_delay(3, 1.0, 30.0, rand=lambda: 0.999) == pytest.approx(3.998)

    def test_delay_strictly_grows_whatever_the_jitter(self):
        # worst case: highest jitter on the earlier step, lowest on the later one
        second = compute_backoff_delay(1, 1.0, 30.0, rand=lambda: 0.9999)
        third = compute_backoff_delay(2, 1.0, 30.0, rand=lambda: 0.0)
        assert third > second

    def test_delay_is_capped(self):
        assert compute_backoff_delay(20, 1.0, 30.0, rand=lambda: 0.9) == 30.0

    def test_jittered_delay_within_twenty_percent(self):
        assert compute_jittered_delay(0, 1.0, rand=lambda: 0.5) == 1.0
        assert compute_jittered_delay(2, 1.0, rand=lambda: 1.0) == pytest.approx(4.4)
        assert compute_jittered_delay(2, 1.0, rand=lambda: 0.0) == pytest.approx(3.6)
        assert compute_jittered_delay(10, 1.0, rand=lambda: 0.5) == 30.0


@pytest.mark.unit
class TestRetryWithBackoff:

    async def test_succeeds_after_transient_failures(self, recorded_sleep):
        fn = AsyncMock(side_effect=[ConnectionError("network"), ConnectionError("network"), "ok"])

        result = await retry_with_backoff(fn, max_attempts=3, sleep=recorded_sleep)

        assert result == "ok"
        assert fn.await_count == 3
        assert recorded_sleep.await_count == 2

    async def test_rejected_error_is_raised_immediately(self, recorded_sleep):
        fn = AsyncMock(side_effect=ValueError("bad input"))

        with pytest.raises(ValueError):
            await retry_with_backoff(
                fn, max_attempts=3, should_retry=lambda exc: False, sleep=recorded_sleep,
            )

        assert fn.await_count == 1
        recorded_sleep.assert_not_awaited()

    async def test_last_error_raised_when_exhausted(self, recorded_sleep):
        fn = AsyncMock(side_effect=[TimeoutError("t1"), TimeoutError("t2"), TimeoutError("t3")])

        with pytest.raises(TimeoutError, match="t3"):
            await retry_with_backoff(fn, max_attempts=3, sleep=recorded_sleep)

        assert recorded_sleep.await_count == 2

    async def test_single_attempt_reraises_directly(self, recorded_sleep):
        fn = AsyncMock(side_effect=ConnectionError("reset"))

        with pytest.raises(ConnectionError, match="reset"):
            await retry_with_backoff(fn, max_attempts=1, sleep=recorded_sleep)

        assert fn.await_count == 1
        recorded_sleep.assert_not_awaited()

    async def test_zero_attempts_rejected(self, recorded_sleep):
        fn = AsyncMock(return_value="ok")

        with pytest.raises(ValueError, match="max_attempts"):
            await retry_with_backoff(fn, max_attempts=0, sleep=recorded_sleep)

        fn.assert_not_awaited()
