"""
Process Isolation Layer

Parsing untrusted binary documents can allocate memory proportional to
(and sometimes far beyond) the file size. Parsing and chunking therefore
never run in the scheduler's own process. Two interchangeable strategies:

  WorkerPoolStrategy  (production)
    A small, bounded pool of worker processes (default 2). Each call gets a
    wall-clock timeout; on timeout the pool's workers are killed and the
    pool is rebuilt lazily on the next call. Python threads cannot be
    killed, so the "pool" is process-backed.

  SubprocessStrategy  (development)
    One freshly spawned `python -m docingest.workers.child` per document,
    with an address-space cap applied inside the child before any parser
    is imported. The child writes the full result to a uniquely named temp
    file and prints ONE small JSON status line on stdout:

        {"success": true}
        {"success": false, "error": "File not found: /data/x.pdf"}

    The caller parses that line, then reads and deletes the temp file.
    A hard timeout (default 120 s) force-kills the child.

Temp-file lifecycle is a scoped resource (scoped_temp_file): the path is
generated, handed to the child, read, and removed on EVERY exit path,
including timeout and task cancellation.

Failure modes surface as distinct ProcessIsolationError subclasses:
  WorkerSpawnError        could not start the child
  WorkerExitError         non-zero exit with no usable status line
  MalformedStatusError    exit 0 but no parseable status line
  ProcessingTimeoutError  wall-clock limit hit, worker killed
  TempFileError           temp dir / result file I/O failed
Errors reported BY the child (parse failures) are re-raised as
DocumentProcessingError(message) so the scheduler classifies them exactly
as it would an in-process failure.
"""

from __future__ import annotations

import asyncio
import logging
import multiprocessing
import os
import secrets
import sys
import time
from abc import ABC, abstractmethod
from concurrent.futures import ProcessPoolExecutor
from concurrent.futures.process import BrokenProcessPool
from contextlib import contextmanager
from typing import Iterator

from pydantic import ValidationError

from docingest.core.config import settings
from docingest.core.errors import (
    DocumentProcessingError,
    MalformedStatusError,
    ProcessingTimeoutError,
    TempFileError,
    WorkerExitError,
    WorkerSpawnError,
)
from docingest.observability.tracing import traced
from docingest.schemas.documents import ChildStatus, ProcessingResult

logger = logging.getLogger(__name__)

CHILD_MODULE = "docingest.workers.child"
MEMORY_LIMIT_ENV = "DOCINGEST_CHILD_MEMORY_LIMIT_MB"

# Directory that contains the docingest package
_SOURCE_ROOT = os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))


# ---------------------------------------------------------------------------
# Memory cap
# ---------------------------------------------------------------------------

def apply_memory_limit(limit_mb: int) -> bool:
    """
    Cap this process's address space. Returns False where the platform has
    no rlimit support (Windows); the timeout is then the only guard.
    """
    if limit_mb <= 0 or sys.platform == "win32":
        return False
    import resource

    limit_bytes = limit_mb * 1024 * 1024
    _soft, hard = resource.getrlimit(resource.RLIMIT_AS)
    if hard != resource.RLIM_INFINITY:
        limit_bytes = min(limit_bytes, hard)
    resource.setrlimit(resource.RLIMIT_AS, (limit_bytes, hard))
    return True


# ---------------------------------------------------------------------------
# Scoped temp file
# ---------------------------------------------------------------------------

def make_temp_output_path(directory: str) -> str:
    """Unique per attempt: millisecond timestamp + random suffix."""
    name = f"result-{int(time.time() * 1000)}-{secrets.token_hex(6)}.json"
    return os.path.join(directory, name)


@contextmanager
def scoped_temp_file(directory: str | None = None) -> Iterator[str]:
    """
    Yield a fresh output path and guarantee it is gone afterwards.
    The file itself is created by whoever writes to the path.
    """
    directory = directory or settings.processing_temp_dir
    try:
        os.makedirs(directory, exist_ok=True)
    except OSError as exc:
        raise TempFileError(f"Cannot create temp dir {directory}: {exc}") from exc

    path = make_temp_output_path(directory)
    try:
        yield path
    finally:
        try:
            os.unlink(path)
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.warning("Temp file cleanup failed | path=%s error=%s", path, exc)


def read_result_file(path: str) -> ProcessingResult:
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = fh.read()
    except OSError as exc:
        raise TempFileError(f"Failed to read child process output: {exc}") from exc
    try:
        return ProcessingResult.model_validate_json(raw)
    except ValidationError as exc:
        raise TempFileError(f"Failed to parse child process output: {exc}") from exc


def parse_status_line(stdout: str) -> ChildStatus | None:
    """Last line of stdout that parses as a ChildStatus; None if there is none."""
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            return ChildStatus.model_validate_json(line)
        except ValidationError:
            continue
    return None


# ---------------------------------------------------------------------------
# Strategy interface
# ---------------------------------------------------------------------------

class IsolationStrategy(ABC):
    name: str

    @abstractmethod
    async def execute(
        self,
        file_path: str,
        mime_type: str,
        timeout: float,
    ) -> ProcessingResult:
        """Parse + chunk `file_path` outside the calling process."""

    async def shutdown(self) -> None:
        """Release workers. Safe to call more than once."""


# ---------------------------------------------------------------------------
# Worker pool (production)
# ---------------------------------------------------------------------------

def _pool_initializer(memory_limit_mb: int) -> None:
    apply_memory_limit(memory_limit_mb)


def _pool_task(file_path: str, mime_type: str) -> tuple[bool, str]:
    """
    Runs inside a pool worker. Returns (ok, payload) instead of raising so
    that error messages cross the process boundary verbatim; custom
    exception classes do not survive pickling with their messages intact.
    """
    from docingest.processing.pipeline import run_document_pipeline

    try:
        result = run_document_pipeline(file_path, mime_type)
    except Exception as exc:
        return False, str(exc) or type(exc).__name__
    return True, result.model_dump_json()


class WorkerPoolStrategy(IsolationStrategy):
    name = "pool"

    def __init__(
        self,
        max_workers: int | None = None,
        memory_limit_mb: int | None = None,
    ) -> None:
        self._max_workers = max_workers or settings.worker_pool_size
        self._memory_limit_mb = (
            settings.child_memory_limit_mb if memory_limit_mb is None else memory_limit_mb
        )
        self._executor: ProcessPoolExecutor | None = None

    def _get_executor(self) -> ProcessPoolExecutor:
        if self._executor is None:
            self._executor = ProcessPoolExecutor(
                max_workers=self._max_workers,
                mp_context=multiprocessing.get_context("spawn"),
                initializer=_pool_initializer,
                initargs=(self._memory_limit_mb,),
            )
            logger.info("Worker pool started | workers=%d", self._max_workers)
        return self._executor

    def _terminate_workers(self) -> None:
        """Kill every worker and drop the executor; next call builds a new one."""
        executor, self._executor = self._executor, None
        if executor is None:
            return
        # ProcessPoolExecutor has no public kill; its worker map is the only handle.
        for process in list((getattr(executor, "_processes", None) or {}).values()):
            if process.is_alive():
                process.kill()
        executor.shutdown(wait=False, cancel_futures=True)
        logger.warning("Worker pool terminated")

    async def execute(
        self,
        file_path: str,
        mime_type: str,
        timeout: float,
    ) -> ProcessingResult:
        loop = asyncio.get_running_loop()
        try:
            future = loop.run_in_executor(self._get_executor(), _pool_task, file_path, mime_type)
        except (OSError, RuntimeError) as exc:
            self._terminate_workers()
            raise WorkerSpawnError(f"Worker pool unavailable: {exc}") from exc

        try:
            ok, payload = await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            self._terminate_workers()
            raise ProcessingTimeoutError(timeout) from None
        except BrokenProcessPool as exc:
            # A worker died mid-task (OOM kill, segfault in a native parser)
            self._terminate_workers()
            raise WorkerExitError(None, f"worker process died: {exc}") from exc

        if not ok:
            raise DocumentProcessingError(payload)
        return ProcessingResult.model_validate_json(payload)

    async def shutdown(self) -> None:
        executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True, cancel_futures=True)


# ---------------------------------------------------------------------------
# Spawned child process (development)
# ---------------------------------------------------------------------------

class SubprocessStrategy(IsolationStrategy):
    name = "subprocess"

    def __init__(
        self,
        memory_limit_mb: int | None = None,
        temp_dir: str | None = None,
        python_executable: str | None = None,
    ) -> None:
        self._memory_limit_mb = (
            settings.child_memory_limit_mb if memory_limit_mb is None else memory_limit_mb
        )
        self._temp_dir = temp_dir or settings.processing_temp_dir
        self._python = python_executable or sys.executable

    def _child_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env[MEMORY_LIMIT_ENV] = str(self._memory_limit_mb)
        # The child must import docingest from the same tree as the parent
        paths = [_SOURCE_ROOT] + [p for p in env.get("PYTHONPATH", "").split(os.pathsep) if p]
        env["PYTHONPATH"] = os.pathsep.join(dict.fromkeys(paths))
        return env

    async def execute(
        self,
        file_path: str,
        mime_type: str,
        timeout: float,
    ) -> ProcessingResult:
        with scoped_temp_file(self._temp_dir) as output_path:
            try:
                proc = await asyncio.create_subprocess_exec(
                    self._python, "-m", CHILD_MODULE, file_path, mime_type, output_path,
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    env=self._child_env(),
                )
            except OSError as exc:
                raise WorkerSpawnError(f"Child process error: {exc}") from exc

            try:
                stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout)
            except asyncio.TimeoutError:
                raise ProcessingTimeoutError(timeout) from None
            finally:
                # Timeout or cancellation: never leave the child running
                if proc.returncode is None:
                    proc.kill()
                    await proc.wait()

            stdout = stdout_b.decode("utf-8", errors="replace")
            stderr = stderr_b.decode("utf-8", errors="replace")
            status = parse_status_line(stdout)

            if proc.returncode != 0:
                if status is not None and not status.success:
                    raise DocumentProcessingError(status.error or "Unknown error in child process")
                raise WorkerExitError(proc.returncode, stderr)

            if status is None:
                raise MalformedStatusError(
                    f"Invalid status output from child process: {stdout[-500:]!r}"
                )
            if not status.success:
                raise DocumentProcessingError(status.error or "Unknown error in child process")

            return read_result_file(output_path)


# ---------------------------------------------------------------------------
# Module-level entry point
# ---------------------------------------------------------------------------

_strategy: IsolationStrategy | None = None


def build_isolation_strategy(mode: str | None = None) -> IsolationStrategy:
    mode = mode or settings.resolved_processing_mode
    if mode == "pool" and multiprocessing.current_process().daemon:
        # Daemonic processes (Celery prefork children) cannot own a process pool
        logger.info("Daemonic process, using subprocess isolation instead of pool")
        mode = "subprocess"
    if mode == "pool":
        return WorkerPoolStrategy()
    if mode == "subprocess":
        return SubprocessStrategy()
    raise ValueError(f"Unknown processing mode: {mode!r}")


def get_isolation_strategy() -> IsolationStrategy:
    global _strategy
    if _strategy is None:
        _strategy = build_isolation_strategy()
        logger.info("Isolation strategy | mode=%s", _strategy.name)
    return _strategy


@traced("execute_document_processing")
async def execute_document_processing(
    file_path: str,
    mime_type: str,
    *,
    timeout: float | None = None,
    strategy: IsolationStrategy | None = None,
) -> ProcessingResult:
    """
    Parse + chunk a document in isolation. The full text stays on the far
    side of the boundary; only title / outline / counts / chunks come back.
    """
    strategy = strategy or get_isolation_strategy()
    timeout = timeout or settings.processing_timeout_seconds
    return await strategy.execute(file_path, mime_type, timeout)


async def shutdown_isolation() -> None:
    global _strategy
    if _strategy is not None:
        await _strategy.shutdown()
        _strategy = None
