"""
Pipeline Error Taxonomy

  DocumentProcessingError
  ├── PermanentParsingError        never retried; document fails immediately
  │   ├── UnsupportedFormatError
  │   ├── DocumentNotFoundError
  │   ├── CorruptDocumentError
  │   └── FilePermissionError
  └── TransientProcessingError     retried up to MAX_RETRIES with backoff
      └── ProcessIsolationError
          ├── WorkerSpawnError
          ├── WorkerExitError
          ├── MalformedStatusError
          ├── ProcessingTimeoutError
          └── TempFileError

  EmbeddingServiceError            own retry policy, independent of documents
  └── EmbeddingDimensionError

  InvalidStateTransitionError      manual retry / reprocess on a wrong status

Classification across the isolation boundary is done on the MESSAGE, not the
class: a child process can only hand back a string. is_retryable_error()
therefore matches permanent patterns in str(err) regardless of type, and every
permanent error class above produces a message that matches one of them.
"""

from __future__ import annotations

import re


class DocumentProcessingError(Exception):
    """Base class for everything raised while turning a file into chunks."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


# ---------------------------------------------------------------------------
# Permanent
# ---------------------------------------------------------------------------

class PermanentParsingError(DocumentProcessingError):
    pass


class UnsupportedFormatError(PermanentParsingError):
    def __init__(self, mime_type: str) -> None:
        super().__init__(f"Unsupported file type: {mime_type}")
        self.mime_type = mime_type


class DocumentNotFoundError(PermanentParsingError):
    def __init__(self, what: str) -> None:
        super().__init__(f"File not found: {what}")


class CorruptDocumentError(PermanentParsingError):
    def __init__(self, detail: str) -> None:
        super().__init__(f"Corrupt document: {detail}")


class FilePermissionError(PermanentParsingError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Permission denied: {path}")


# ---------------------------------------------------------------------------
# Transient
# ---------------------------------------------------------------------------

class TransientProcessingError(DocumentProcessingError):
    pass


class ProcessIsolationError(TransientProcessingError):
    pass


class WorkerSpawnError(ProcessIsolationError):
    pass


class WorkerExitError(ProcessIsolationError):
    def __init__(self, exit_code: int | None, stderr: str = "") -> None:
        tail = stderr.strip()[-500:]
        super().__init__(f"Child process exited with code {exit_code}: {tail}")
        self.exit_code = exit_code
        self.stderr = stderr


class MalformedStatusError(ProcessIsolationError):
    pass


class ProcessingTimeoutError(ProcessIsolationError):
    def __init__(self, timeout_seconds: float) -> None:
        super().__init__(f"Document processing timed out after {timeout_seconds:g}s")
        self.timeout_seconds = timeout_seconds


class TempFileError(ProcessIsolationError):
    pass


# ---------------------------------------------------------------------------
# Embeddings
# ---------------------------------------------------------------------------

class EmbeddingServiceError(Exception):
    pass


class EmbeddingDimensionError(EmbeddingServiceError):
    def __init__(self, expected: int, actual: int) -> None:
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


# ---------------------------------------------------------------------------
# Document lifecycle
# ---------------------------------------------------------------------------

class InvalidStateTransitionError(Exception):
    pass


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------

_PERMANENT_PATTERNS = re.compile(
    r"not found|invalid file|invalid format|unsupported|corrupt|permission denied"
    r"|enoent|eacces",
    re.IGNORECASE,
)


def is_retryable_error(error: BaseException | str) -> bool:
    """
    False for messages naming a permanent condition, True for everything else
    (timeouts, network errors, unknown).
    """
    message = error if isinstance(error, str) else str(error)
    return _PERMANENT_PATTERNS.search(message) is None
