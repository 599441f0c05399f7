"""
Isolated child process entry point.

    python -m docingest.workers.child <file_path> <mime_type> <output_path>

Parses AND chunks the document, writes the ProcessingResult JSON to
<output_path>, and prints exactly one status line on stdout. Logging goes
to stderr so it can never be mistaken for the status line.

Exit codes: 0 on success, 1 on any handled failure (status line says why).
"""

from __future__ import annotations

import logging
import os
import sys

from docingest.schemas.documents import ChildStatus
from docingest.workers.isolation import MEMORY_LIMIT_ENV, apply_memory_limit

logger = logging.getLogger("docingest.workers.child")


def _emit(status: ChildStatus) -> None:
    sys.stdout.write(status.model_dump_json() + "\n")
    sys.stdout.flush()


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 3 or not all(args):
        _emit(ChildStatus(success=False, error="Missing arguments"))
        return 1

    file_path, mime_type, output_path = args

    limit_mb = int(os.environ.get(MEMORY_LIMIT_ENV, "0") or 0)
    apply_memory_limit(limit_mb)

    from docingest.observability.tracing import configure_logging
    from docingest.processing.pipeline import run_document_pipeline

    configure_logging()
    logger.debug("Child start | pid=%d mime=%s limit_mb=%d", os.getpid(), mime_type, limit_mb)

    try:
        result = run_document_pipeline(file_path, mime_type)
        with open(output_path, "w", encoding="utf-8") as fh:
            fh.write(result.model_dump_json())
    except Exception as exc:
        _emit(ChildStatus(success=False, error=str(exc) or type(exc).__name__))
        return 1

    _emit(ChildStatus(success=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
