"""
Format Parsers  —  Text & Outline Extraction
═════════════════════════════════════════════

Design: closed dispatch table
─────────────────────────────
Every supported MIME type maps to exactly one DocumentFormat, and every
DocumentFormat has exactly one parser. Anything else raises
UnsupportedFormatError. There is no "try as plain text" fallback.

  PDF       → pdftotext (poppler-utils, out-of-process, low memory)
              └─ falls back to pypdf when the tool is missing or fails
  DOCX      → python-docx (paragraphs and tables in body order)
  XLSX      → openpyxl (read-only mode, one outline entry per sheet)
  MARKDOWN  → ATX headings parsed directly (# … ######)

Outline detection for PDF / DOCX is a heuristic over plain text lines:
  - ALL-CAPS line longer than 3 chars          → level 1
  - "1. Title" / "A. Title" numbering prefix   → level 2, prefix stripped
It WILL misfire on mixed-case headings and unusual numbering. Callers must
treat the outline as best-effort.

All parsers run inside the isolation layer (worker pool or child process),
so they are plain synchronous functions.
"""

from __future__ import annotations

import hashlib
import logging
import os
import re
import subprocess
import zipfile
from abc import ABC, abstractmethod
from enum import Enum

from docingest.core.config import settings
from docingest.core.errors import (
    CorruptDocumentError,
    DocumentNotFoundError,
    FilePermissionError,
    UnsupportedFormatError,
)
from docingest.schemas.documents import OutlineSection, ParsedDocument

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration constants
# ---------------------------------------------------------------------------

MAX_TITLE_CHARS = 100
FALLBACK_SECTION_TITLE = "Document Content"

# Heading heuristics for plain-text formats
_NUMBERED_RE        = re.compile(r"^\d+\.")
_LETTERED_RE        = re.compile(r"^[A-Z]\.")
_NUMBERED_PREFIX_RE = re.compile(r"^\d+\.\s*")
_LETTERED_PREFIX_RE = re.compile(r"^[A-Z]\.\s*")
_HAS_UPPER_RE       = re.compile(r"[A-Z]")

# Markdown ATX headings: "## Title" or "## Title ##"
_ATX_HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.+?)[ \t]*#*[ \t]*$")
_FENCE_RE       = re.compile(r"^\s*(```|~~~)")

_PDF_PAGES_RE = re.compile(r"^Pages:\s*(\d+)", re.MULTILINE)


# ---------------------------------------------------------------------------
# Format registry
# ---------------------------------------------------------------------------

class DocumentFormat(str, Enum):
    PDF      = "pdf"
    DOCX     = "docx"
    XLSX     = "xlsx"
    MARKDOWN = "markdown"


MIME_TYPE_FORMATS: dict[str, DocumentFormat] = {
    "application/pdf": DocumentFormat.PDF,
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": DocumentFormat.DOCX,
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": DocumentFormat.XLSX,
    "text/markdown": DocumentFormat.MARKDOWN,
    "text/x-markdown": DocumentFormat.MARKDOWN,
    "text/plain": DocumentFormat.MARKDOWN,
}


def resolve_format(mime_type: str) -> DocumentFormat:
    """Map a MIME type to its format or raise UnsupportedFormatError."""
    fmt = MIME_TYPE_FORMATS.get((mime_type or "").split(";", 1)[0].strip().lower())
    if fmt is None:
        raise UnsupportedFormatError(mime_type)
    return fmt


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def generate_section_id(title: str, level: int, position: int) -> str:
    """
    Deterministic section id: sha256(lower(title)|level|position)[:16].
    Same triple → same id across reprocessing passes, so stored citations
    keep resolving.
    """
    raw = "|".join([title.lower().strip(), str(level), str(position)])
    return "section-" + hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]


def fallback_outline() -> list[OutlineSection]:
    return [
        OutlineSection(
            id=generate_section_id(FALLBACK_SECTION_TITLE, 1, 0),
            title=FALLBACK_SECTION_TITLE,
            level=1,
            position=0,
        )
    ]


def extract_outline_from_text(text: str) -> list[OutlineSection]:
    """
    Heuristic outline for formats without structural headings.
    Falls back to a single "Document Content" section when nothing matches.
    """
    outline: list[OutlineSection] = []
    position = 0

    for line in text.split("\n"):
        stripped = line.strip()
        if not stripped:
            continue

        is_all_caps = (
            stripped == stripped.upper()
            and len(stripped) > 3
            and _HAS_UPPER_RE.search(stripped) is not None
        )
        is_numbered = _NUMBERED_RE.match(stripped) is not None
        is_lettered = _LETTERED_RE.match(stripped) is not None

        if not (is_all_caps or is_numbered or is_lettered):
            continue

        level = 2 if (is_numbered or is_lettered) else 1
        title = _LETTERED_PREFIX_RE.sub("", _NUMBERED_PREFIX_RE.sub("", stripped, count=1), count=1)
        title = title.strip()
        if not title:
            continue

        outline.append(OutlineSection(
            id=generate_section_id(title, level, position),
            title=title,
            level=level,
            position=position,
        ))
        position += 1

    return outline or fallback_outline()


def first_line_title(text: str, default: str) -> str:
    for line in text.split("\n"):
        stripped = line.strip()
        if stripped:
            return stripped[:MAX_TITLE_CHARS]
    return default


def count_words(text: str) -> int:
    return len(text.split())


def _check_readable(file_path: str) -> None:
    """Turn missing / unreadable files into permanent, classified errors."""
    if not os.path.exists(file_path):
        raise DocumentNotFoundError(file_path)
    if not os.access(file_path, os.R_OK):
        raise FilePermissionError(file_path)


# ---------------------------------------------------------------------------
# Abstract parser
# ---------------------------------------------------------------------------

class DocumentParser(ABC):
    """One parser per DocumentFormat."""

    format: DocumentFormat

    def parse(self, file_path: str) -> ParsedDocument:
        _check_readable(file_path)
        try:
            return self._parse(file_path)
        except PermissionError as exc:
            raise FilePermissionError(file_path) from exc
        except FileNotFoundError as exc:
            raise DocumentNotFoundError(file_path) from exc

    @abstractmethod
    def _parse(self, file_path: str) -> ParsedDocument:
        """Format-specific extraction."""


# ---------------------------------------------------------------------------
# PDF
# ---------------------------------------------------------------------------

class PdfParser(DocumentParser):
    """
    pdftotext first: it streams page by page in a separate process and
    keeps our heap flat even for very large PDFs. pypdf is the in-process
    fallback when poppler-utils is not installed or chokes on the file.
    """

    format = DocumentFormat.PDF

    def _parse(self, file_path: str) -> ParsedDocument:
        try:
            text = self._run_pdftotext(file_path)
            page_count = self._run_pdfinfo(file_path)
            strategy = "pdftotext"
        except (OSError, subprocess.SubprocessError) as exc:
            logger.info("pdftotext unavailable, falling back to pypdf | error=%s", exc)
            text, page_count = self._extract_with_pypdf(file_path)
            strategy = "pypdf"

        logger.info(
            "PDF extracted | strategy=%s pages=%s chars=%d",
            strategy, page_count, len(text),
        )
        return ParsedDocument(
            title=first_line_title(text, "Untitled PDF"),
            outline=extract_outline_from_text(text),
            full_text=text,
            page_count=page_count,
            word_count=count_words(text),
        )

    def _run_pdftotext(self, file_path: str) -> str:
        completed = subprocess.run(
            [settings.pdftotext_path, "-layout", file_path, "-"],
            capture_output=True,
            check=True,
            timeout=settings.pdf_tool_timeout_seconds,
        )
        return completed.stdout.decode("utf-8", errors="replace")

    def _run_pdfinfo(self, file_path: str) -> int | None:
        try:
            completed = subprocess.run(
                [settings.pdfinfo_path, file_path],
                capture_output=True,
                check=True,
                timeout=settings.pdf_tool_timeout_seconds,
            )
        except (OSError, subprocess.SubprocessError) as exc:
            logger.debug("pdfinfo failed: %s", exc)
            return None
        match = _PDF_PAGES_RE.search(completed.stdout.decode("utf-8", errors="replace"))
        return int(match.group(1)) if match else None

    def _extract_with_pypdf(self, file_path: str) -> tuple[str, int]:
        from pypdf import PdfReader
        from pypdf.errors import PdfReadError

        try:
            reader = PdfReader(file_path)
            pages = [page.extract_text() or "" for page in reader.pages]
        except PdfReadError as exc:
            raise CorruptDocumentError(f"Failed to process PDF: {exc}") from exc
        return "\n\n".join(pages), len(pages)


# ---------------------------------------------------------------------------
# DOCX
# ---------------------------------------------------------------------------

class DocxParser(DocumentParser):
    format = DocumentFormat.DOCX

    def _parse(self, file_path: str) -> ParsedDocument:
        import docx
        from docx.opc.exceptions import PackageNotFoundError
        from docx.table import Table

        try:
            document = docx.Document(file_path)
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError) as exc:
            raise CorruptDocumentError(f"Failed to process DOCX: {exc}") from exc

        blocks: list[str] = []
        for item in document.iter_inner_content():
            if isinstance(item, Table):
                for row in item.rows:
                    cells = [cell.text.strip() for cell in row.cells]
                    if any(cells):
                        blocks.append("\t".join(cells))
            elif item.text.strip():
                blocks.append(item.text)

        text = "\n\n".join(blocks)
        return ParsedDocument(
            title=first_line_title(text, "Untitled"),
            outline=extract_outline_from_text(text),
            full_text=text,
            word_count=count_words(text),
        )


# ---------------------------------------------------------------------------
# XLSX
# ---------------------------------------------------------------------------

class XlsxParser(DocumentParser):
    """Each worksheet becomes one level-1 outline entry, in workbook order."""

    format = DocumentFormat.XLSX

    def _parse(self, file_path: str) -> ParsedDocument:
        from openpyxl import load_workbook
        from openpyxl.utils.exceptions import InvalidFileException

        # File object rather than path: openpyxl rejects paths without an
        # .xlsx extension, and stored uploads are not guaranteed to have one.
        with open(file_path, "rb") as fh:
            try:
                workbook = load_workbook(fh, read_only=True, data_only=True)
            except (InvalidFileException, zipfile.BadZipFile, KeyError) as exc:
                raise CorruptDocumentError(f"Failed to process XLSX: {exc}") from exc

            try:
                sheet_names: list[str] = []
                parts: list[str] = []
                for sheet in workbook.worksheets:
                    sheet_names.append(sheet.title)
                    rows = []
                    for row in sheet.iter_rows(values_only=True):
                        cells = ["" if v is None else str(v) for v in row]
                        if any(c.strip() for c in cells):
                            rows.append("\t".join(cells).rstrip("\t"))
                    parts.append(f"=== {sheet.title} ===\n\n" + "\n".join(rows))
            finally:
                workbook.close()

        outline = [
            OutlineSection(
                id=generate_section_id(name, 1, index),
                title=name,
                level=1,
                position=index,
            )
            for index, name in enumerate(sheet_names)
        ]
        text = "\n\n".join(parts).strip()

        return ParsedDocument(
            title=sheet_names[0] if sheet_names else "Untitled Spreadsheet",
            outline=outline or fallback_outline(),
            full_text=text,
            word_count=count_words(text),
        )


# ---------------------------------------------------------------------------
# Markdown
# ---------------------------------------------------------------------------

class MarkdownParser(DocumentParser):
    """Headings come straight from ATX syntax, so levels are exact."""

    format = DocumentFormat.MARKDOWN

    def _parse(self, file_path: str) -> ParsedDocument:
        with open(file_path, "r", encoding="utf-8", errors="replace") as fh:
            text = fh.read()

        outline: list[OutlineSection] = []
        in_fence = False
        for line in text.split("\n"):
            if _FENCE_RE.match(line):
                in_fence = not in_fence
                continue
            if in_fence:
                continue
            match = _ATX_HEADING_RE.match(line)
            if not match:
                continue
            level = len(match.group(1))
            heading = match.group(2).strip()
            if not heading:
                continue
            position = len(outline)
            outline.append(OutlineSection(
                id=generate_section_id(heading, level, position),
                title=heading,
                level=level,
                position=position,
            ))

        top_level = next((s.title for s in outline if s.level == 1), None)
        title = top_level or (outline[0].title if outline else first_line_title(text, "Untitled"))

        return ParsedDocument(
            title=title[:MAX_TITLE_CHARS],
            outline=outline or fallback_outline(),
            full_text=text,
            word_count=count_words(text),
        )


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

_PARSERS: dict[DocumentFormat, DocumentParser] = {
    DocumentFormat.PDF:      PdfParser(),
    DocumentFormat.DOCX:     DocxParser(),
    DocumentFormat.XLSX:     XlsxParser(),
    DocumentFormat.MARKDOWN: MarkdownParser(),
}


def get_parser(mime_type: str) -> DocumentParser:
    return _PARSERS[resolve_format(mime_type)]


def parse_document(file_path: str, mime_type: str) -> ParsedDocument:
    """Dispatch by MIME type. Unsupported types raise before touching the file."""
    parser = get_parser(mime_type)
    logger.debug("Parsing | format=%s path=%s", parser.format.value, file_path)
    return parser.parse(file_path)
