"""
Unit Tests — Section-Aware Chunker
═══════════════════════════════════
  ✅ Short text → one chunk spanning the whole input
  ✅ Long text → windows advance by size - overlap and cover the input
  ✅ Whitespace-only input / windows → no empty chunks
  ✅ overlap >= size still terminates
  ✅ Section chunks carry section id / title and absolute offsets
  ✅ chunk_index is global and contiguous across sections
  ✅ No locatable section → one untagged pass over the whole text
"""

from __future__ import annotations

import pytest

from docingest.processing.chunking import chunk_document_by_section, chunk_text
from docingest.processing.parsers import generate_section_id
from docingest.schemas.documents import OutlineSection, ParsedDocument


def _section(title: str, level: int, position: int) -> OutlineSection:
    return OutlineSection(
        id=generate_section_id(title, level, position),
        title=title,
        level=level,
        position=position,
    )


@pytest.mark.unit
@pytest.mark.processing
class TestChunkText:

    def test_short_text_is_single_chunk(self):
        chunks = chunk_text("  hello world  ", chunk_size=1000, overlap=200)
        assert len(chunks) == 1
        assert chunks[0].content == "hello world"
        assert (chunks[0].start_char, chunks[0].end_char) == (0, 15)
        assert chunks[0].chunk_index == 0

    def test_empty_and_blank_text_yield_nothing(self):
        assert chunk_text("") == []
        assert chunk_text("   \n\t  ") == []

    def test_window_starts_step_by_size_minus_overlap(self):
        text = "x" * 2500
        chunks = chunk_text(text, chunk_size=1000, overlap=200)

        assert [c.start_char for c in chunks] == [0, 800, 1600]
        assert [c.end_char for c in chunks] == [1000, 1800, 2500]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]

    def test_spans_cover_whole_input(self):
        text = "abcdefghij" * 130
        chunks = chunk_text(text, chunk_size=300, overlap=50)

        assert chunks[0].start_char == 0
        assert chunks[-1].end_char == len(text)
        for prev, nxt in zip(chunks, chunks[1:]):
            assert nxt.start_char <= prev.end_char

    def test_every_chunk_has_valid_span_and_content(self):
        text = ("word " * 50 + "\n") * 30
        for chunk in chunk_text(text, chunk_size=200, overlap=40):
            assert chunk.start_char < chunk.end_char
            assert chunk.content.strip()

    def test_whitespace_window_is_skipped(self):
        text = "a" * 10 + " " * 30 + "b" * 10
        chunks = chunk_text(text, chunk_size=10, overlap=0)

        assert [c.content for c in chunks] == ["a" * 10, "b" * 10]
        assert [c.chunk_index for c in chunks] == [0, 1]

    @pytest.mark.parametrize("overlap", [10, 25])
    def test_overlap_not_smaller_than_size_terminates(self, overlap):
        chunks = chunk_text("z" * 55, chunk_size=10, overlap=overlap)
        assert [c.start_char for c in chunks] == [0, 10, 20, 30, 40, 50]
        assert chunks[-1].end_char == 55

    def test_non_positive_size_rejected(self):
        with pytest.raises(ValueError):
            chunk_text("text", chunk_size=0)


@pytest.mark.unit
@pytest.mark.processing
class TestChunkDocumentBySection:

    def test_chunks_tagged_with_their_section(self):
        intro_body = "Welcome aboard. " * 40
        details_body = "Fine print follows. " * 40
        text = f"## Intro\n\n{intro_body}\n\n## Details\n\n{details_body}\n"
        doc = ParsedDocument(
            title="Intro",
            outline=[_section("Intro", 2, 0), _section("Details", 2, 1)],
            full_text=text,
            word_count=len(text.split()),
        )

        chunks = chunk_document_by_section(doc, chunk_size=1000, overlap=200)

        assert {c.section_title for c in chunks} == {"Intro", "Details"}
        assert [c.chunk_index for c in chunks] == list(range(len(chunks)))
        intro_chunks = [c for c in chunks if c.section_title == "Intro"]
        details_chunks = [c for c in chunks if c.section_title == "Details"]
        assert intro_chunks[0].start_char == text.index("Intro")
        assert details_chunks[0].start_char == text.index("Details")
        assert all(c.section_id == doc.outline[0].id for c in intro_chunks)

    def test_offsets_point_into_full_text(self):
        text = "ALPHA\n" + "a" * 1500 + "\nBETA\n" + "b" * 400
        doc = ParsedDocument(
            title="ALPHA",
            outline=[_section("ALPHA", 1, 0), _section("BETA", 1, 1)],
            full_text=text,
        )

        for chunk in chunk_document_by_section(doc, chunk_size=1000, overlap=200):
            assert chunk.content in text[chunk.start_char:chunk.end_char]

    def test_section_chunks_do_not_cross_into_next_section(self):
        text = "ALPHA\n" + "a" * 300 + "\nBETA\n" + "b" * 300
        doc = ParsedDocument(
            title="ALPHA",
            outline=[_section("ALPHA", 1, 0), _section("BETA", 1, 1)],
            full_text=text,
        )

        chunks = chunk_document_by_section(doc, chunk_size=1000, overlap=200)

        assert len(chunks) == 2
        assert "BETA" not in chunks[0].content
        assert chunks[0].end_char <= text.index("BETA")

    def test_unlocatable_outline_falls_back_to_whole_text(self):
        doc = ParsedDocument(
            title="Untitled",
            outline=[_section("Document Content", 1, 0)],
            full_text="plain body text " * 100,
        )

        chunks = chunk_document_by_section(doc, chunk_size=500, overlap=100)

        assert chunks
        assert all(c.section_id is None and c.section_title is None for c in chunks)
        assert chunks[-1].end_char == len(doc.full_text)

    def test_empty_document_yields_no_chunks(self):
        doc = ParsedDocument(title="Empty", outline=[], full_text="")
        assert chunk_document_by_section(doc) == []
