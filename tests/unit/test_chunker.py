"""Unit tests for text chunking."""
import pytest

from docqa import config
from docqa.rag.chunker import TextChunker, chunk_text


class TestChunkText:
    """Tests for the chunk_text function."""

    def test_reference_example(self):
        text = "A" * 1000
        chunks = chunk_text(text, 500, 100)

        assert [len(c) for c in chunks] == [500, 500, 200]

    def test_empty_text(self):
        assert chunk_text("", 10, 2) == []

    def test_short_text(self):
        assert chunk_text("Short text", 100, 10) == ["Short text"]

    @pytest.mark.parametrize(
        "length,size,overlap",
        [(1, 5, 0), (100, 30, 10), (101, 30, 29), (57, 7, 3), (1000, 500, 100)],
    )
    def test_windows_are_contiguous_with_fixed_stride(self, length, size, overlap):
        text = "".join(chr(ord("a") + i % 26) for i in range(length))
        chunks = chunk_text(text, size, overlap)
        stride = size - overlap

        starts = list(range(0, length, stride))
        assert len(chunks) == len(starts)

        covered = set()
        for start, chunk in zip(starts, chunks):
            assert chunk == text[start : start + size]
            covered.update(range(start, start + len(chunk)))

        assert covered == set(range(length))

    @pytest.mark.parametrize("size,overlap", [(10, 10), (10, 11), (1, 5)])
    def test_overlap_not_smaller_than_size_fails_fast(self, size, overlap):
        with pytest.raises(ValueError, match="Overlap"):
            chunk_text("x" * 100, size, overlap)

    def test_non_positive_size_rejected(self):
        with pytest.raises(ValueError):
            chunk_text("abc", 0, 0)

    def test_negative_overlap_rejected(self):
        with pytest.raises(ValueError):
            chunk_text("abc", 5, -1)

    def test_deterministic(self):
        text = "The quick brown fox jumps over the lazy dog. " * 40
        assert chunk_text(text, 120, 30) == chunk_text(text, 120, 30)


class TestTextChunker:
    """Tests for the TextChunker class."""

    def test_defaults_from_config(self):
        chunker = TextChunker()

        assert chunker.chunk_size == config.CHUNK_SIZE
        assert chunker.chunk_overlap == config.CHUNK_OVERLAP

    def test_positions(self):
        chunker = TextChunker(chunk_size=500, chunk_overlap=100)
        chunks = chunker.chunk_text("A" * 1000)

        assert [c.char_start for c in chunks] == [0, 400, 800]
        assert [c.char_end for c in chunks] == [500, 900, 1000]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]

    def test_invalid_window_rejected_at_construction(self):
        with pytest.raises(ValueError):
            TextChunker(chunk_size=100, chunk_overlap=100)

    def test_zero_overlap_is_allowed(self):
        chunker = TextChunker(chunk_size=4, chunk_overlap=0)

        assert [c.content for c in chunker.chunk_text("abcdefghij")] == ["abcd", "efgh", "ij"]

    def test_empty_text(self):
        assert TextChunker(10, 2).chunk_text("") == []

    def test_chunk_stats(self):
        chunker = TextChunker(chunk_size=500, chunk_overlap=100)
        stats = chunker.get_chunk_stats(chunker.chunk_text("A" * 1000))

        assert stats["chunk_count"] == 3
        assert stats["total_chars"] == 1200
        assert stats["min_chunk_size"] == 200
        assert stats["max_chunk_size"] == 500

    def test_chunk_stats_empty(self):
        assert TextChunker(10, 2).get_chunk_stats([])["chunk_count"] == 0
