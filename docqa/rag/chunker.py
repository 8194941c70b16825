"""Text chunking with overlap for RAG pipeline.

Implements fixed-size character windows to avoid tokenizer dependencies.
Windows start at ``0, size - overlap, 2 * (size - overlap), ...`` and the
last one may be shorter than ``size``.
"""
from typing import List
from dataclasses import dataclass
import structlog

from docqa import config

logger = structlog.get_logger()


@dataclass
class TextChunk:
    """Represents a chunk of text with position information."""

    content: str
    char_start: int
    char_end: int
    chunk_index: int


def _validate_window(size: int, overlap: int) -> None:
    if size <= 0:
        raise ValueError(f"Chunk size must be positive, got {size}")
    if overlap < 0:
        raise ValueError(f"Overlap must not be negative, got {overlap}")
    if overlap >= size:
        raise ValueError(
            f"Overlap ({overlap}) must be less than chunk size ({size})"
        )


def chunk_text(text: str, size: int, overlap: int) -> List[str]:
    """Split text into overlapping fixed-size windows.

    Args:
        text: Text to chunk
        size: Window size in characters
        overlap: Characters shared by consecutive windows

    Returns:
        Ordered list of text segments

    Raises:
        ValueError: If size <= 0, overlap < 0 or overlap >= size
    """
    _validate_window(size, overlap)

    stride = size - overlap
    return [text[start : start + size] for start in range(0, len(text), stride)]


class TextChunker:
    """Character-based text chunker with overlap support."""

    def __init__(
        self,
        chunk_size: int = None,
        chunk_overlap: int = None,
    ):
        """Initialize the text chunker.

        Args:
            chunk_size: Size of each chunk in characters (default from config)
            chunk_overlap: Overlap between chunks in characters (default from config)

        Raises:
            ValueError: If the size/overlap combination can never advance
        """
        self.chunk_size = config.CHUNK_SIZE if chunk_size is None else chunk_size
        self.chunk_overlap = (
            config.CHUNK_OVERLAP if chunk_overlap is None else chunk_overlap
        )

        _validate_window(self.chunk_size, self.chunk_overlap)

        logger.debug(
            "chunker_initialized",
            chunk_size=self.chunk_size,
            chunk_overlap=self.chunk_overlap,
        )

    @property
    def stride(self) -> int:
        return self.chunk_size - self.chunk_overlap

    def chunk_text(self, text: str) -> List[TextChunk]:
        """Split text into overlapping chunks.

        Args:
            text: Text to chunk

        Returns:
            List of TextChunk objects
        """
        if not text:
            return []

        text_length = len(text)
        chunks = []

        for chunk_index, start in enumerate(range(0, text_length, self.stride)):
            end = min(start + self.chunk_size, text_length)
            chunks.append(
                TextChunk(
                    content=text[start:end],
                    char_start=start,
                    char_end=end,
                    chunk_index=chunk_index,
                )
            )

        logger.debug(
            "text_chunked",
            text_length=text_length,
            chunk_count=len(chunks),
            avg_chunk_size=sum(len(c.content) for c in chunks) // len(chunks),
        )

        return chunks

    def get_chunk_stats(self, chunks: List[TextChunk]) -> dict:
        """Get statistics about a set of chunks.

        Args:
            chunks: List of TextChunk objects

        Returns:
            Dictionary with chunk statistics
        """
        if not chunks:
            return {
                "chunk_count": 0,
                "total_chars": 0,
                "avg_chunk_size": 0,
                "min_chunk_size": 0,
                "max_chunk_size": 0,
                "overlap": self.chunk_overlap,
            }

        chunk_sizes = [len(c.content) for c in chunks]

        return {
            "chunk_count": len(chunks),
            "total_chars": sum(chunk_sizes),
            "avg_chunk_size": sum(chunk_sizes) // len(chunks),
            "min_chunk_size": min(chunk_sizes),
            "max_chunk_size": max(chunk_sizes),
            "overlap": self.chunk_overlap,
        }
