"""Ingest pipelines for indexing documents.

Orchestrates:
- Type detection and text extraction
- Text chunking
- Embedding and storage through the vector store

Two entry points share the chunker and store: DocumentIngestor handles a
single uploaded file or URL and appends to the store; BatchIngestor clears
the store and re-indexes a whole directory tree.
"""
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urlparse
import httpx
import structlog

from docqa import config
from docqa.errors import ValidationError
from docqa.rag import parsers
from docqa.rag.chunker import TextChunker
from docqa.rag.vector_store import ChunkMetadata, DocumentType, VectorStore

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int, Path, int], None]


@dataclass
class IngestStats:
    """Outcome of ingesting one document."""

    source: str
    type: DocumentType
    text_length: int
    chunks_created: int
    chunks_added: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source,
            "type": self.type.value,
            "textLength": self.text_length,
            "chunksCreated": self.chunks_created,
            "chunksAdded": self.chunks_added,
        }


class DocumentIngestor:
    """Pipeline for adding a single uploaded document to the store."""

    def __init__(
        self,
        store: VectorStore,
        chunker: TextChunker = None,
        min_chunk_chars: int = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the document ingestor.

        Args:
            store: Vector store to add chunks to
            chunker: Text chunker (default size/overlap from config)
            min_chunk_chars: Trimmed chunks this short or shorter are skipped
            transport: Optional httpx transport for URL fetching
        """
        self.store = store
        self.chunker = chunker or TextChunker()
        self.min_chunk_chars = (
            config.MIN_CHUNK_CHARS if min_chunk_chars is None else min_chunk_chars
        )
        self._transport = transport

    async def ingest_file(
        self, filename: str, data: bytes, mime_type: Optional[str] = None
    ) -> IngestStats:
        """Extract, chunk and index an uploaded file.

        Raises:
            ValidationError: Unsupported type or no extractable text
            ExtractionError: If the parser fails
        """
        if not filename:
            raise ValidationError("Uploaded file has no filename")

        doc_type = parsers.detect_document_type(filename, mime_type)
        if doc_type is None or doc_type is DocumentType.URL:
            logger.warning("unsupported_document_type", filename=filename, mime_type=mime_type)
            raise ValidationError(parsers.SUPPORTED_TYPES_MESSAGE)

        logger.info("processing_file", filename=filename, type=doc_type.value, size=len(data))

        text = await parsers.parse_document(data, doc_type)
        return await self._index_text(text, source=filename, doc_type=doc_type)

    async def ingest_url(self, url: str) -> IngestStats:
        """Fetch, chunk and index a web page.

        Raises:
            ValidationError: Malformed URL or no extractable text
            ExtractionError: If the page cannot be fetched
        """
        url = (url or "").strip()
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.hostname:
            raise ValidationError("URL must be an absolute http(s) URL")

        logger.info("processing_url", url=url)

        text = await parsers.parse_document(url, DocumentType.URL, transport=self._transport)
        return await self._index_text(text, source=parsed.hostname, doc_type=DocumentType.URL)

    async def _index_text(
        self, text: str, source: str, doc_type: DocumentType
    ) -> IngestStats:
        if not text or not text.strip():
            raise ValidationError("Could not extract text from the document")

        chunks = self.chunker.chunk_text(text)
        upload_id = uuid.uuid4().hex[:8]
        added = 0

        for chunk in chunks:
            content = chunk.content.strip()
            if len(content) <= self.min_chunk_chars:
                continue

            await self.store.add(
                id=f"{source}-{upload_id}-chunk-{chunk.chunk_index}",
                document=content,
                metadata=ChunkMetadata(
                    source=source, chunk=chunk.chunk_index, type=doc_type
                ),
            )
            added += 1

        stats = IngestStats(
            source=source,
            type=doc_type,
            text_length=len(text),
            chunks_created=len(chunks),
            chunks_added=added,
        )

        logger.info(
            "document_ingested",
            source=source,
            type=doc_type.value,
            text_length=stats.text_length,
            chunks_created=stats.chunks_created,
            chunks_added=stats.chunks_added,
        )

        return stats


class BatchIngestor:
    """Clears the store and re-indexes every file under a directory."""

    def __init__(self, store: VectorStore, chunker: TextChunker = None):
        self.store = store
        self.chunker = chunker or TextChunker()

    def discover_files(self, root: Path) -> List[Path]:
        """Discover all regular files under root, recursively.

        Raises:
            FileNotFoundError: If root doesn't exist
        """
        root = Path(root)
        if not root.is_dir():
            raise FileNotFoundError(f"Documents directory not found: {root}")

        files = sorted(p for p in root.rglob("*") if p.is_file())

        logger.info("files_discovered", count=len(files), root=str(root))
        return files

    async def read_text(self, path: Path) -> Tuple[str, DocumentType]:
        """Full text of a file and the type recorded for it.

        PDF and DOCX files go through their parsers; anything else is read
        as UTF-8 text.
        """
        doc_type = parsers.detect_document_type(path.name) or DocumentType.TXT
        data = path.read_bytes()

        if doc_type in (DocumentType.PDF, DocumentType.DOCX):
            return await parsers.parse_document(data, doc_type), doc_type

        return parsers.parse_text(data), DocumentType.TXT

    async def ingest_file(self, path: Path) -> int:
        """Index one file; returns the number of chunks added."""
        text, doc_type = await self.read_text(path)
        chunks = [c for c in self.chunker.chunk_text(text) if c.content.strip()]
        source = str(path)

        for chunk in chunks:
            await self.store.add(
                id=f"{source}_{chunk.chunk_index}",
                document=chunk.content,
                metadata=ChunkMetadata(source=source, chunk=chunk.chunk_index, type=doc_type),
            )

        logger.info(
            "file_ingested",
            path=source,
            type=doc_type.value,
            **self.chunker.get_chunk_stats(chunks),
        )
        return len(chunks)

    async def ingest(
        self, root: Path, progress_callback: Optional[ProgressCallback] = None
    ) -> Dict[str, Any]:
        """Clear the store and index every file under root.

        Not resumable: a failure propagates and leaves whatever was added
        before it in the store.

        Args:
            root: Directory to scan
            progress_callback: Optional callback(current, total, path, chunk_count)

        Returns:
            Dictionary with ingestion statistics
        """
        files = self.discover_files(root)

        logger.info("starting_batch_ingest", root=str(root), files=len(files))
        await self.store.clear()

        per_file: Dict[str, int] = {}

        for idx, path in enumerate(files, 1):
            count = await self.ingest_file(path)
            per_file[str(path)] = count

            if progress_callback:
                progress_callback(idx, len(files), path, count)

        stats = {
            "files_processed": len(per_file),
            "chunks_indexed": sum(per_file.values()),
            "files": per_file,
            "total_entries": self.store.count(),
        }

        logger.info(
            "batch_ingest_completed",
            files_processed=stats["files_processed"],
            chunks_indexed=stats["chunks_indexed"],
        )
        return stats
