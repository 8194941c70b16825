"""JSON-backed vector store with brute-force cosine search.

Handles:
- Snapshot loading at startup and atomic rewrites on every mutation
- Embedding of added documents
- Exact top-k cosine similarity search with numpy

Writers (add, clear) serialize on a single asyncio lock around the
validate -> persist -> publish sequence. Readers never take the lock: they
work on an immutable snapshot that is swapped in only after the new state
has reached disk.
"""
import json
import os
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple
import asyncio
import numpy as np
import structlog

from docqa import config
from docqa.errors import PersistenceError

logger = structlog.get_logger()


class DocumentType(str, Enum):
    PDF = "pdf"
    DOCX = "docx"
    TXT = "txt"
    URL = "url"


@dataclass(frozen=True)
class ChunkMetadata:
    """Where a stored chunk came from."""

    source: str
    chunk: int
    type: DocumentType = DocumentType.TXT

    def __post_init__(self):
        if self.chunk < 0:
            raise ValueError(f"Chunk index must be >= 0, got {self.chunk}")
        # Accept plain strings ("pdf") as well as enum members
        object.__setattr__(self, "type", DocumentType(self.type))

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "chunk": self.chunk, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChunkMetadata":
        return cls(
            source=str(data["source"]),
            chunk=int(data["chunk"]),
            type=data.get("type", DocumentType.TXT.value),
        )


@dataclass(frozen=True)
class VectorEntry:
    """A stored chunk together with its embedding."""

    id: str
    embedding: Tuple[float, ...]
    document: str
    metadata: ChunkMetadata

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "embedding": list(self.embedding),
            "document": self.document,
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "VectorEntry":
        return cls(
            id=str(data["id"]),
            embedding=tuple(float(x) for x in data["embedding"]),
            document=data["document"],
            metadata=ChunkMetadata.from_dict(data["metadata"]),
        )


@dataclass(frozen=True)
class QueryResult:
    """A single search hit; lower distance means more similar."""

    document: str
    metadata: ChunkMetadata
    distance: float


class Embedder(Protocol):
    async def embed(self, text: str) -> List[float]:
        ...


@dataclass(frozen=True)
class _Snapshot:
    """Immutable view of the store contents published to readers."""

    entries: Tuple[VectorEntry, ...] = ()
    matrix: Optional[np.ndarray] = None
    norms: Optional[np.ndarray] = None
    ids: frozenset = field(default_factory=frozenset)

    @property
    def dimension(self) -> Optional[int]:
        if self.matrix is None:
            return None
        return self.matrix.shape[1]

    @classmethod
    def build(cls, entries: Sequence[VectorEntry]) -> "_Snapshot":
        entries = tuple(entries)
        if not entries:
            return cls()

        matrix = np.array([e.embedding for e in entries], dtype=np.float64)
        if matrix.ndim != 2:
            raise ValueError("Stored embeddings do not share a single dimension")
        matrix.setflags(write=False)

        norms = np.linalg.norm(matrix, axis=1)
        norms.setflags(write=False)

        return cls(
            entries=entries,
            matrix=matrix,
            norms=norms,
            ids=frozenset(e.id for e in entries),
        )

    def with_entry(self, entry: VectorEntry) -> "_Snapshot":
        vector = np.asarray(entry.embedding, dtype=np.float64)
        if self.matrix is None:
            matrix = vector.reshape(1, -1)
        else:
            matrix = np.vstack([self.matrix, vector])
        matrix.setflags(write=False)

        norms = np.append(self.norms if self.norms is not None else [], np.linalg.norm(vector))
        norms.setflags(write=False)

        return _Snapshot(
            entries=self.entries + (entry,),
            matrix=matrix,
            norms=norms,
            ids=self.ids | {entry.id},
        )


def cosine_distances(matrix: np.ndarray, norms: np.ndarray, query: np.ndarray) -> np.ndarray:
    """Cosine distance (1 - similarity) of every row of matrix to query.

    A zero-norm vector on either side has similarity 0, distance 1.
    """
    query_norm = np.linalg.norm(query)
    dots = matrix @ query
    denominators = norms * query_norm

    similarities = np.zeros_like(dots)
    np.divide(dots, denominators, out=similarities, where=denominators > 0)

    return 1.0 - similarities


class VectorStore:
    """Durable collection of embedded chunks with exact cosine search."""

    def __init__(self, path: Path = None, embedder: Embedder = None):
        """Initialize the store and load its snapshot from disk.

        Args:
            path: Snapshot file (default config.VECTOR_STORE_PATH)
            embedder: Object with an async ``embed(text)`` method

        Raises:
            PersistenceError: If an existing snapshot cannot be read
        """
        if embedder is None:
            raise ValueError("VectorStore requires an embedder")

        self.path = Path(path or config.VECTOR_STORE_PATH)
        self.embedder = embedder

        self._write_lock = asyncio.Lock()
        self._snapshot = self._load()

        logger.info(
            "vector_store_loaded",
            path=str(self.path),
            count=len(self._snapshot.entries),
            dimension=self._snapshot.dimension,
        )

    def _load(self) -> _Snapshot:
        if not self.path.exists():
            logger.info("vector_store_snapshot_missing_starting_empty", path=str(self.path))
            return _Snapshot()

        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            entries = [VectorEntry.from_dict(item) for item in raw]
            return _Snapshot.build(entries)
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.error(
                "vector_store_load_failed",
                path=str(self.path),
                error=str(e),
                error_type=type(e).__name__,
            )
            raise PersistenceError(
                f"Failed to load vector store snapshot: {type(e).__name__}"
            ) from e

    def _persist(self, entries: Sequence[VectorEntry]) -> None:
        """Atomically replace the snapshot file with the given entries."""
        payload = [entry.to_dict() for entry in entries]
        tmp_path = None

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp"
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
            tmp_path = None
        except (OSError, TypeError, ValueError) as e:
            logger.error(
                "vector_store_persist_failed",
                path=str(self.path),
                error=str(e),
                error_type=type(e).__name__,
            )
            reason = getattr(e, "strerror", None) or type(e).__name__
            raise PersistenceError(
                f"Failed to persist vector store snapshot: {reason}"
            ) from e
        finally:
            if tmp_path is not None:
                try:
                    os.unlink(tmp_path)
                except OSError:
                    logger.warning("vector_store_tmp_cleanup_failed", path=tmp_path)

    async def add(self, id: str, document: str, metadata: ChunkMetadata) -> None:
        """Embed a document and durably append it.

        Args:
            id: Unique entry id
            document: Chunk text
            metadata: Chunk metadata

        Raises:
            EmbeddingError: If the document cannot be embedded
            ValueError: On duplicate id or embedding dimension mismatch
            PersistenceError: If the snapshot cannot be written; the store
                keeps its previous contents
        """
        embedding = await self.embedder.embed(document)
        entry = VectorEntry(
            id=id,
            embedding=tuple(float(x) for x in embedding),
            document=document,
            metadata=metadata,
        )

        async with self._write_lock:
            current = self._snapshot

            if entry.id in current.ids:
                raise ValueError(f"Duplicate entry id: {entry.id}")

            if current.dimension is not None and len(entry.embedding) != current.dimension:
                raise ValueError(
                    f"Embedding dimension mismatch: expected {current.dimension}, "
                    f"got {len(entry.embedding)}"
                )

            updated = current.with_entry(entry)
            self._persist(updated.entries)
            self._snapshot = updated

        logger.debug(
            "vector_entry_added",
            id=entry.id,
            source=metadata.source,
            chunk=metadata.chunk,
            total_entries=len(updated.entries),
        )

    async def query(self, text: str, k: int = None) -> List[QueryResult]:
        """Return up to k entries most similar to text.

        Args:
            text: Query text
            k: Maximum number of results (default config.RETRIEVAL_TOP_K)

        Returns:
            Results ordered by ascending distance; ties keep insertion order

        Raises:
            EmbeddingError: If the query cannot be embedded
            ValueError: If k < 1 or the query dimension does not match
        """
        k = config.RETRIEVAL_TOP_K if k is None else k
        if k < 1:
            raise ValueError(f"k must be at least 1, got {k}")

        snapshot = self._snapshot
        if not snapshot.entries:
            logger.info("vector_store_empty_no_results")
            return []

        query_vector = np.asarray(await self.embedder.embed(text), dtype=np.float64)

        if query_vector.shape != (snapshot.dimension,):
            raise ValueError(
                f"Query dimension mismatch: expected {snapshot.dimension}, "
                f"got {query_vector.shape[-1] if query_vector.ndim else 0}"
            )

        distances = cosine_distances(snapshot.matrix, snapshot.norms, query_vector)
        order = np.argsort(distances, kind="stable")[:k]

        results = [
            QueryResult(
                document=snapshot.entries[i].document,
                metadata=snapshot.entries[i].metadata,
                distance=float(distances[i]),
            )
            for i in order
        ]

        logger.info(
            "vector_search_completed",
            searched=len(snapshot.entries),
            k=k,
            results_found=len(results),
            top_distance=results[0].distance if results else None,
        )

        return results

    async def clear(self) -> None:
        """Remove every entry and persist the empty collection.

        Raises:
            PersistenceError: If the snapshot cannot be written
        """
        async with self._write_lock:
            previous = len(self._snapshot.entries)
            self._persist(())
            self._snapshot = _Snapshot()

        logger.warning("vector_store_cleared", removed=previous)

    def count(self) -> int:
        """Current number of entries."""
        return len(self._snapshot.entries)

    @property
    def dimension(self) -> Optional[int]:
        return self._snapshot.dimension

    def entries(self) -> Tuple[VectorEntry, ...]:
        """All entries in insertion order."""
        return self._snapshot.entries

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics about the vector store.

        Returns:
            Dictionary with store statistics
        """
        return {
            "count": self.count(),
            "dimension": self.dimension,
            "snapshot_exists": self.path.exists(),
        }
