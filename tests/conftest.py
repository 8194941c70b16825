"""Shared fixtures: deterministic embedder and generation backend fakes."""
import asyncio
import re
import zlib
from typing import Dict, List, Optional

import pytest

from docqa.rag.chunker import TextChunker
from docqa.rag.ingest import BatchIngestor, DocumentIngestor
from docqa.rag.orchestrator import RetrievalOrchestrator
from docqa.rag.vector_store import VectorStore

DIMENSION = 32


class FakeEmbedder:
    """Bag-of-words hashing embedder; identical texts get identical vectors."""

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, dimension: int = DIMENSION):
        self.vectors = vectors or {}
        self.dimension = dimension
        self.calls: List[str] = []
        self.error: Optional[Exception] = None

    async def embed(self, text: str) -> List[float]:
        self.calls.append(text)
        # Let other tasks interleave, like a real network call would
        await asyncio.sleep(0)

        if self.error is not None:
            raise self.error

        if text in self.vectors:
            return list(self.vectors[text])

        vector = [0.0] * self.dimension
        for word in re.findall(r"\w+", text.lower()):
            vector[zlib.crc32(word.encode()) % self.dimension] += 1.0
        return vector


class FakeGenerator:
    """Generation backend returning canned fragments."""

    def __init__(self, fragments: Optional[List[str]] = None, error: Optional[Exception] = None):
        self.fragments = fragments if fragments is not None else ["The", " answer", " is 42"]
        self.error = error
        self.prompts: List[str] = []
        self.yielded = 0
        self.closed = False
        self.models = ["llama3.2:latest"]

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return "".join(self.fragments)

    async def generate_stream(self, prompt: str):
        self.prompts.append(prompt)
        try:
            for fragment in self.fragments:
                await asyncio.sleep(0)
                self.yielded += 1
                yield fragment
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True

    async def list_models(self) -> List[str]:
        return list(self.models)


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def store_path(tmp_path):
    return tmp_path / "store" / "vectors.json"


@pytest.fixture
def store(store_path, embedder):
    return VectorStore(path=store_path, embedder=embedder)


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def orchestrator(store, generator):
    return RetrievalOrchestrator(store=store, generator=generator, top_k=5)


@pytest.fixture
def document_ingestor(store):
    return DocumentIngestor(store=store, chunker=TextChunker(500, 100))


@pytest.fixture
def batch_ingestor(store):
    return BatchIngestor(store=store, chunker=TextChunker(500, 100))
