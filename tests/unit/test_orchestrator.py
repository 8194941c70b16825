"""Unit tests for the retrieval orchestrator."""
import pytest

from docqa.errors import EmbeddingError, GenerationError, RetrievalError, ValidationError
from docqa.rag.orchestrator import (
    CONTEXT_SEPARATOR,
    FALLBACK_ANSWER,
    ChunkEvent,
    DoneEvent,
    ErrorEvent,
    RetrievalOrchestrator,
    Source,
)
from docqa.rag.vector_store import ChunkMetadata


class SinkClosed(Exception):
    pass


class RecordingSink:
    def __init__(self, close_after: int = None):
        self.events = []
        self.close_after = close_after

    async def __call__(self, event):
        if self.close_after is not None and len(self.events) >= self.close_after:
            raise SinkClosed()
        self.events.append(event)


@pytest.fixture
async def populated_store(store):
    await store.add("guide_0", "The answer to everything is 42", ChunkMetadata("guide.txt", 0))
    await store.add("guide_1", "Towels are useful for travel", ChunkMetadata("guide.txt", 1))
    await store.add("notes_0", "Bananas are rich in potassium", ChunkMetadata("notes.txt", 0))
    return store


@pytest.fixture
def query_spy(monkeypatch):
    """Counts store.query calls on whichever store is patched."""
    calls = []

    def install(store):
        original = store.query

        async def spy(text, k=None):
            calls.append((text, k))
            return await original(text, k)

        monkeypatch.setattr(store, "query", spy)
        return calls

    return install


class TestBlocking:

    async def test_empty_store_returns_fallback_without_generation(self, orchestrator, generator):
        result = await orchestrator.answer("What is the answer?")

        assert result.answer == FALLBACK_ANSWER
        assert result.sources == []
        assert generator.prompts == []

    async def test_answer_with_sources(self, populated_store, orchestrator, generator, query_spy):
        calls = query_spy(populated_store)

        result = await orchestrator.answer("What is the answer to everything?")

        assert result.answer == "The answer is 42"
        assert result.sources[0] == Source(source="guide.txt", chunk=0)
        assert len(result.sources) == 3
        assert calls == [("What is the answer to everything?", 5)]

    async def test_prompt_contains_context_and_question(self, populated_store, orchestrator, generator):
        await orchestrator.answer("What is the answer to everything?")

        prompt = generator.prompts[0]
        assert "The answer to everything is 42" in prompt
        assert CONTEXT_SEPARATOR in prompt
        assert "QUESTION: What is the answer to everything?" in prompt
        assert prompt.rstrip().endswith("ANSWER:")

    async def test_top_k_limits_context(self, populated_store, generator):
        orchestrator = RetrievalOrchestrator(populated_store, generator, top_k=1)

        result = await orchestrator.answer("bananas potassium")

        assert result.sources == [Source(source="notes.txt", chunk=0)]
        assert CONTEXT_SEPARATOR not in generator.prompts[0]

    @pytest.mark.parametrize("query", ["", "   ", None, 42])
    async def test_invalid_query(self, orchestrator, query):
        with pytest.raises(ValidationError):
            await orchestrator.answer(query)

    async def test_retrieval_failure(self, populated_store, orchestrator, embedder, generator):
        embedder.error = EmbeddingError("embedding backend down")

        with pytest.raises(RetrievalError):
            await orchestrator.answer("anything")
        assert generator.prompts == []

    async def test_unexpected_store_failure_is_wrapped(self, populated_store, generator, monkeypatch):
        async def broken_query(text, k=None):
            raise ValueError("Query dimension mismatch")

        monkeypatch.setattr(populated_store, "query", broken_query)
        orchestrator = RetrievalOrchestrator(populated_store, generator)

        with pytest.raises(RetrievalError, match="dimension mismatch"):
            await orchestrator.answer("anything")

    async def test_generation_failure(self, populated_store, orchestrator, generator):
        generator.error = GenerationError("backend exploded")

        with pytest.raises(GenerationError, match="backend exploded"):
            await orchestrator.answer("What is the answer?")

    async def test_unexpected_generation_failure_is_wrapped(self, populated_store, orchestrator, generator):
        generator.error = RuntimeError("socket closed")

        with pytest.raises(GenerationError, match="socket closed"):
            await orchestrator.answer("What is the answer?")


class TestStreaming:

    async def test_fragments_then_single_terminal_event(self, populated_store, orchestrator, query_spy):
        calls = query_spy(populated_store)
        sink = RecordingSink()

        result = await orchestrator.answer_streaming("What is the answer to everything?", sink)

        assert sink.events[:3] == [ChunkEvent("The"), ChunkEvent(" answer"), ChunkEvent(" is 42")]
        assert len(sink.events) == 4
        done = sink.events[3]
        assert isinstance(done, DoneEvent)
        assert done.sources == result.sources
        assert result.answer == "The answer is 42"
        assert result.sources[0] == Source(source="guide.txt", chunk=0)
        assert len(calls) == 1

    async def test_event_payloads(self, populated_store, orchestrator):
        events = [e async for e in orchestrator.stream_answer("answer to everything")]

        assert events[0].to_payload() == {"chunk": "The"}
        assert events[-1].to_payload()["done"] is True
        assert events[-1].to_payload()["sources"][0] == {"source": "guide.txt", "chunk": 0}

    async def test_empty_store_streams_fallback(self, orchestrator, generator):
        sink = RecordingSink()

        result = await orchestrator.answer_streaming("anything", sink)

        assert sink.events == [ChunkEvent(FALLBACK_ANSWER), DoneEvent(FALLBACK_ANSWER, [])]
        assert result.answer == FALLBACK_ANSWER
        assert generator.prompts == []

    async def test_generation_failure_is_terminal_error_event(self, populated_store, orchestrator, generator):
        generator.fragments = ["The", " answer"]
        generator.error = GenerationError("backend exploded")
        sink = RecordingSink()

        with pytest.raises(GenerationError):
            await orchestrator.answer_streaming("What is the answer?", sink)

        assert sink.events[:2] == [ChunkEvent("The"), ChunkEvent(" answer")]
        assert isinstance(sink.events[2], ErrorEvent)
        assert "backend exploded" in sink.events[2].message
        assert sink.events[2].to_payload()["done"] is True

    async def test_unexpected_stream_failure_is_wrapped(self, populated_store, orchestrator, generator):
        generator.error = RuntimeError("socket closed")

        events = [e async for e in orchestrator.stream_answer("What is the answer?")]

        assert isinstance(events[-1], ErrorEvent)
        assert isinstance(events[-1].error, GenerationError)

    async def test_retrieval_failure_is_terminal_error_event(self, populated_store, orchestrator, embedder):
        embedder.error = EmbeddingError("embedding backend down")
        sink = RecordingSink()

        with pytest.raises(RetrievalError):
            await orchestrator.answer_streaming("anything", sink)

        assert len(sink.events) == 1
        assert isinstance(sink.events[0], ErrorEvent)

    async def test_detached_sink_aborts_generation(self, populated_store, orchestrator, generator):
        generator.fragments = ["one", "two", "three", "four"]
        sink = RecordingSink(close_after=1)

        with pytest.raises(SinkClosed):
            await orchestrator.answer_streaming("What is the answer?", sink)

        assert sink.events == [ChunkEvent("one")]
        assert generator.closed
        assert generator.yielded < len(generator.fragments)

    async def test_closing_stream_early_closes_backend(self, populated_store, orchestrator, generator):
        stream = orchestrator.stream_answer("What is the answer?")

        first = await stream.__anext__()
        await stream.aclose()

        assert first == ChunkEvent("The")
        assert generator.closed
        assert generator.yielded == 1

    async def test_invalid_query_raises_before_any_event(self, orchestrator):
        with pytest.raises(ValidationError):
            await orchestrator.answer_streaming("  ", RecordingSink())
