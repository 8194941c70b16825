"""Retrieval orchestrator: one retrieval, then blocking or streamed generation.

Handles:
- Query validation
- Top-k retrieval from the vector store (exactly once per request)
- Prompt construction from the retrieved chunks
- Generation in blocking mode, or as an ordered stream of events ending
  in a single terminal event
"""
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Protocol, Union
import structlog

from docqa import config
from docqa.errors import GenerationError, RetrievalError, ValidationError
from docqa.rag.vector_store import QueryResult, VectorStore

logger = structlog.get_logger()

FALLBACK_ANSWER = "I couldn't find any relevant information in the knowledge base."

CONTEXT_SEPARATOR = "\n\n---\n\n"

PROMPT_TEMPLATE = """You are a helpful AI assistant. Answer questions using ONLY the information in the context below.

IMPORTANT INSTRUCTIONS:
- Read the entire context carefully
- If the answer exists in the context, provide it clearly
- If you're not sure or the context doesn't contain the answer, say "I don't have that information"
- Be concise and direct

CONTEXT:
{context}

QUESTION: {question}

ANSWER:"""


class GenerationBackend(Protocol):
    async def generate(self, prompt: str) -> str:
        ...

    def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        ...


@dataclass(frozen=True)
class Source:
    """Citation for a retrieved chunk."""

    source: str
    chunk: int

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "chunk": self.chunk}


@dataclass
class RagAnswer:
    answer: str
    sources: List[Source] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "sources": [s.to_dict() for s in self.sources],
        }


@dataclass(frozen=True)
class ChunkEvent:
    """One generated fragment."""

    text: str

    def to_payload(self) -> Dict[str, Any]:
        return {"chunk": self.text}


@dataclass(frozen=True)
class DoneEvent:
    """Terminal event for a successful stream."""

    answer: str
    sources: List[Source]

    def to_payload(self) -> Dict[str, Any]:
        return {"done": True, "sources": [s.to_dict() for s in self.sources]}


@dataclass(frozen=True)
class ErrorEvent:
    """Terminal event for a failed stream."""

    message: str
    error: Exception = field(compare=False, repr=False, default=None)

    def to_payload(self) -> Dict[str, Any]:
        return {"done": True, "error": self.message}


StreamEvent = Union[ChunkEvent, DoneEvent, ErrorEvent]
EventSink = Callable[[StreamEvent], Awaitable[None]]


def validate_query(query: Any) -> str:
    """Return the stripped query or raise ValidationError."""
    if not isinstance(query, str) or not query.strip():
        raise ValidationError("Query is required and must be a non-empty string")
    return query.strip()


class RetrievalOrchestrator:
    """Answers questions from the vector store via a generation backend."""

    def __init__(
        self,
        store: VectorStore,
        generator: GenerationBackend,
        top_k: int = None,
    ):
        """Initialize the orchestrator.

        Args:
            store: Vector store used read-only for retrieval
            generator: Backend with ``generate`` and ``generate_stream``
            top_k: Number of chunks to retrieve (default from config)
        """
        self.store = store
        self.generator = generator
        self.top_k = top_k or config.RETRIEVAL_TOP_K

    async def retrieve(self, query: str) -> List[QueryResult]:
        """Run the single retrieval pass for a request.

        Raises:
            RetrievalError: If embedding or search fails
        """
        try:
            results = await self.store.query(query, self.top_k)
        except RetrievalError:
            raise
        except Exception as e:
            logger.error(
                "retrieval_failed",
                error=str(e),
                error_type=type(e).__name__,
                query_preview=query[:100],
            )
            raise RetrievalError(f"Retrieval failed: {e}") from e

        logger.info(
            "retrieval_completed",
            query_length=len(query),
            results_returned=len(results),
        )
        return results

    @staticmethod
    def build_prompt(query: str, results: List[QueryResult]) -> str:
        context = CONTEXT_SEPARATOR.join(r.document for r in results)
        return PROMPT_TEMPLATE.format(context=context, question=query)

    @staticmethod
    def sources_for(results: List[QueryResult]) -> List[Source]:
        return [Source(source=r.metadata.source, chunk=r.metadata.chunk) for r in results]

    async def answer(self, query: str) -> RagAnswer:
        """Answer a question in blocking mode.

        Args:
            query: User question

        Returns:
            RagAnswer with generated text and the retrieved sources

        Raises:
            ValidationError: If the query is empty
            RetrievalError: If retrieval fails
            GenerationError: If the backend fails
        """
        query = validate_query(query)
        results = await self.retrieve(query)

        if not results:
            logger.info("no_relevant_context_found")
            return RagAnswer(answer=FALLBACK_ANSWER, sources=[])

        prompt = self.build_prompt(query, results)

        try:
            text = await self.generator.generate(prompt)
        except GenerationError:
            raise
        except Exception as e:
            logger.error("generation_failed", error=str(e), error_type=type(e).__name__)
            raise GenerationError(f"Generation failed: {e}") from e

        return RagAnswer(answer=text, sources=self.sources_for(results))

    async def stream_answer(self, query: str) -> AsyncIterator[StreamEvent]:
        """Answer a question as an ordered stream of events.

        Yields ChunkEvent for every generated fragment as soon as the backend
        produces it, then exactly one terminal DoneEvent or ErrorEvent.
        Closing the iterator early closes the backend stream.

        Raises:
            ValidationError: If the query is empty (before any event)
        """
        query = validate_query(query)

        try:
            results = await self.retrieve(query)
        except RetrievalError as e:
            yield ErrorEvent(message=str(e), error=e)
            return

        if not results:
            logger.info("no_relevant_context_found")
            yield ChunkEvent(text=FALLBACK_ANSWER)
            yield DoneEvent(answer=FALLBACK_ANSWER, sources=[])
            return

        sources = self.sources_for(results)
        prompt = self.build_prompt(query, results)
        accumulated = []

        try:
            async with aclosing(self.generator.generate_stream(prompt)) as fragments:
                async for fragment in fragments:
                    accumulated.append(fragment)
                    yield ChunkEvent(text=fragment)
        except GenerationError as e:
            logger.error(
                "generation_stream_failed",
                error=str(e),
                fragments_sent=len(accumulated),
            )
            yield ErrorEvent(message=str(e), error=e)
            return
        except Exception as e:
            logger.error(
                "generation_stream_failed",
                error=str(e),
                error_type=type(e).__name__,
                fragments_sent=len(accumulated),
            )
            wrapped = GenerationError(f"Generation failed: {e}")
            wrapped.__cause__ = e
            yield ErrorEvent(message=str(wrapped), error=wrapped)
            return

        answer = "".join(accumulated)

        logger.info(
            "generation_stream_completed",
            fragments=len(accumulated),
            answer_length=len(answer),
            num_sources=len(sources),
        )

        yield DoneEvent(answer=answer, sources=sources)

    async def answer_streaming(self, query: str, sink: EventSink) -> RagAnswer:
        """Stream an answer into a sink and return the accumulated result.

        Every event, including the terminal one, is awaited on ``sink`` in
        order. If the sink raises (e.g. the consumer went away), the backend
        stream is closed and the exception propagates.

        Args:
            query: User question
            sink: Async callable receiving each StreamEvent

        Returns:
            RagAnswer with the full text and the sources of the single
            retrieval pass

        Raises:
            ValidationError: If the query is empty
            RetrievalError: If retrieval failed (after the error event)
            GenerationError: If generation failed (after the error event)
        """
        result: Optional[RagAnswer] = None

        async with aclosing(self.stream_answer(query)) as events:
            async for event in events:
                await sink(event)

                if isinstance(event, DoneEvent):
                    result = RagAnswer(answer=event.answer, sources=event.sources)
                elif isinstance(event, ErrorEvent):
                    raise event.error

        return result
