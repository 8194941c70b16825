"""Embedding client backed by the Ollama embeddings API.

The first call loads the embedding model inside Ollama, which is slow, so
initialization happens once per client. Concurrent first callers wait on a
single lock instead of each issuing their own warm-up request.
"""
import asyncio
from typing import List, Optional
import httpx
import structlog

from docqa import config
from docqa.errors import EmbeddingError

logger = structlog.get_logger()

_WARMUP_PROMPT = "warmup"


class EmbeddingClient:
    """Async text → vector client with one-time lazy initialization."""

    def __init__(
        self,
        base_url: str = None,
        model: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the embedding client (no network traffic yet).

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            model: Embedding model name (defaults to config.EMBEDDING_MODEL)
            timeout: Request timeout in seconds (defaults to config.REQUEST_TIMEOUT)
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url or config.OLLAMA_BASE_URL
        self.model = model or config.EMBEDDING_MODEL
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self._transport = transport

        self._client: Optional[httpx.AsyncClient] = None
        self._dimension: Optional[int] = None
        self._init_lock = asyncio.Lock()

    @property
    def dimension(self) -> Optional[int]:
        """Embedding dimension, known once the client is initialized."""
        return self._dimension

    @property
    def initialized(self) -> bool:
        return self._client is not None

    async def _ensure_initialized(self) -> httpx.AsyncClient:
        """Create the HTTP client and warm up the model exactly once."""
        if self._client is not None:
            return self._client

        async with self._init_lock:
            # Another caller may have finished while we waited
            if self._client is not None:
                return self._client

            logger.info("embedding_model_loading", model=self.model)

            client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport,
            )
            try:
                embedding = await self._request_embedding(client, _WARMUP_PROMPT)
            except BaseException:
                await client.aclose()
                raise

            self._dimension = len(embedding)
            self._client = client

            logger.info(
                "embedding_model_loaded",
                model=self.model,
                dimension=self._dimension,
            )

        return self._client

    async def _request_embedding(
        self, client: httpx.AsyncClient, text: str
    ) -> List[float]:
        try:
            response = await client.post(
                "/api/embeddings",
                json={"model": self.model, "prompt": text},
            )
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            logger.error(
                "ollama_embedding_error",
                model=self.model,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise EmbeddingError(f"Failed to generate embedding: {e}") from e
        except ValueError as e:
            raise EmbeddingError(f"Malformed embedding response: {e}") from e

        embedding = data.get("embedding") if isinstance(data, dict) else None
        if not embedding:
            raise EmbeddingError("Empty embedding returned from Ollama")

        try:
            return [float(x) for x in embedding]
        except (TypeError, ValueError) as e:
            raise EmbeddingError(f"Malformed embedding response: {e}") from e

    async def embed(self, text: str) -> List[float]:
        """Embed a text span.

        Args:
            text: Text to embed

        Returns:
            Embedding vector of constant dimension

        Raises:
            EmbeddingError: If the backend fails or the dimension changes
        """
        client = await self._ensure_initialized()
        embedding = await self._request_embedding(client, text)

        if len(embedding) != self._dimension:
            raise EmbeddingError(
                f"Embedding dimension changed: expected {self._dimension}, "
                f"got {len(embedding)}"
            )

        logger.debug(
            "text_embedded",
            model=self.model,
            text_length=len(text),
            dimension=len(embedding),
        )
        return embedding

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
