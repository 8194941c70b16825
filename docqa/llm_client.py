"""Ollama generation client wrapper with error handling."""
import json
from typing import AsyncIterator, Dict, List, Optional
import httpx
import structlog

from docqa import config
from docqa.errors import GenerationError

logger = structlog.get_logger()


class OllamaClient:
    """Async client for the Ollama generate API."""

    def __init__(
        self,
        base_url: str = None,
        model: str = None,
        timeout: float = None,
        temperature: float = None,
        max_tokens: int = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize Ollama client.

        Args:
            base_url: Ollama API base URL (defaults to config.OLLAMA_BASE_URL)
            model: Model to use (defaults to config.CHAT_MODEL)
            timeout: Request timeout in seconds
            temperature: Sampling temperature (defaults to config.GENERATION_TEMPERATURE)
            max_tokens: Maximum tokens to generate (defaults to config.GENERATION_MAX_TOKENS)
            transport: Optional httpx transport, used by tests
        """
        self.base_url = base_url or config.OLLAMA_BASE_URL
        self.model = model or config.CHAT_MODEL
        self.timeout = timeout or config.REQUEST_TIMEOUT
        self.temperature = (
            config.GENERATION_TEMPERATURE if temperature is None else temperature
        )
        self.max_tokens = config.GENERATION_MAX_TOKENS if max_tokens is None else max_tokens
        self._transport = transport

    def _client(self, timeout: float = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or self.timeout,
            transport=self._transport,
        )

    def _payload(self, prompt: str, stream: bool) -> Dict:
        return {
            "model": self.model,
            "prompt": prompt,
            "stream": stream,
            "options": {
                "temperature": self.temperature,
                "num_predict": self.max_tokens,
            },
        }

    async def generate(self, prompt: str) -> str:
        """Generate a complete response for a prompt.

        Args:
            prompt: Full prompt text

        Returns:
            Generated text

        Raises:
            GenerationError: On connection, HTTP or backend errors
        """
        try:
            async with self._client() as client:
                logger.info(
                    "ollama_generate_request",
                    model=self.model,
                    prompt_length=len(prompt),
                    stream=False,
                )

                response = await client.post(
                    "/api/generate", json=self._payload(prompt, stream=False)
                )
                response.raise_for_status()
                data = response.json()

        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise GenerationError(f"Generation backend unavailable: {e}") from e
        except httpx.HTTPError as e:
            logger.error(
                "ollama_http_error",
                error=str(e),
                status_code=getattr(getattr(e, "response", None), "status_code", None),
            )
            raise GenerationError(f"Generation request failed: {e}") from e
        except ValueError as e:
            raise GenerationError(f"Malformed generation response: {e}") from e

        if "error" in data:
            raise GenerationError(f"Generation backend error: {data['error']}")

        text = data.get("response", "")

        logger.info(
            "ollama_generate_response",
            model=self.model,
            response_length=len(text),
        )

        return text

    async def generate_stream(self, prompt: str) -> AsyncIterator[str]:
        """Stream response fragments for a prompt as they are produced.

        Closing the returned iterator early closes the HTTP response, which
        aborts generation on the Ollama side.

        Args:
            prompt: Full prompt text

        Yields:
            Non-empty text fragments in order

        Raises:
            GenerationError: On connection, HTTP or backend errors
        """
        fragments = 0

        try:
            async with self._client() as client:
                logger.info(
                    "ollama_generate_request",
                    model=self.model,
                    prompt_length=len(prompt),
                    stream=True,
                )

                async with client.stream(
                    "POST", "/api/generate", json=self._payload(prompt, stream=True)
                ) as response:
                    response.raise_for_status()

                    async for line in response.aiter_lines():
                        if not line.strip():
                            continue

                        try:
                            data = json.loads(line)
                        except json.JSONDecodeError as e:
                            raise GenerationError(
                                f"Malformed stream line from generation backend: {e}"
                            ) from e

                        if "error" in data:
                            raise GenerationError(
                                f"Generation backend error: {data['error']}"
                            )

                        fragment = data.get("response")
                        if fragment:
                            fragments += 1
                            yield fragment

                        if data.get("done"):
                            break

        except httpx.ConnectError as e:
            logger.error("ollama_connection_error", error=str(e), base_url=self.base_url)
            raise GenerationError(f"Generation backend unavailable: {e}") from e
        except httpx.HTTPError as e:
            logger.error("ollama_stream_error", error=str(e), fragments=fragments)
            raise GenerationError(f"Generation stream failed: {e}") from e

        logger.info("ollama_stream_completed", model=self.model, fragments=fragments)

    async def list_models(self) -> List[str]:
        """List all available Ollama models.

        Returns:
            List of model names

        Raises:
            httpx.HTTPError: On API errors
        """
        try:
            async with self._client(timeout=5.0) as client:
                response = await client.get("/api/tags")
                response.raise_for_status()
                data = response.json()
                return [m["name"] for m in data.get("models", [])]
        except httpx.HTTPError as e:
            logger.error("ollama_list_models_error", error=str(e))
            raise
