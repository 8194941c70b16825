"""Quart application for docqa: document upload and question answering."""
from contextlib import aclosing
from dataclasses import dataclass
import json

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator
from pydantic_core import PydanticCustomError
from quart import Blueprint, Quart, Response, current_app, jsonify, request
import structlog

from docqa import config
from docqa.errors import (
    ExtractionError,
    GenerationError,
    PersistenceError,
    RetrievalError,
    ValidationError,
)
from docqa.llm_client import OllamaClient
from docqa.log import configure_logging
from docqa.rag.embedder import EmbeddingClient
from docqa.rag.ingest import DocumentIngestor
from docqa.rag.orchestrator import RetrievalOrchestrator, validate_query
from docqa.rag.vector_store import VectorStore

logger = structlog.get_logger()

api = Blueprint("api", __name__)


@dataclass
class Services:
    """Process-wide collaborators shared by every request."""

    store: VectorStore
    orchestrator: RetrievalOrchestrator
    ingestor: DocumentIngestor
    llm: OllamaClient
    embedder: EmbeddingClient = None


def build_services() -> Services:
    """Construct the default services from config."""
    embedder = EmbeddingClient()
    store = VectorStore(path=config.VECTOR_STORE_PATH, embedder=embedder)
    llm = OllamaClient()

    return Services(
        store=store,
        orchestrator=RetrievalOrchestrator(store=store, generator=llm),
        ingestor=DocumentIngestor(store=store),
        llm=llm,
        embedder=embedder,
    )


def _services() -> Services:
    return current_app.extensions["docqa"]


def _sse(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


class RagRequest(BaseModel):
    """Body of POST /api/rag."""
    query: str = Field(default=None, max_length=config.MAX_QUERY_LENGTH, validate_default=True)
    stream: bool = False

    @field_validator("query", mode="before")
    @classmethod
    def query_not_blank(cls, value):
        try:
            return validate_query(value)
        except ValidationError as e:
            raise PydanticCustomError("invalid_query", str(e)) from e


@api.route("/api/rag", methods=["POST"])
async def rag():
    """Answer a question from the indexed documents.

    Expects JSON body:
    {
        "query": "question text",
        "stream": false  // optional
    }

    Returns JSON {"answer": ..., "sources": [{"source": ..., "chunk": ...}]},
    or a text/event-stream of {"chunk": ...} events ending with
    {"done": true, "sources": [...]} when stream is true.
    """
    data = await request.get_json(silent=True)
    if not isinstance(data, dict):
        data = {}

    try:
        body = RagRequest.model_validate(data)
    except PydanticValidationError as e:
        error = e.errors()[0]["msg"]
        logger.warning("invalid_rag_request", error=error)
        return jsonify({"error": error}), 400

    query = body.query
    stream = body.stream
    orchestrator = _services().orchestrator

    logger.info("rag_request_received", query_length=len(query), stream=stream)

    if stream:

        async def event_stream():
            async with aclosing(orchestrator.stream_answer(query)) as events:
                async for event in events:
                    yield _sse(event.to_payload())

        response = Response(
            event_stream(),
            mimetype="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
            },
        )
        response.timeout = None
        return response

    try:
        result = await orchestrator.answer(query)
    except (RetrievalError, GenerationError, PersistenceError) as e:
        logger.error("rag_request_failed", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Failed to process query", "details": str(e)}), 500

    logger.info(
        "rag_response_sent",
        answer_length=len(result.answer),
        num_sources=len(result.sources),
    )
    return jsonify(result.to_dict())


@api.route("/api/upload", methods=["POST"])
async def upload():
    """Index an uploaded file (PDF, DOCX, TXT) or a web page URL.

    Expects multipart form data with either a "file" part or a "url" field.

    Returns JSON:
    {
        "success": true,
        "message": "Successfully processed <source>",
        "stats": {"source", "type", "textLength", "chunksCreated", "chunksAdded"}
    }
    """
    files = await request.files
    form = await request.form

    upload_file = files.get("file")
    url = (form.get("url") or "").strip()
    ingestor = _services().ingestor

    try:
        if url:
            stats = await ingestor.ingest_url(url)
        elif upload_file is not None:
            stats = await ingestor.ingest_file(
                filename=upload_file.filename,
                data=upload_file.read(),
                mime_type=upload_file.mimetype,
            )
        else:
            return jsonify({"error": "Please provide either a file or URL"}), 400

    except ExtractionError as e:
        logger.warning("document_extraction_failed", error=str(e), cause=e.cause)
        return jsonify({"error": str(e), "details": e.cause}), 400
    except ValidationError as e:
        logger.warning("invalid_upload", error=str(e))
        return jsonify({"error": str(e)}), 400
    except (PersistenceError, RetrievalError) as e:
        logger.error("upload_failed", error=str(e), error_type=type(e).__name__)
        return jsonify({"error": "Failed to process document", "details": str(e)}), 500

    return jsonify(
        {
            "success": True,
            "message": f"Successfully processed {stats.source}",
            "stats": stats.to_dict(),
        }
    )


@api.route("/api/stats")
async def stats():
    """Vector store statistics."""
    store = _services().store
    return jsonify({"count": store.count(), "dimension": store.dimension})


@api.route("/health/ready")
async def health_ready():
    """Readiness probe - check if app can serve requests.

    Checks:
    - Ollama service is reachable
    - Chat model is available
    """
    checks = {
        "status": "healthy",
        "ollama": False,
        "models": False,
        "documents": _services().store.count(),
    }

    try:
        models = await _services().llm.list_models()
        checks["ollama"] = True

        chat_model = config.CHAT_MODEL
        if any(m == chat_model or m.split(":")[0] == chat_model for m in models):
            checks["models"] = True
        else:
            checks["status"] = "unhealthy"
            checks["error"] = f"Missing chat model: {chat_model}"

        status_code = 200 if checks["status"] == "healthy" else 503
        return jsonify(checks), status_code

    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        checks["status"] = "unhealthy"
        checks["error"] = str(e)
        return jsonify(checks), 503


@api.route("/health/live")
async def health_live():
    """Liveness probe - check if app is running."""
    return jsonify({"status": "alive"}), 200


def create_app(services: Services = None) -> Quart:
    """Create the Quart app.

    Args:
        services: Pre-built collaborators; defaults are built from config

    Returns:
        Configured Quart application
    """
    configure_logging()

    app = Quart(__name__)
    app.config["MAX_CONTENT_LENGTH"] = config.MAX_UPLOAD_BYTES
    app.extensions["docqa"] = services or build_services()
    app.register_blueprint(api)

    @app.after_serving
    async def close_clients():
        embedder = app.extensions["docqa"].embedder
        if embedder is not None:
            await embedder.aclose()

    @app.errorhandler(404)
    async def not_found(error):
        """Handle 404 errors."""
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(413)
    async def too_large(error):
        return jsonify({"error": "Upload too large"}), 413

    @app.errorhandler(500)
    async def internal_error(error):
        """Handle 500 errors."""
        logger.error("internal_server_error", error=str(error))
        return jsonify({"error": "Internal server error"}), 500

    logger.info(
        "app_created",
        chat_model=config.CHAT_MODEL,
        embedding_model=config.EMBEDDING_MODEL,
        documents=app.extensions["docqa"].store.count(),
    )

    return app


if __name__ == "__main__":
    # For development - run with hypercorn "docqa.main:create_app()" in production
    create_app().run(host="0.0.0.0", port=5000, debug=True)
