"""Exceptions raised across the docqa pipeline.

HTTP handlers map these onto status codes: validation-class errors become
400 responses, everything else a 500 (or a terminal error event when the
response is streamed).
"""


class DocQAError(Exception):
    """Base exception for all docqa errors."""
    pass


class ValidationError(DocQAError):
    """Bad caller input: empty query, unsupported type, empty document."""
    pass


class ExtractionError(ValidationError):
    """A parser could not extract text (malformed file, unreachable URL)."""

    def __init__(self, message: str, cause: str = None):
        super().__init__(message)
        self.cause = cause


class PersistenceError(DocQAError):
    """The vector store snapshot could not be read or written."""
    pass


class RetrievalError(DocQAError):
    """Query embedding or vector search failed."""
    pass


class EmbeddingError(RetrievalError):
    """The embedding backend failed or returned an unusable vector."""
    pass


class GenerationError(DocQAError):
    """The text-generation backend failed."""
    pass
