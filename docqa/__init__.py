"""docqa: document question answering over a local vector store."""

__version__ = "0.1.0"
