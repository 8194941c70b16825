"""RAG (Retrieval-Augmented Generation) pipeline components.

This package contains modules for:
- Document type detection and text extraction
- Text chunking with overlap
- Embedding generation
- JSON-backed vector storage with cosine search
- Retrieval and generation orchestration
- Upload and batch ingestion
"""
