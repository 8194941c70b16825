#!/usr/bin/env python
"""Clear the vector store and re-index every file under a directory.

Usage:
    python scripts/ingest.py                      # Index DOCUMENTS_DIR
    python scripts/ingest.py --docs-dir ./data    # Index another directory
    python scripts/ingest.py --yes                # Skip the confirmation delay
"""
import argparse
import asyncio
import sys
from pathlib import Path
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from docqa import config
from docqa.errors import DocQAError
from docqa.log import configure_logging
from docqa.rag.embedder import EmbeddingClient
from docqa.rag.ingest import BatchIngestor
from docqa.rag.vector_store import VectorStore
import structlog

logger = structlog.get_logger()


class ProgressReporter:
    """Per-file progress output for the CLI."""

    def __init__(self):
        self.start_time = None

    def start(self, root: Path):
        self.start_time = datetime.now()
        print(f"\n{'=' * 60}")
        print(f"  Indexing {root}")
        print(f"{'=' * 60}\n")

    def update(self, current: int, total: int, file_path: Path, chunk_count: int):
        print(f"  [{current}/{total}] {file_path} ({chunk_count} chunks)")

    def finish(self, stats: dict, store_path: Path):
        elapsed_seconds = (datetime.now() - self.start_time).total_seconds()

        print(f"\n{'=' * 60}")
        print(f"  Indexing Complete!")
        print(f"{'=' * 60}\n")
        print(f"  Files processed:  {stats['files_processed']}")
        print(f"  Chunks indexed:   {stats['chunks_indexed']}")
        print(f"  Time elapsed:     {elapsed_seconds:.1f}s")

        if stats["chunks_indexed"] > 0 and elapsed_seconds > 0:
            rate = stats["chunks_indexed"] / elapsed_seconds
            print(f"  Indexing rate:    {rate:.1f} chunks/sec")

        print(f"\nSuccessfully indexed {stats['total_entries']} chunks into {store_path}\n")


async def run(docs_dir: Path, store_path: Path, skip_confirm: bool) -> dict:
    embedder = EmbeddingClient()
    store = VectorStore(path=store_path, embedder=embedder)
    ingestor = BatchIngestor(store)
    progress = ProgressReporter()

    try:
        files = ingestor.discover_files(docs_dir)
        print(f"\nFound {len(files)} files to process")

        if not skip_confirm and store.count() > 0:
            print(f"\nThis will clear {store.count()} existing chunks!")
            print("   Press Ctrl+C within 3 seconds to cancel...")
            await asyncio.sleep(3)

        progress.start(docs_dir)
        stats = await ingestor.ingest(docs_dir, progress_callback=progress.update)
        progress.finish(stats, store_path)
        return stats
    finally:
        await embedder.aclose()


def main():
    """Main entry point for the ingest script."""
    parser = argparse.ArgumentParser(
        description="Clear the vector store and re-index a directory of documents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/ingest.py                      # Index DOCUMENTS_DIR
  python scripts/ingest.py --docs-dir ./data    # Index another directory
        """,
    )

    parser.add_argument(
        "--docs-dir",
        type=Path,
        default=config.DOCUMENTS_DIR,
        help=f"Documents directory (default: {config.DOCUMENTS_DIR})",
    )

    parser.add_argument(
        "--store",
        type=Path,
        default=config.VECTOR_STORE_PATH,
        help=f"Vector store snapshot file (default: {config.VECTOR_STORE_PATH})",
    )

    parser.add_argument(
        "--yes",
        "-y",
        action="store_true",
        help="Do not pause before clearing an existing store",
    )

    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show debug logs",
    )

    args = parser.parse_args()

    configure_logging(level="DEBUG" if args.verbose else "WARNING", json_output=False)

    print("\nConfiguration:")
    print(f"   Documents directory: {args.docs_dir}")
    print(f"   Vector store:        {args.store}")
    print(f"   Embedding model:     {config.EMBEDDING_MODEL}")
    print(f"   Chunk size:          {config.CHUNK_SIZE} chars")
    print(f"   Chunk overlap:       {config.CHUNK_OVERLAP} chars")

    try:
        asyncio.run(run(args.docs_dir, args.store, args.yes))

    except KeyboardInterrupt:
        print("\n\nIndexing cancelled by user.\n")
        sys.exit(1)

    except FileNotFoundError as e:
        print(f"\nError: {e}\n")
        sys.exit(1)

    except (DocQAError, ValueError) as e:
        print(f"\nError: {e}\n")
        logger.error("ingest_script_failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)


if __name__ == "__main__":
    main()
