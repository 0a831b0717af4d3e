"""Bulk-ingest tour documents from the command line.

Runs the same pipeline as POST /v1/ingest against the configured backend
(Supabase when configured, otherwise the local index).

Usage:
    python scripts/ingest_documents.py <file.zip|file.docx|folder> [--overwrite|--skip-duplicates]

Examples:
    # Append every document in an archive
    python scripts/ingest_documents.py tours.zip

    # Replace previously ingested versions of the same files
    python scripts/ingest_documents.py tours/ --overwrite
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Ensure tourpro is importable
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def collect_documents(input_path: Path):
    from tourpro.core.file_text import ARCHIVE_MEMBER_EXTENSIONS, expand_upload, get_extension
    from tourpro.core.schemas import NamedDocument

    if input_path.is_dir():
        documents = []
        for path in sorted(input_path.iterdir()):
            if path.is_file() and get_extension(path.name) in ARCHIVE_MEMBER_EXTENSIONS:
                documents.append(NamedDocument(name=path.name, content=path.read_bytes()))
        print(f"Found {len(documents)} file(s) in folder")
        return documents

    documents = expand_upload(input_path.name, input_path.read_bytes())
    print(f"Found {len(documents)} file(s) in {input_path.name}")
    return documents


def print_progress(progress) -> None:
    print(
        f"  [{progress.processed_files}/{progress.total_files}] {progress.current_file} "
        f"({progress.vectors_created} vectors so far)"
    )


async def run_ingest(input_path: Path, mode_name: str) -> int:
    from tourpro.core.ingestion import IngestionError, IngestionPipeline, ingest_upload
    from tourpro.core.knowledge_hub import get_knowledge_hub
    from tourpro.core.schemas import IngestMode
    from tourpro.db.vector_store import get_vector_store

    mode = IngestMode(mode_name)
    store = get_vector_store()

    print(f"\n{'='*60}")
    print(f"Index currently holds {await store.count()} vectors")

    documents = collect_documents(input_path)
    if not documents:
        print("No documents to ingest.")
        return 0

    print(f"\nIngesting ({mode.value})...")
    try:
        result = await ingest_upload(
            documents,
            mode,
            IngestionPipeline(store),
            get_knowledge_hub(),
            on_progress=print_progress,
        )
    except IngestionError as e:
        print(f"ERROR: {e}")
        return 1

    print(f"\n{'='*60}")
    print("INGESTION SUMMARY")
    print(f"{'='*60}")
    print(f"  Vectors created: {result.vectors_created}")
    print(f"  Files processed: {result.files_processed}")
    print(f"  Failed chunks: {result.errors}")
    print(f"  Extraction errors: {result.extraction_errors}")
    if result.duplicate_files:
        print(f"  Duplicates ({mode.value}): {', '.join(result.duplicate_files)}")
    if result.skipped_files:
        print(f"  Skipped (too short): {', '.join(result.skipped_files)}")
    if result.failed_files:
        print(f"  Failed: {', '.join(result.failed_files)}")
    if result.structured_files:
        print(f"  Structured knowledge saved: {', '.join(result.structured_files)}")
    print(f"  Index now holds {await store.count()} vectors")
    return 1 if result.errors else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Ingest tour documents into the knowledge base.")
    parser.add_argument("path", help="A .zip archive, a single document, or a folder of documents")
    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--overwrite",
        dest="mode",
        action="store_const",
        const="overwrite",
        help="Replace vectors of files already in the index",
    )
    group.add_argument(
        "--skip-duplicates",
        dest="mode",
        action="store_const",
        const="skip_duplicates",
        help="Skip files already in the index",
    )
    parser.set_defaults(mode="append")

    args = parser.parse_args()
    input_path = Path(args.path)
    if not input_path.exists():
        print(f"ERROR: {input_path} does not exist")
        sys.exit(1)

    sys.exit(asyncio.run(run_ingest(input_path, args.mode)))


if __name__ == "__main__":
    main()
