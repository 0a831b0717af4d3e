"""Ingestion pipeline: extract, chunk, embed and index tour documents.

Sources are identified by base filename (compared case-insensitively).
Priority sources are written completely before any other source starts, so a
run cut short keeps the priority content. A batch that keeps failing after
its retries is counted in `errors` and the run moves on.
"""

import asyncio
import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

from tourpro.core.chunking import chunk_text
from tourpro.core.config import Settings, get_settings
from tourpro.core.embeddings import embed_texts_async
from tourpro.core.file_text import extract_text
from tourpro.core.knowledge_hub import KnowledgeHub, classify_structured_file
from tourpro.core.logging import get_logger, log_with_context
from tourpro.core.schemas import (
    IndexedVector,
    IngestMetadata,
    IngestMode,
    IngestProgress,
    IngestResult,
    NamedDocument,
)
from tourpro.db.structured_store import StructuredStoreError
from tourpro.db.vector_store import VectorStore, VectorStoreError

logger = get_logger(__name__)

Embedder = Callable[[list[str]], Awaitable[list[list[float]]]]
ProgressCallback = Callable[[IngestProgress], Awaitable[None] | None]


class IngestionError(Exception):
    """The run could not start (duplicate lookup failed, embedding model mismatch)."""


def is_priority(name: str, prefix: str = "PRIORITY_") -> bool:
    """Whether a source name carries the priority marker."""
    return name.upper().startswith(prefix.upper())


def order_by_priority(documents: list[NamedDocument], prefix: str = "PRIORITY_") -> list[NamedDocument]:
    """Priority documents first; relative order otherwise preserved."""
    return sorted(documents, key=lambda doc: 0 if is_priority(doc.name, prefix) else 1)


class IngestionPipeline:
    """Writes documents into a VectorStore according to an IngestMode."""

    # Advisory per-source locks shared by every pipeline in the process;
    # an entry lives only while some task holds or awaits it
    _source_locks: dict[str, asyncio.Lock] = {}
    _source_lock_users: dict[str, int] = {}

    def __init__(
        self,
        store: VectorStore,
        embed: Embedder = embed_texts_async,
        settings: Settings | None = None,
        extract: Callable[[str, bytes | str], str] = extract_text,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.store = store
        self.embed = embed
        self.settings = settings or get_settings()
        self.extract = extract
        self.sleep = sleep

    @asynccontextmanager
    async def _hold_source(self, key: str) -> AsyncIterator[None]:
        locks = IngestionPipeline._source_locks
        users = IngestionPipeline._source_lock_users
        lock = locks.setdefault(key, asyncio.Lock())
        users[key] = users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            users[key] -= 1
            if users[key] == 0:
                del users[key]
                del locks[key]

    async def ingest(
        self,
        documents: list[NamedDocument],
        mode: IngestMode = IngestMode.APPEND,
        on_progress: ProgressCallback | None = None,
    ) -> IngestResult:
        """
        Ingest documents into the vector index.

        Args:
            documents: Named documents (raw bytes or extracted text)
            mode: Duplicate policy (append, skip_duplicates, overwrite)
            on_progress: Optional callback receiving IngestProgress snapshots

        Returns:
            IngestResult with counts of vectors, processed files and failures

        Raises:
            IngestionError: If the existing sources cannot be listed for a
                deduplicating mode, or the index uses another embedding model
        """
        settings = self.settings
        result = IngestResult()
        await self._check_embedding_model()

        ordered = order_by_priority(documents, settings.PRIORITY_PREFIX)
        existing: dict[str, set[str]] = {}

        if mode != IngestMode.APPEND:
            existing = await self._existing_sources()
            if mode == IngestMode.SKIP_DUPLICATES:
                kept = []
                for doc in ordered:
                    if doc.name.casefold() in existing:
                        result.duplicate_files.append(doc.name)
                    else:
                        kept.append(doc)
                ordered = kept
            else:
                result.duplicate_files = [d.name for d in ordered if d.name.casefold() in existing]

        log_with_context(
            logger,
            logging.INFO,
            "Starting ingestion",
            mode=mode.value,
            documents=len(ordered),
            duplicates=len(result.duplicate_files),
        )

        buffer: list[dict[str, Any]] = []
        previous_priority: bool | None = None

        for index, doc in enumerate(ordered):
            key = doc.name.casefold()
            if mode == IngestMode.SKIP_DUPLICATES and key in existing:
                # Same name repeated within this run
                result.duplicate_files.append(doc.name)
                continue

            priority = is_priority(doc.name, settings.PRIORITY_PREFIX)
            if previous_priority and not priority:
                # Priority sources are fully written before others begin
                await self._flush(buffer, result, force=True)
            previous_priority = priority

            await self._notify(
                on_progress,
                IngestProgress(
                    processed_files=index + 1,
                    total_files=len(ordered),
                    current_file=doc.name,
                    vectors_created=result.vectors_created,
                ),
            )
            result.files_processed += 1

            chunks = self._chunk_document(doc, priority, result)

            if mode == IngestMode.OVERWRITE and key in existing:
                async with self._hold_source(key):
                    if not await self._delete_source(existing[key], doc.name, result):
                        continue
                    buffer.extend(chunks)
                    await self._flush(buffer, result, force=True)
            else:
                buffer.extend(chunks)
                await self._flush(buffer, result, force=False)

            if chunks:
                existing.setdefault(key, set()).add(doc.name)

        await self._flush(buffer, result, force=True)
        await self._write_metadata(result)

        log_with_context(
            logger,
            logging.INFO,
            "Ingestion finished",
            vectors_created=result.vectors_created,
            files_processed=result.files_processed,
            errors=result.errors,
            extraction_errors=result.extraction_errors,
            skipped=len(result.skipped_files),
        )
        return result

    async def _check_embedding_model(self) -> None:
        try:
            metadata = await self.store.read_metadata()
        except VectorStoreError as e:
            logger.warning(f"Could not read index metadata: {e}")
            return
        model = self.settings.EMBEDDING_MODEL
        if metadata and metadata.embedding_model and metadata.embedding_model != model:
            raise IngestionError(
                f"Index was built with {metadata.embedding_model}; refusing to add {model} vectors"
            )

    async def _existing_sources(self) -> dict[str, set[str]]:
        try:
            names = await self.store.all_sources(self.settings.SOURCE_PAGE_SIZE)
        except VectorStoreError as e:
            raise IngestionError(f"Failed to list indexed sources: {e}") from e

        grouped: dict[str, set[str]] = {}
        for name in names:
            grouped.setdefault(name.casefold(), set()).add(name)
        logger.info(f"Index already holds {len(grouped)} sources")
        return grouped

    async def _delete_source(self, stored_names: set[str], name: str, result: IngestResult) -> bool:
        try:
            removed = 0
            for stored in sorted(stored_names):
                removed += await self.store.delete_by_source(stored)
        except VectorStoreError as e:
            logger.error(f"Failed to delete previous vectors of {name}, skipping: {e}")
            result.failed_files.append(name)
            return False
        logger.info(f"Removed {removed} previous vectors of {name}")
        stored_names.clear()
        return True

    def _chunk_document(self, doc: NamedDocument, priority: bool, result: IngestResult) -> list[dict[str, Any]]:
        settings = self.settings
        try:
            text = self.extract(doc.name, doc.content)
        except Exception as e:
            logger.warning(f"Extraction failed for {doc.name}: {e}")
            result.extraction_errors += 1
            result.failed_files.append(doc.name)
            return []

        text = (text or "").strip()
        if len(text) < settings.MIN_DOCUMENT_CHARS:
            logger.debug(f"Skipping {doc.name}: {len(text)} chars below minimum")
            result.skipped_files.append(doc.name)
            return []

        return chunk_text(
            text,
            max_chars=settings.CHUNK_SIZE,
            stride=settings.CHUNK_STRIDE,
            metadata={"source": doc.name, "isPriority": priority},
        )

    async def _flush(self, buffer: list[dict[str, Any]], result: IngestResult, force: bool) -> None:
        """Write full batches from the buffer; with force, write the remainder too."""
        batch_size = self.settings.INGEST_BATCH_SIZE
        while len(buffer) >= batch_size or (force and buffer):
            batch = buffer[:batch_size]
            del buffer[:batch_size]
            await self._write_batch(batch, result)

    async def _write_batch(self, batch: list[dict[str, Any]], result: IngestResult) -> None:
        max_attempts = self.settings.INGEST_MAX_ATTEMPTS
        for attempt in range(1, max_attempts + 1):
            try:
                embeddings = await self.embed([chunk["content"] for chunk in batch])
                if len(embeddings) != len(batch):
                    raise ValueError(f"Expected {len(batch)} embeddings, got {len(embeddings)}")
                vectors = [
                    IndexedVector(content=chunk["content"], metadata=chunk["metadata"], embedding=emb)
                    for chunk, emb in zip(batch, embeddings, strict=True)
                ]
                await self.store.upsert(vectors)
                result.vectors_created += len(vectors)
                return
            except Exception as e:
                if attempt >= max_attempts:
                    result.errors += len(batch)
                    logger.error(
                        f"Batch of {len(batch)} chunks failed after {attempt} attempts: {e}"
                    )
                    return
                delay = self.settings.INGEST_BACKOFF_SECONDS * attempt
                logger.warning(f"Batch attempt {attempt} failed, retrying in {delay:.1f}s: {e}")
                await self.sleep(delay)

    async def _write_metadata(self, result: IngestResult) -> None:
        try:
            metadata = IngestMetadata(
                document_count=await self.store.count(),
                file_count=len(await self.store.all_sources(self.settings.SOURCE_PAGE_SIZE)),
                last_ingested_at=datetime.now(timezone.utc),
                embedding_model=self.settings.EMBEDDING_MODEL,
            )
            await self.store.write_metadata(metadata)
        except VectorStoreError as e:
            logger.warning(f"Failed to persist ingestion metadata: {e}")

    @staticmethod
    async def _notify(callback: ProgressCallback | None, progress: IngestProgress) -> None:
        if callback is None:
            return
        outcome = callback(progress)
        if inspect.isawaitable(outcome):
            await outcome


async def ingest_upload(
    documents: list[NamedDocument],
    mode: IngestMode,
    pipeline: IngestionPipeline,
    hub: KnowledgeHub,
    on_progress: ProgressCallback | None = None,
) -> IngestResult:
    """
    Route structured-authority files to the knowledge hub and index the rest.

    A structured file that cannot be saved is reported in failed_files; the
    remaining documents are still ingested.
    """
    vector_documents = []
    saved: list[str] = []
    failed: list[str] = []

    for doc in documents:
        if classify_structured_file(doc.name) is None:
            vector_documents.append(doc)
            continue
        try:
            saved.append(await hub.save(doc.name, doc.content))
        except (StructuredStoreError, ValueError, UnicodeDecodeError) as e:
            logger.error(f"Failed to save structured file {doc.name}: {e}")
            failed.append(doc.name)

    result = await pipeline.ingest(vector_documents, mode=mode, on_progress=on_progress)
    result.structured_files = saved
    result.failed_files.extend(failed)
    return result
