"""Vector index backends: Supabase pgvector table + RPC, or a local on-disk index.

Both backends store one row per chunk: content, metadata ({source, isPriority})
and the embedding. Overwrite-mode re-ingestion deletes a source's rows before
the new rows are written, so a concurrent reader may briefly see that source
missing or partially written. Callers accept that window.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from functools import lru_cache
from pathlib import Path
from typing import Any

import numpy as np
from pydantic import ValidationError

from tourpro.core.config import get_settings
from tourpro.core.logging import get_logger
from tourpro.core.schemas import IndexedVector, IngestMetadata, VectorMatch

logger = get_logger(__name__)


class VectorStoreError(Exception):
    """Raised when the vector backend fails."""


class VectorStore(ABC):
    """Capability interface shared by every vector backend."""

    @abstractmethod
    async def upsert(self, vectors: list[IndexedVector]) -> int:
        """Write vectors; returns the number written."""

    @abstractmethod
    async def similarity_search(self, query_embedding: list[float], k: int) -> list[VectorMatch]:
        """Return up to k rows ordered most-similar first."""

    @abstractmethod
    async def count(self) -> int:
        """Total number of stored vectors."""

    @abstractmethod
    async def delete_by_source(self, source: str) -> int:
        """Delete every vector whose metadata source equals `source`."""

    @abstractmethod
    async def list_sources(self, page: int, page_size: int) -> list[str]:
        """Source names of the rows on one page (one entry per row, may repeat)."""

    @abstractmethod
    async def read_metadata(self) -> IngestMetadata | None:
        """Load the persisted ingestion status record."""

    @abstractmethod
    async def write_metadata(self, metadata: IngestMetadata) -> None:
        """Persist the ingestion status record."""

    async def all_sources(self, page_size: int = 1000) -> set[str]:
        """Fetch the distinct indexed source names, page by page."""
        sources: set[str] = set()
        page = 0
        while True:
            rows = await self.list_sources(page, page_size)
            sources.update(name for name in rows if name)
            if len(rows) < page_size:
                break
            page += 1
        return sources


# =============================================================================
# Supabase backend
# =============================================================================


class SupabaseVectorStore(VectorStore):
    """Documents table with a pgvector column, searched via the match_documents RPC."""

    def __init__(
        self,
        client: Any,
        table: str = "documents",
        match_function: str = "match_documents",
        metadata_table: str = "ingest_metadata",
    ):
        self.client = client
        self.table = table
        self.match_function = match_function
        self.metadata_table = metadata_table

    async def _run(self, fn, action: str):
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error(f"Supabase {action} failed: {e}")
            raise VectorStoreError(f"Supabase {action} failed: {e}") from e

    async def upsert(self, vectors: list[IndexedVector]) -> int:
        if not vectors:
            return 0
        rows = [vector.model_dump() for vector in vectors]
        response = await self._run(
            lambda: self.client.table(self.table).insert(rows).execute(), "insert"
        )
        return len(response.data or rows)

    async def similarity_search(self, query_embedding: list[float], k: int) -> list[VectorMatch]:
        response = await self._run(
            lambda: self.client.rpc(
                self.match_function,
                {"query_embedding": query_embedding, "match_count": k},
            ).execute(),
            "match",
        )
        return [
            VectorMatch(
                content=row.get("content", ""),
                metadata=row.get("metadata") or {},
                similarity=float(row.get("similarity") or 0.0),
            )
            for row in (response.data or [])[:k]
        ]

    async def count(self) -> int:
        response = await self._run(
            lambda: self.client.table(self.table)
            .select("id", count="exact", head=True)
            .execute(),
            "count",
        )
        return response.count or 0

    async def delete_by_source(self, source: str) -> int:
        response = await self._run(
            lambda: self.client.table(self.table)
            .delete()
            .filter("metadata->>source", "eq", source)
            .execute(),
            "delete",
        )
        return len(response.data or [])

    async def list_sources(self, page: int, page_size: int) -> list[str]:
        start = page * page_size
        response = await self._run(
            lambda: self.client.table(self.table)
            .select("metadata")
            .range(start, start + page_size - 1)
            .execute(),
            "list sources",
        )
        return [(row.get("metadata") or {}).get("source", "") for row in response.data or []]

    async def read_metadata(self) -> IngestMetadata | None:
        response = await self._run(
            lambda: self.client.table(self.metadata_table)
            .select("*")
            .eq("key", "documents")
            .limit(1)
            .execute(),
            "read metadata",
        )
        if not response.data:
            return None
        try:
            return IngestMetadata.model_validate(response.data[0])
        except ValidationError as e:
            logger.error(f"Malformed ingest metadata row: {e}")
            raise VectorStoreError(f"Malformed ingest metadata row: {e}") from e

    async def write_metadata(self, metadata: IngestMetadata) -> None:
        row = {"key": "documents", **metadata.model_dump(mode="json")}
        await self._run(
            lambda: self.client.table(self.metadata_table).upsert(row, on_conflict="key").execute(),
            "write metadata",
        )


# =============================================================================
# Local on-disk backend
# =============================================================================


class LocalVectorStore(VectorStore):
    """Flat on-disk index: docstore.json + embeddings.npy + metadata.json.

    Search is exact cosine similarity over the full matrix. File I/O runs in a
    worker thread; the in-memory copy is replaced only after a write succeeds.
    """

    DOCSTORE_FILE = "docstore.json"
    EMBEDDINGS_FILE = "embeddings.npy"
    METADATA_FILE = "metadata.json"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self._docs: list[dict[str, Any]] | None = None
        self._matrix: np.ndarray | None = None
        self._write_lock = asyncio.Lock()

    def _load(self) -> tuple[list[dict[str, Any]], np.ndarray | None]:
        docstore = self.directory / self.DOCSTORE_FILE
        embeddings = self.directory / self.EMBEDDINGS_FILE
        try:
            if docstore.exists() and embeddings.exists():
                return json.loads(docstore.read_text(encoding="utf-8")), np.load(embeddings)
            return [], None
        except (OSError, ValueError) as e:
            raise VectorStoreError(f"Failed to load local index: {e}") from e

    def _save(self, docs: list[dict[str, Any]], matrix: np.ndarray | None) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / self.DOCSTORE_FILE).write_text(
                json.dumps(docs, ensure_ascii=False), encoding="utf-8"
            )
            if matrix is None:
                (self.directory / self.EMBEDDINGS_FILE).unlink(missing_ok=True)
            else:
                np.save(self.directory / self.EMBEDDINGS_FILE, matrix)
        except OSError as e:
            raise VectorStoreError(f"Failed to save local index: {e}") from e

    async def _snapshot(self) -> tuple[list[dict[str, Any]], np.ndarray | None]:
        if self._docs is None:
            self._docs, self._matrix = await asyncio.to_thread(self._load)
        return self._docs, self._matrix

    async def _commit(self, docs: list[dict[str, Any]], matrix: np.ndarray | None) -> None:
        await asyncio.to_thread(self._save, docs, matrix)
        self._docs, self._matrix = docs, matrix

    async def upsert(self, vectors: list[IndexedVector]) -> int:
        if not vectors:
            return 0
        async with self._write_lock:
            docs, matrix = await self._snapshot()
            new_rows = np.asarray([v.embedding for v in vectors], dtype=np.float32)
            if matrix is not None and matrix.shape[1] != new_rows.shape[1]:
                raise VectorStoreError(
                    f"Embedding dimension mismatch: index has {matrix.shape[1]}, got {new_rows.shape[1]}"
                )
            new_docs = [*docs, *({"content": v.content, "metadata": v.metadata} for v in vectors)]
            new_matrix = new_rows if matrix is None else np.vstack([matrix, new_rows])
            await self._commit(new_docs, new_matrix)
        return len(vectors)

    async def similarity_search(self, query_embedding: list[float], k: int) -> list[VectorMatch]:
        docs, matrix = await self._snapshot()
        if matrix is None or not docs:
            return []
        query = np.asarray(query_embedding, dtype=np.float32)
        if query.shape[0] != matrix.shape[1]:
            raise VectorStoreError(
                f"Query dimension {query.shape[0]} does not match index dimension {matrix.shape[1]}"
            )
        norms = np.linalg.norm(matrix, axis=1) * (np.linalg.norm(query) or 1.0)
        scores = matrix @ query / np.where(norms == 0, 1.0, norms)
        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")[:k]
        return [
            VectorMatch(
                content=docs[i]["content"],
                metadata=docs[i].get("metadata", {}),
                similarity=float(scores[i]),
            )
            for i in order
        ]

    async def count(self) -> int:
        docs, _ = await self._snapshot()
        return len(docs)

    async def delete_by_source(self, source: str) -> int:
        async with self._write_lock:
            docs, matrix = await self._snapshot()
            keep = [i for i, doc in enumerate(docs) if doc.get("metadata", {}).get("source") != source]
            removed = len(docs) - len(keep)
            if removed:
                new_matrix = matrix[keep] if keep and matrix is not None else None
                await self._commit([docs[i] for i in keep], new_matrix)
        return removed

    async def list_sources(self, page: int, page_size: int) -> list[str]:
        docs, _ = await self._snapshot()
        rows = docs[page * page_size : (page + 1) * page_size]
        return [row.get("metadata", {}).get("source", "") for row in rows]

    def _read_metadata_file(self) -> IngestMetadata | None:
        path = self.directory / self.METADATA_FILE
        if not path.exists():
            return None
        try:
            return IngestMetadata.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise VectorStoreError(f"Failed to read index metadata: {e}") from e

    def _write_metadata_file(self, metadata: IngestMetadata) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / self.METADATA_FILE).write_text(
                metadata.model_dump_json(), encoding="utf-8"
            )
        except OSError as e:
            raise VectorStoreError(f"Failed to write index metadata: {e}") from e

    async def read_metadata(self) -> IngestMetadata | None:
        return await asyncio.to_thread(self._read_metadata_file)

    async def write_metadata(self, metadata: IngestMetadata) -> None:
        await asyncio.to_thread(self._write_metadata_file, metadata)


@lru_cache(maxsize=1)
def get_vector_store() -> VectorStore:
    """Select the vector backend from configuration (cached)."""
    settings = get_settings()
    if settings.supabase_enabled:
        from tourpro.db.supabase_client import get_supabase

        return SupabaseVectorStore(get_supabase())
    return LocalVectorStore(settings.VECTOR_STORE_PATH)
