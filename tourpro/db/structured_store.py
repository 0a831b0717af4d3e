"""Structured-file stores: a Supabase keyed table and a local directory."""

import asyncio
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Any

from tourpro.core.config import get_settings
from tourpro.core.logging import get_logger

logger = get_logger(__name__)


class StructuredStoreError(Exception):
    """Raised when a structured-file backend fails."""


class StructuredStore(ABC):
    """Keyed store of authoritative knowledge files (filename -> text)."""

    name: str = "store"

    @abstractmethod
    async def get(self, filename: str) -> str | None:
        """Return the file content, or None when absent."""

    @abstractmethod
    async def upsert(self, filename: str, content: str) -> None:
        """Create or replace a file."""

    @abstractmethod
    async def list(self) -> list[str]:
        """Filenames present in the store."""


class SupabaseStructuredStore(StructuredStore):
    """`structured_knowledge` table keyed by filename."""

    name = "supabase"

    def __init__(self, client: Any, table: str = "structured_knowledge"):
        self.client = client
        self.table = table

    async def _run(self, fn, action: str):
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            raise StructuredStoreError(f"Supabase {action} failed: {e}") from e

    async def get(self, filename: str) -> str | None:
        response = await self._run(
            lambda: self.client.table(self.table)
            .select("content")
            .eq("filename", filename)
            .limit(1)
            .execute(),
            f"get {filename}",
        )
        if not response.data:
            return None
        return response.data[0].get("content")

    async def upsert(self, filename: str, content: str) -> None:
        row = {
            "filename": filename,
            "content": content,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        await self._run(
            lambda: self.client.table(self.table).upsert(row, on_conflict="filename").execute(),
            f"upsert {filename}",
        )

    async def list(self) -> list[str]:
        response = await self._run(
            lambda: self.client.table(self.table).select("filename").execute(), "list"
        )
        return [row["filename"] for row in response.data or [] if row.get("filename")]


class LocalStructuredStore(StructuredStore):
    """Plain files under one directory."""

    name = "local"

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    async def get(self, filename: str) -> str | None:
        path = self.directory / filename
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise StructuredStoreError(f"Failed to read {path}: {e}") from e

    async def upsert(self, filename: str, content: str) -> None:
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            (self.directory / filename).write_text(content, encoding="utf-8")
        except OSError as e:
            raise StructuredStoreError(f"Failed to write {filename}: {e}") from e

    async def list(self) -> list[str]:
        if not self.directory.is_dir():
            return []
        return sorted(p.name for p in self.directory.iterdir() if p.is_file())


@lru_cache(maxsize=1)
def get_structured_stores() -> tuple[StructuredStore | None, StructuredStore]:
    """Return (remote, local) stores; remote is None unless Supabase is configured."""
    settings = get_settings()
    local = LocalStructuredStore(settings.STRUCTURED_DATA_DIR)
    if settings.supabase_enabled:
        from tourpro.db.supabase_client import get_supabase

        return SupabaseStructuredStore(get_supabase()), local
    return None, local
