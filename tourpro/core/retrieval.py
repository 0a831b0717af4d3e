"""Similarity retrieval over the tour document index.

Retrieval never raises: a missing index, a backend failure or an index built
with another embedding model all degrade to "no context".
"""

from collections.abc import Awaitable, Callable

from tourpro.core.config import Settings, get_settings
from tourpro.core.embeddings import embed_query
from tourpro.core.logging import get_logger
from tourpro.core.schemas import VectorMatch
from tourpro.db.vector_store import VectorStore, VectorStoreError, get_vector_store

logger = get_logger(__name__)


class Retriever:
    """Embeds a query with the ingestion model and returns the nearest chunks."""

    def __init__(
        self,
        store: VectorStore,
        embed: Callable[[str], Awaitable[list[float]]] | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.embed = embed or embed_query
        self.settings = settings or get_settings()

    async def _model_matches(self) -> bool:
        try:
            metadata = await self.store.read_metadata()
        except VectorStoreError as e:
            logger.warning(f"Could not read index metadata: {e}")
            return True
        if metadata and metadata.embedding_model and metadata.embedding_model != self.settings.EMBEDDING_MODEL:
            logger.error(
                f"Index embedded with {metadata.embedding_model}, queries use "
                f"{self.settings.EMBEDDING_MODEL}; skipping retrieval"
            )
            return False
        return True

    async def search(self, query: str, k: int) -> list[VectorMatch]:
        """Nearest chunks with metadata, most similar first; [] on any failure."""
        if not query or not query.strip() or k <= 0:
            return []
        try:
            if not await self._model_matches():
                return []
            query_embedding = await self.embed(query)
            matches = await self.store.similarity_search(query_embedding, k)
        except Exception as e:
            logger.error(f"Retrieval failed, continuing without context: {e}")
            return []

        logger.info(f"Retrieved {len(matches)} passages", extra={"extra_data": {"k": k}})
        return matches[:k]

    async def retrieve(self, query: str, k: int) -> list[str]:
        """Text content of the nearest chunks, most similar first."""
        return [match.content for match in await self.search(query, k)]


async def retrieve_relevant_tours(query: str, k: int | None = None) -> list[str]:
    """Retrieve passages from the configured index; [] if it cannot be opened."""
    try:
        store = get_vector_store()
    except RuntimeError as e:
        logger.error(f"Vector store unavailable: {e}")
        return []
    return await Retriever(store).retrieve(query, k or get_settings().RAG_TOP_K)
