"""Status record for the vector index and structured knowledge."""

from tourpro.core.knowledge_hub import KnowledgeHub, get_knowledge_hub
from tourpro.core.logging import get_logger
from tourpro.core.schemas import StatusResponse
from tourpro.db.vector_store import VectorStore, VectorStoreError, get_vector_store

logger = get_logger(__name__)


async def build_status(store: VectorStore | None, hub: KnowledgeHub) -> StatusResponse:
    """Status from the given stores; an unreachable index reports not ready."""
    document_count = 0
    metadata = None
    if store is not None:
        try:
            document_count = await store.count()
            metadata = await store.read_metadata()
        except VectorStoreError as e:
            logger.warning(f"Index status unavailable: {e}")

    return StatusResponse(
        index_ready=document_count > 0,
        document_count=document_count,
        file_count=metadata.file_count if metadata else 0,
        last_ingested_at=metadata.last_ingested_at if metadata else None,
        embedding_model=metadata.embedding_model if metadata else None,
        structured_files_present=await hub.present_files(),
    )


async def get_status() -> StatusResponse:
    try:
        store = get_vector_store()
    except RuntimeError as e:
        logger.error(f"Vector store unavailable: {e}")
        store = None
    return await build_status(store, get_knowledge_hub())
