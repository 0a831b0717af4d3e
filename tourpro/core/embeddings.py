"""OpenAI embedding provider shared by ingestion and retrieval."""

import asyncio

from openai import OpenAI

from tourpro.core.config import get_settings
from tourpro.core.logging import get_logger

logger = get_logger(__name__)


def _get_client() -> OpenAI:
    """Get OpenAI client instance."""
    settings = get_settings()
    return OpenAI(api_key=settings.OPENAI_API_KEY)


def embed_texts(texts: list[str]) -> list[list[float]]:
    """
    Generate embeddings for a list of texts using the configured model.

    Ingestion and query embedding both go through this function so stored
    vectors and query vectors always come from the same model.

    Args:
        texts: List of text strings to embed

    Returns:
        List of embedding vectors, in input order

    Raises:
        ValueError: If the response count or dimension doesn't match
        Exception: If the OpenAI API call fails
    """
    if not texts:
        return []

    settings = get_settings()
    client = _get_client()

    try:
        response = client.embeddings.create(
            model=settings.EMBEDDING_MODEL,
            input=texts,
        )

        if len(response.data) != len(texts):
            raise ValueError(
                f"Embedding count mismatch: sent {len(texts)} texts, "
                f"received {len(response.data)} vectors"
            )

        embeddings = []
        for i, embedding_obj in enumerate(response.data):
            embedding = embedding_obj.embedding
            if len(embedding) != settings.EMBEDDING_DIM:
                raise ValueError(
                    f"Embedding dimension mismatch for text {i}: "
                    f"expected {settings.EMBEDDING_DIM}, got {len(embedding)}"
                )
            embeddings.append(embedding)

        logger.debug(
            f"Generated {len(embeddings)} embeddings using {settings.EMBEDDING_MODEL}",
        )
        return embeddings

    except Exception as e:
        logger.error(f"Failed to generate embeddings: {e}")
        raise


async def embed_texts_async(texts: list[str]) -> list[list[float]]:
    """Async wrapper around embed_texts using thread pool."""
    return await asyncio.to_thread(embed_texts, texts)


async def embed_query(text: str) -> list[float]:
    """Embed a single retrieval query."""
    vectors = await embed_texts_async([text])
    return vectors[0]
