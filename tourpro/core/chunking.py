"""Text chunking utilities for tour document ingestion."""

from typing import Any


def chunk_text(
    text: str,
    max_chars: int = 1500,
    stride: int = 1500,
    metadata: dict[str, Any] | None = None,
) -> list[dict[str, Any]]:
    """
    Split text into fixed windows advancing by a fixed stride.

    A stride smaller than the window yields overlapping chunks; a stride equal
    to the window yields contiguous chunks. Every character of the input falls
    in at least one chunk and no chunk is longer than max_chars.

    Args:
        text: Text to chunk
        max_chars: Maximum characters per chunk
        stride: Distance between the starts of consecutive chunks
        metadata: Optional metadata copied into each chunk

    Returns:
        List of chunk dicts with:
            - chunk_index: int (0-based)
            - content: str
            - start_char: int
            - end_char: int
            - metadata: dict

    Raises:
        ValueError: If stride is not in (0, max_chars]
    """
    if stride <= 0 or stride > max_chars:
        raise ValueError(f"stride ({stride}) must be in the range 1..max_chars ({max_chars})")

    if not text:
        return []

    chunks = []
    text_length = len(text)
    start = 0

    while start < text_length:
        end = min(start + max_chars, text_length)
        chunks.append(
            {
                "chunk_index": len(chunks),
                "content": text[start:end],
                "start_char": start,
                "end_char": end,
                "metadata": dict(metadata or {}),
            }
        )

        # The window reaching the end covers the tail; a further stride would
        # only produce a chunk fully contained in this one.
        if end >= text_length:
            break

        start += stride

    return chunks
