"""Tests for the vector index backends."""

from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from tourpro.core.schemas import IndexedVector, IngestMetadata
from tourpro.db.vector_store import LocalVectorStore, SupabaseVectorStore, VectorStoreError


def _vector(content: str, source: str, embedding: list[float]) -> IndexedVector:
    return IndexedVector(content=content, metadata={"source": source, "isPriority": False}, embedding=embedding)


# =============================================================================
# Local backend
# =============================================================================


@pytest.mark.asyncio
async def test_local_search_orders_by_cosine(tmp_path):
    store = LocalVectorStore(tmp_path)
    await store.upsert(
        [
            _vector("east", "a.docx", [1.0, 0.0]),
            _vector("north", "b.docx", [0.0, 1.0]),
            _vector("north-east", "c.docx", [0.7, 0.7]),
        ]
    )

    matches = await store.similarity_search([0.0, 1.0], 2)

    assert [m.content for m in matches] == ["north", "north-east"]
    assert matches[0].similarity == pytest.approx(1.0)
    assert matches[0].metadata["source"] == "b.docx"


@pytest.mark.asyncio
async def test_local_persists_across_instances(tmp_path):
    await LocalVectorStore(tmp_path).upsert([_vector("kept", "a.docx", [1.0, 0.0])])

    reopened = LocalVectorStore(tmp_path)

    assert await reopened.count() == 1
    assert (await reopened.similarity_search([1.0, 0.0], 5))[0].content == "kept"


@pytest.mark.asyncio
async def test_local_empty_index(tmp_path):
    store = LocalVectorStore(tmp_path / "nothing")
    assert await store.count() == 0
    assert await store.similarity_search([1.0, 0.0], 3) == []
    assert await store.read_metadata() is None


@pytest.mark.asyncio
async def test_local_delete_by_source(tmp_path):
    store = LocalVectorStore(tmp_path)
    await store.upsert(
        [_vector("a1", "a.docx", [1.0, 0.0]), _vector("b1", "b.docx", [0.0, 1.0]), _vector("a2", "a.docx", [0.5, 0.5])]
    )

    assert await store.delete_by_source("a.docx") == 2
    assert await store.count() == 1
    assert (await store.similarity_search([1.0, 0.0], 5))[0].content == "b1"

    assert await store.delete_by_source("b.docx") == 1
    assert await store.similarity_search([1.0, 0.0], 5) == []


@pytest.mark.asyncio
async def test_local_all_sources_paginates(tmp_path):
    store = LocalVectorStore(tmp_path)
    await store.upsert([_vector(f"c{i}", f"s{i % 3}.docx", [1.0, float(i)]) for i in range(7)])

    assert await store.list_sources(0, 2) == ["s0.docx", "s1.docx"]
    assert await store.all_sources(page_size=2) == {"s0.docx", "s1.docx", "s2.docx"}


@pytest.mark.asyncio
async def test_local_dimension_mismatch(tmp_path):
    store = LocalVectorStore(tmp_path)
    await store.upsert([_vector("a", "a.docx", [1.0, 0.0])])

    with pytest.raises(VectorStoreError):
        await store.upsert([_vector("b", "b.docx", [1.0, 0.0, 0.0])])
    with pytest.raises(VectorStoreError):
        await store.similarity_search([1.0, 0.0, 0.0], 1)


@pytest.mark.asyncio
async def test_local_metadata_round_trip(tmp_path):
    store = LocalVectorStore(tmp_path)
    metadata = IngestMetadata(
        document_count=3,
        file_count=2,
        last_ingested_at=datetime(2025, 1, 1, tzinfo=timezone.utc),
        embedding_model="text-embedding-3-small",
    )
    await store.write_metadata(metadata)

    assert await LocalVectorStore(tmp_path).read_metadata() == metadata


# =============================================================================
# Supabase backend
# =============================================================================


def _mock_response(data=None, count=None):
    response = MagicMock()
    response.data = data
    response.count = count
    return response


@pytest.mark.asyncio
async def test_supabase_similarity_search_calls_rpc():
    client = MagicMock()
    client.rpc.return_value.execute.return_value = _mock_response(
        data=[{"content": "Hanoi tour", "metadata": {"source": "a.docx"}, "similarity": 0.9}]
    )
    store = SupabaseVectorStore(client)

    matches = await store.similarity_search([0.1, 0.2], 4)

    client.rpc.assert_called_once_with("match_documents", {"query_embedding": [0.1, 0.2], "match_count": 4})
    assert matches[0].content == "Hanoi tour"
    assert matches[0].similarity == 0.9


@pytest.mark.asyncio
async def test_supabase_delete_filters_by_source():
    client = MagicMock()
    table = client.table.return_value
    table.delete.return_value.filter.return_value.execute.return_value = _mock_response(data=[{}, {}])
    store = SupabaseVectorStore(client)

    assert await store.delete_by_source("a.docx") == 2
    table.delete.return_value.filter.assert_called_once_with("metadata->>source", "eq", "a.docx")


@pytest.mark.asyncio
async def test_supabase_list_sources_uses_range():
    client = MagicMock()
    select = client.table.return_value.select.return_value
    select.range.return_value.execute.return_value = _mock_response(
        data=[{"metadata": {"source": "a.docx"}}, {"metadata": None}]
    )
    store = SupabaseVectorStore(client)

    assert await store.list_sources(2, 10) == ["a.docx", ""]
    select.range.assert_called_once_with(20, 29)


@pytest.mark.asyncio
async def test_supabase_failure_wrapped():
    client = MagicMock()
    client.table.return_value.insert.return_value.execute.side_effect = RuntimeError("connection reset")
    store = SupabaseVectorStore(client)

    with pytest.raises(VectorStoreError, match="connection reset"):
        await store.upsert([_vector("a", "a.docx", [1.0])])


@pytest.mark.asyncio
async def test_local_failed_save_leaves_index_unchanged(tmp_path):
    store = LocalVectorStore(tmp_path)
    real_save = store._save
    calls = {"n": 0}

    def flaky_save(docs, matrix):
        calls["n"] += 1
        if calls["n"] == 1:
            raise VectorStoreError("disk full")
        real_save(docs, matrix)

    store._save = flaky_save
    vector = _vector("only", "a.docx", [1.0, 0.0])

    with pytest.raises(VectorStoreError):
        await store.upsert([vector])
    assert await store.count() == 0

    await store.upsert([vector])

    assert await store.count() == 1
    assert await LocalVectorStore(tmp_path).count() == 1


@pytest.mark.asyncio
async def test_local_failed_delete_keeps_rows(tmp_path):
    store = LocalVectorStore(tmp_path)
    await store.upsert([_vector("a1", "a.docx", [1.0, 0.0])])

    def failing_save(docs, matrix):
        raise VectorStoreError("read-only")

    store._save = failing_save
    with pytest.raises(VectorStoreError):
        await store.delete_by_source("a.docx")
    assert await store.count() == 1


@pytest.mark.asyncio
async def test_supabase_malformed_metadata_row():
    client = MagicMock()
    client.table.return_value.select.return_value.eq.return_value.limit.return_value.execute.return_value = (
        _mock_response(data=[{"key": "documents", "document_count": None, "file_count": "many"}])
    )

    with pytest.raises(VectorStoreError, match="Malformed ingest metadata"):
        await SupabaseVectorStore(client).read_metadata()
