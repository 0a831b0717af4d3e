"""Behavioral tests for the ingestion pipeline using in-memory fakes."""

import asyncio

import pytest

from tests.fakes.fake_stores import FakeStructuredStore, FakeVectorStore, fake_embed
from tourpro.core.ingestion import (
    IngestionError,
    IngestionPipeline,
    ingest_upload,
    is_priority,
    order_by_priority,
)
from tourpro.core.knowledge_hub import BRAND_FILE, KnowledgeHub
from tourpro.core.schemas import IngestMetadata, IngestMode, NamedDocument


class SleepRecorder:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def store():
    return FakeVectorStore()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def pipeline(store, settings, sleeper):
    return IngestionPipeline(store, embed=fake_embed, settings=settings, sleep=sleeper)


def _doc(name: str, length: int, fill: str = "t") -> NamedDocument:
    return NamedDocument(name=name, content=fill * length)


def test_is_priority_case_insensitive():
    assert is_priority("PRIORITY_Hanoi.docx")
    assert is_priority("priority_hanoi.docx")
    assert not is_priority("Hanoi_PRIORITY.docx")


def test_order_by_priority_is_stable():
    docs = [_doc("B", 1), _doc("PRIORITY_X", 1), _doc("A", 1), _doc("PRIORITY_Y", 1)]
    assert [d.name for d in order_by_priority(docs)] == ["PRIORITY_X", "PRIORITY_Y", "B", "A"]


@pytest.mark.asyncio
async def test_priority_scenario_chunk_counts_and_order(pipeline, store):
    """A (600, priority) -> 1 chunk, B (50) -> skipped, C (3000) -> 2 chunks."""
    seen = []
    documents = [_doc("B.docx", 50), _doc("C.docx", 3000), _doc("PRIORITY_A.docx", 600)]

    result = await pipeline.ingest(documents, IngestMode.APPEND, on_progress=lambda p: seen.append(p.current_file))

    assert result.vectors_created == 3
    assert result.files_processed == 3
    assert result.errors == 0
    assert result.skipped_files == ["B.docx"]
    assert seen == ["PRIORITY_A.docx", "B.docx", "C.docx"]
    # Priority content is written before any other source
    assert [v.metadata["source"] for v in store.upsert_calls[0]] == ["PRIORITY_A.docx"]
    assert store.sources() == ["PRIORITY_A.docx", "C.docx", "C.docx"]
    assert store.rows[0].metadata["isPriority"] is True
    assert store.rows[1].metadata["isPriority"] is False


@pytest.mark.asyncio
async def test_async_progress_callback(pipeline):
    received = []

    async def on_progress(progress):
        received.append((progress.processed_files, progress.total_files))

    await pipeline.ingest([_doc("A.txt", 200), _doc("B.txt", 200)], on_progress=on_progress)

    assert received == [(1, 2), (2, 2)]


@pytest.mark.asyncio
async def test_append_allows_duplicates(pipeline, store):
    await pipeline.ingest([_doc("D.docx", 200)], IngestMode.APPEND)
    await pipeline.ingest([_doc("D.docx", 200)], IngestMode.APPEND)

    assert store.sources() == ["D.docx", "D.docx"]


@pytest.mark.asyncio
async def test_skip_duplicates_is_idempotent(pipeline, store):
    await pipeline.ingest([_doc("D.docx", 200)], IngestMode.SKIP_DUPLICATES)
    count_after_first = await store.count()

    result = await pipeline.ingest([_doc("d.DOCX", 200)], IngestMode.SKIP_DUPLICATES)

    assert await store.count() == count_after_first
    assert result.vectors_created == 0
    assert result.duplicate_files == ["d.DOCX"]
    assert result.files_processed == 0


@pytest.mark.asyncio
async def test_skip_duplicates_within_one_run(pipeline, store):
    result = await pipeline.ingest([_doc("E.txt", 200), _doc("E.txt", 200)], IngestMode.SKIP_DUPLICATES)

    assert store.sources() == ["E.txt"]
    assert result.duplicate_files == ["E.txt"]


@pytest.mark.asyncio
async def test_overwrite_replaces_previous_vectors(pipeline, store):
    await pipeline.ingest([_doc("F.docx", 3000, fill="o")], IngestMode.APPEND)
    assert store.sources() == ["F.docx", "F.docx"]

    result = await pipeline.ingest([_doc("F.docx", 200, fill="n")], IngestMode.OVERWRITE)

    assert store.sources() == ["F.docx"]
    assert store.rows[0].content == "n" * 200
    assert result.duplicate_files == ["F.docx"]
    assert store.deleted == ["F.docx"]
    assert "f.docx" not in IngestionPipeline._source_locks


@pytest.mark.asyncio
async def test_overwrite_keeps_other_sources(pipeline, store):
    await pipeline.ingest([_doc("G.txt", 200), _doc("H.txt", 200)])
    await pipeline.ingest([_doc("G.txt", 300)], IngestMode.OVERWRITE)

    assert sorted(store.sources()) == ["G.txt", "H.txt"]


@pytest.mark.asyncio
async def test_overwrite_delete_failure_skips_source(pipeline, store):
    await pipeline.ingest([_doc("I.txt", 200, fill="o")])
    store.fail_delete = True

    result = await pipeline.ingest([_doc("I.txt", 200, fill="n")], IngestMode.OVERWRITE)

    assert result.failed_files == ["I.txt"]
    assert [row.content for row in store.rows] == ["o" * 200]


@pytest.mark.asyncio
async def test_listing_failure_aborts_dedup_modes(pipeline, store):
    store.fail_listing = True
    with pytest.raises(IngestionError):
        await pipeline.ingest([_doc("J.txt", 200)], IngestMode.SKIP_DUPLICATES)


@pytest.mark.asyncio
async def test_embedding_model_mismatch_refused(pipeline, store):
    store.metadata = IngestMetadata(embedding_model="text-embedding-ada-002")
    with pytest.raises(IngestionError, match="ada-002"):
        await pipeline.ingest([_doc("K.txt", 200)])
    assert store.rows == []


@pytest.mark.asyncio
async def test_batch_retry_then_success(store, settings, sleeper):
    pipeline = IngestionPipeline(store, embed=fake_embed, settings=settings, sleep=sleeper)
    store.upsert_failures = 2

    result = await pipeline.ingest([_doc("L.txt", 200)])

    assert result.vectors_created == 1
    assert result.errors == 0
    assert sleeper.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_batch_counts_errors_and_continues(store, settings, sleeper):
    small_batches = settings.model_copy(update={"INGEST_BATCH_SIZE": 2})
    pipeline = IngestionPipeline(store, embed=fake_embed, settings=small_batches, sleep=sleeper)
    store.upsert_failures = 3

    # 7000 chars -> 5 chunks -> batches of 2, 2, 1
    result = await pipeline.ingest([_doc("M.txt", 7000)])

    assert result.errors == 2
    assert result.vectors_created == 3
    assert sleeper.delays == [2.0, 4.0]
    assert len(store.upsert_calls) == 5


@pytest.mark.asyncio
async def test_embedding_failure_is_retried(store, settings, sleeper):
    calls = {"n": 0}

    async def flaky_embed(texts):
        calls["n"] += 1
        if calls["n"] == 1:
            raise RuntimeError("rate limited")
        return await fake_embed(texts)

    pipeline = IngestionPipeline(store, embed=flaky_embed, settings=settings, sleep=sleeper)
    result = await pipeline.ingest([_doc("N.txt", 200)])

    assert result.vectors_created == 1
    assert sleeper.delays == [2.0]


@pytest.mark.asyncio
async def test_extraction_failure_is_counted(pipeline, store):
    documents = [
        NamedDocument(name="broken.docx", content=b"not a docx"),
        _doc("ok.txt", 200),
    ]
    result = await pipeline.ingest(documents)

    assert result.extraction_errors == 1
    assert result.failed_files == ["broken.docx"]
    assert store.sources() == ["ok.txt"]


@pytest.mark.asyncio
async def test_metadata_record_written(pipeline, store):
    await pipeline.ingest([_doc("O.txt", 3000), _doc("P.txt", 200)])

    assert store.metadata.document_count == 3
    assert store.metadata.file_count == 2
    assert store.metadata.embedding_model == "text-embedding-3-small"
    assert store.metadata.last_ingested_at is not None


@pytest.mark.asyncio
async def test_ingest_upload_routes_structured_files(pipeline, store):
    local = FakeStructuredStore("local")
    hub = KnowledgeHub(local=local)
    documents = [
        NamedDocument(name="1_brand_guidelines.md", content=b"Warm and expert tone for every guest message."),
        _doc("Q.txt", 200),
    ]

    result = await ingest_upload(documents, IngestMode.APPEND, pipeline, hub)

    assert result.structured_files == [BRAND_FILE]
    assert local.files[BRAND_FILE].startswith("Warm and expert")
    assert store.sources() == ["Q.txt"]


@pytest.mark.asyncio
async def test_ingest_upload_reports_failed_structured_save(pipeline, store):
    local = FakeStructuredStore("local")
    local.fail_writes = True
    hub = KnowledgeHub(local=local)

    result = await ingest_upload(
        [NamedDocument(name="4_hotel_master.json", content="[]"), _doc("R.txt", 200)],
        IngestMode.APPEND,
        pipeline,
        hub,
    )

    assert result.failed_files == ["4_hotel_master.json"]
    assert store.sources() == ["R.txt"]


@pytest.mark.asyncio
async def test_source_lock_serializes_and_is_dropped(pipeline):
    order = []

    async def hold(tag: str):
        async with pipeline._hold_source("hanoi.docx"):
            order.append(f"{tag}-in")
            await asyncio.sleep(0)
            order.append(f"{tag}-out")

    await asyncio.gather(hold("a"), hold("b"))

    assert order == ["a-in", "a-out", "b-in", "b-out"]
    assert "hanoi.docx" not in IngestionPipeline._source_locks
    assert "hanoi.docx" not in IngestionPipeline._source_lock_users
