"""Document ingestion endpoint with streamed progress."""

import asyncio
from collections.abc import AsyncGenerator

from fastapi import APIRouter, File, Form, UploadFile
from fastapi.responses import StreamingResponse

from tourpro.api.responses import SSE_HEADERS, error_response, sse_event
from tourpro.core.config import get_settings
from tourpro.core.file_text import ExtractionError, expand_upload
from tourpro.core.ingestion import IngestionError, IngestionPipeline, ingest_upload
from tourpro.core.knowledge_hub import get_knowledge_hub
from tourpro.core.logging import get_logger
from tourpro.core.schemas import IngestMode, IngestProgress, NamedDocument
from tourpro.db.vector_store import get_vector_store

logger = get_logger(__name__)

router = APIRouter()


async def _ingest_events(documents: list[NamedDocument], mode: IngestMode) -> AsyncGenerator[str, None]:
    """Run the ingestion and relay progress as SSE events until done or error."""
    yield sse_event(
        {"phase": "reading", "message": f"Found {len(documents)} document(s)", "total_files": len(documents)}
    )

    queue: asyncio.Queue[IngestProgress | None] = asyncio.Queue()

    try:
        pipeline = IngestionPipeline(get_vector_store())
        hub = get_knowledge_hub()
    except RuntimeError as e:
        logger.error(f"Ingestion backend unavailable: {e}")
        yield sse_event({"phase": "error", "success": False, "error": str(e)})
        return

    task = asyncio.create_task(
        ingest_upload(documents, mode, pipeline, hub, on_progress=queue.put_nowait)
    )
    task.add_done_callback(lambda _: queue.put_nowait(None))

    while True:
        progress = await queue.get()
        if progress is None:
            break
        yield sse_event({"phase": "vectorizing", **progress.model_dump()})

    try:
        result = task.result()
    except IngestionError as e:
        logger.error(f"Ingestion aborted: {e}")
        yield sse_event({"phase": "error", "success": False, "error": str(e)})
        return
    except Exception as e:
        logger.error(f"Ingestion failed: {e}", exc_info=True)
        yield sse_event({"phase": "error", "success": False, "error": "Ingestion failed"})
        return

    yield sse_event({"phase": "done", "success": True, **result.model_dump()})


@router.post("/ingest")
async def ingest_documents(
    file: UploadFile = File(..., description="Tour document (.docx/.txt/.md/.json) or .zip archive"),
    mode: str = Form(IngestMode.APPEND.value, description="append | skip_duplicates | overwrite"),
):
    """
    Ingest an uploaded document or archive into the knowledge base.

    Structured knowledge files are stored in the Knowledge Hub; everything
    else is chunked, embedded and indexed.

    Returns:
        StreamingResponse with Server-Sent Events
        (phase: reading | vectorizing | done | error)
    """
    try:
        ingest_mode = IngestMode(mode)
    except ValueError:
        modes = ", ".join(m.value for m in IngestMode)
        return error_response(400, f"Invalid mode '{mode}'; expected one of: {modes}")

    raw_bytes = await file.read()
    if not raw_bytes:
        return error_response(400, "Uploaded file is empty")
    if len(raw_bytes) > get_settings().MAX_UPLOAD_BYTES:
        return error_response(400, "Uploaded file exceeds the maximum upload size")

    try:
        documents = expand_upload(file.filename or "upload", raw_bytes)
    except ExtractionError as e:
        return error_response(400, str(e))

    if not documents:
        return error_response(400, "No supported documents found in upload")

    logger.info(f"Ingest upload {file.filename}: {len(documents)} document(s), mode={ingest_mode.value}")

    return StreamingResponse(
        _ingest_events(documents, ingest_mode),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
