"""Itinerary generation, streaming and refinement endpoints."""

from collections.abc import AsyncGenerator

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse

from tourpro.api.responses import SSE_HEADERS, error_response, sse_event
from tourpro.chains.generate_itinerary import (
    generate_itinerary,
    generate_itinerary_stream,
    refine_itinerary,
)
from tourpro.core.llm import GenerationError, GenerationTimeoutError
from tourpro.core.logging import get_logger
from tourpro.core.schemas import ItineraryRequest, RefineRequest

logger = get_logger(__name__)

router = APIRouter()


@router.post("/itinerary/generate")
async def generate(request: ItineraryRequest) -> JSONResponse:
    """
    Generate a complete itinerary.

    Returns:
        {"success": true, "data": Itinerary}

    Errors:
        502 if the model fails or returns unusable output, 504 on timeout,
        500 on any other failure
    """
    try:
        itinerary = await generate_itinerary(request)
    except GenerationTimeoutError as e:
        logger.error(f"Itinerary generation timed out: {e}")
        return error_response(504, "Itinerary generation timed out")
    except GenerationError as e:
        logger.error(f"Itinerary generation failed: {e}")
        return error_response(502, str(e))
    except Exception as e:
        logger.exception(f"Unexpected itinerary generation failure: {e}")
        return error_response(500, "Itinerary generation failed")

    return JSONResponse(content={"success": True, "data": itinerary.model_dump(mode="json", by_alias=True)})


async def _stream_events(request: ItineraryRequest) -> AsyncGenerator[str, None]:
    async for event in generate_itinerary_stream(request):
        yield sse_event(event.model_dump(mode="json", exclude_none=True))
        if event.is_terminal:
            break


@router.post("/itinerary/generate/stream")
async def generate_stream(request: ItineraryRequest) -> StreamingResponse:
    """
    Stream itinerary generation.

    Returns:
        StreamingResponse with Server-Sent Events
        (type: status | chunk | done | error)
    """
    return StreamingResponse(_stream_events(request), media_type="text/event-stream", headers=SSE_HEADERS)


@router.post("/itinerary/refine")
async def refine(body: RefineRequest) -> JSONResponse:
    """
    Apply a conversational change request to an existing itinerary.

    Returns:
        {"success": true, "data": Itinerary, "summary": str, "changed_days": [int]}
    """
    try:
        result = await refine_itinerary(body.current_itinerary, body.user_prompt, body.chat_history)
    except GenerationTimeoutError as e:
        logger.error(f"Itinerary refinement timed out: {e}")
        return error_response(504, "Itinerary refinement timed out")
    except GenerationError as e:
        logger.error(f"Itinerary refinement failed: {e}")
        return error_response(502, str(e))
    except Exception as e:
        logger.exception(f"Unexpected itinerary refinement failure: {e}")
        return error_response(500, "Itinerary refinement failed")

    return JSONResponse(
        content={
            "success": True,
            "data": result.itinerary.model_dump(mode="json", by_alias=True),
            "summary": result.summary,
            "changed_days": result.changed_day_numbers,
        }
    )
