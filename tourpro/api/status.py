"""Knowledge base status and raw retrieval endpoints."""

from fastapi import APIRouter

from tourpro.core.retrieval import retrieve_relevant_tours
from tourpro.core.schemas import RetrieveRequest, StatusResponse
from tourpro.core.status import get_status

router = APIRouter()


@router.get("/status", response_model=StatusResponse)
async def status() -> StatusResponse:
    """Index readiness, counts and the structured files present."""
    return await get_status()


@router.post("/retrieve")
async def retrieve(body: RetrieveRequest) -> dict:
    """Nearest tour passages for a free-text query; empty when no index exists."""
    passages = await retrieve_relevant_tours(body.query, body.k)
    return {"success": True, "data": passages}
