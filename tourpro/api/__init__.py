"""API router for v1 endpoints."""

from fastapi import APIRouter

from tourpro.api import ingest, itinerary, status

router = APIRouter()

router.include_router(ingest.router, tags=["ingest"])

router.include_router(itinerary.router, tags=["itinerary"])

router.include_router(status.router, tags=["status"])
