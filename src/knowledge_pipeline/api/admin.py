"""Operator endpoints for the ingestion audit trail."""

from fastapi import APIRouter, Depends

from knowledge_pipeline.api.dependencies import get_services
from knowledge_pipeline.api.schemas import EventRetryRequest
from knowledge_pipeline.services import PipelineServices

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/events/stats")
async def event_stats(services: PipelineServices = Depends(get_services)):
    return await services.guard.get_event_stats()


@router.post("/events/retry")
async def retry_events(
    request: EventRetryRequest | None = None,
    services: PipelineServices = Depends(get_services),
):
    """Re-process FAILED events that still have attempts left."""
    request = request or EventRetryRequest()
    return await services.guard.retry_failed_events(max_attempts=request.max_attempts, limit=request.limit)
