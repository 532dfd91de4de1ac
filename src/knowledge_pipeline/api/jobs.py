"""Background job endpoints."""

from fastapi import APIRouter, Depends, Query

from knowledge_pipeline.api.dependencies import get_services
from knowledge_pipeline.api.schemas import (
    CancelResponse,
    JobCreatedResponse,
    JobCreateRequest,
    JobResponse,
    JobSummary,
)
from knowledge_pipeline.services import PipelineServices

router = APIRouter(prefix="/jobs", tags=["jobs"])


@router.post("", response_model=JobCreatedResponse, status_code=202)
async def create_job(request: JobCreateRequest, services: PipelineServices = Depends(get_services)):
    job_id = await services.orchestrator.create_job(
        request.job_type,
        request.payload,
        priority=request.priority,
        delay_seconds=request.delay_seconds,
        max_retries=request.max_retries,
        created_by=request.created_by,
    )
    return JobCreatedResponse(job_id=job_id)


@router.get("", response_model=list[JobSummary])
async def list_jobs(
    status: str | None = None,
    job_type: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    services: PipelineServices = Depends(get_services),
):
    return await services.orchestrator.list_jobs(status=status, job_type=job_type, limit=limit)


@router.get("/stats")
async def job_statistics(services: PipelineServices = Depends(get_services)):
    return await services.orchestrator.get_job_statistics()


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, services: PipelineServices = Depends(get_services)):
    return await services.orchestrator.get_job_status(job_id)


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(job_id: str, services: PipelineServices = Depends(get_services)):
    """Cancel a queued or running job; `cancelled` is false if it already finished."""
    await services.store.get_job(job_id)
    cancelled = await services.orchestrator.cancel_job(job_id)
    return CancelResponse(job_id=job_id, cancelled=cancelled)
