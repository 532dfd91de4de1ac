"""Document assembly endpoints."""

from typing import Any

from fastapi import APIRouter, Depends, Query

from knowledge_pipeline.api.dependencies import get_services
from knowledge_pipeline.api.schemas import (
    AssembleAllRequest,
    AssembleRequest,
    DocumentDetailResponse,
    DocumentResponse,
    DocumentUpdateRequest,
    JobCreatedResponse,
)
from knowledge_pipeline.documents.models import AssemblyOptions
from knowledge_pipeline.jobs.models import JobType
from knowledge_pipeline.services import PipelineServices

router = APIRouter(prefix="/documents", tags=["documents"])


@router.post("/assemble", response_model=DocumentResponse | JobCreatedResponse)
async def assemble_document(request: AssembleRequest, services: PipelineServices = Depends(get_services)):
    """Assemble the given messages into one document, inline or as a job."""
    if request.background:
        job_id = await services.orchestrator.create_job(
            JobType.DOCUMENT_CREATION,
            request.model_dump(exclude={"background"}),
            created_by=request.created_by,
        )
        return JobCreatedResponse(job_id=job_id)

    return await services.assembler.assemble(
        request.message_ids,
        AssemblyOptions(
            title=request.title,
            description=request.description,
            category=request.category,
            created_by=request.created_by,
        ),
    )


@router.post("/assemble-all", response_model=JobCreatedResponse, status_code=202)
async def assemble_all(request: AssembleAllRequest, services: PipelineServices = Depends(get_services)):
    """Queue assembly of every message that has no document yet."""
    payload: dict[str, Any] = {"created_by": request.created_by}
    if request.batch_size:
        payload["batch_size"] = request.batch_size
    job_id = await services.orchestrator.create_job(
        JobType.DOCUMENT_CREATION, payload, priority=request.priority, created_by=request.created_by
    )
    return JobCreatedResponse(job_id=job_id)


@router.get("", response_model=list[DocumentResponse])
async def list_documents(
    status: str | None = None,
    category: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: PipelineServices = Depends(get_services),
):
    return await services.assembler.list_documents(status=status, category=category, limit=limit, offset=offset)


@router.get("/stats")
async def document_stats(services: PipelineServices = Depends(get_services)):
    return await services.assembler.get_document_stats()


@router.get("/{document_id}", response_model=DocumentDetailResponse)
async def get_document(document_id: int, services: PipelineServices = Depends(get_services)):
    detail = await services.assembler.get_document_detail(document_id)
    return DocumentDetailResponse.model_validate(detail, from_attributes=True)


@router.patch("/{document_id}", response_model=DocumentResponse)
async def update_document(
    document_id: int,
    request: DocumentUpdateRequest,
    services: PipelineServices = Depends(get_services),
):
    return await services.assembler.update_document_metadata(document_id, **request.model_dump(exclude_unset=True))


@router.post("/{document_id}/enhance", response_model=JobCreatedResponse, status_code=202)
async def enhance_document(document_id: int, services: PipelineServices = Depends(get_services)):
    """Queue regeneration of the document's title, description and category."""
    await services.assembler.get_document(document_id)
    job_id = await services.orchestrator.create_job(
        JobType.DOCUMENT_ENHANCEMENT, {"document_id": document_id}, created_by="api"
    )
    return JobCreatedResponse(job_id=job_id)
