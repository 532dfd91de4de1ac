"""FAQ synthesis, review and reporting endpoints."""

from fastapi import APIRouter, Depends, Query

from knowledge_pipeline.api.dependencies import get_services
from knowledge_pipeline.api.schemas import (
    DuplicateResolveRequest,
    DuplicateReviewResponse,
    FAQGenerateRequest,
    FAQResponse,
    FAQReviewRequest,
    FAQSourceResponse,
    JobCreatedResponse,
)
from knowledge_pipeline.faqs.models import SynthesisOptions
from knowledge_pipeline.jobs.models import JobType
from knowledge_pipeline.services import PipelineServices

router = APIRouter(prefix="/faqs", tags=["faqs"])


@router.post("/generate")
async def generate_faqs(request: FAQGenerateRequest, services: PipelineServices = Depends(get_services)):
    """Synthesize FAQs for the listed documents (or all documents without FAQs).

    Runs as a background job unless `background` is false.
    """
    if request.background:
        job_id = await services.orchestrator.create_job(
            JobType.FAQ_GENERATION,
            request.model_dump(exclude={"background"}),
            created_by=request.created_by,
        )
        return JobCreatedResponse(job_id=job_id).model_dump()

    document_ids = request.document_ids or await services.synthesizer.documents_without_faqs()
    result = await services.synthesizer.synthesize_many(
        document_ids,
        SynthesisOptions(require_approval=request.require_approval, created_by=request.created_by),
    )
    return result.to_dict()


@router.get("", response_model=list[FAQResponse])
async def list_faqs(
    status: str | None = None,
    category: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    services: PipelineServices = Depends(get_services),
):
    return await services.review.list_faqs(status=status, category=category, limit=limit, offset=offset)


@router.get("/stats")
async def faq_stats(services: PipelineServices = Depends(get_services)):
    return await services.review.get_faq_stats()


@router.get("/duplicates", response_model=list[DuplicateReviewResponse])
async def list_duplicate_reviews(
    status: str | None = "open",
    services: PipelineServices = Depends(get_services),
):
    return await services.review.list_duplicate_reviews(status=status)


@router.post("/duplicates/{review_id}/resolve", response_model=DuplicateReviewResponse)
async def resolve_duplicate_review(
    review_id: int,
    request: DuplicateResolveRequest,
    services: PipelineServices = Depends(get_services),
):
    return await services.review.resolve_duplicate_review(review_id, request.action, request.reviewer_id)


@router.get("/{faq_id}", response_model=FAQResponse)
async def get_faq(faq_id: int, services: PipelineServices = Depends(get_services)):
    return await services.review.get_faq(faq_id)


@router.post("/{faq_id}/review", response_model=FAQResponse)
async def review_faq(
    faq_id: int,
    request: FAQReviewRequest,
    services: PipelineServices = Depends(get_services),
):
    """Approve or reject a pending FAQ. A second review of the same FAQ is a 409."""
    return await services.review.review_faq(faq_id, request.decision, request.reviewer_id, request.notes)


@router.get("/{faq_id}/sources", response_model=list[FAQSourceResponse])
async def faq_sources(faq_id: int, services: PipelineServices = Depends(get_services)):
    return await services.review.get_faq_sources(faq_id)
