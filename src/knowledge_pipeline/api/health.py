"""Health check endpoints."""

from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy import text

from knowledge_pipeline.api.dependencies import get_services
from knowledge_pipeline.services import PipelineServices

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict[str, str]:
    """Basic health check - returns ok if the service is running."""
    return {"status": "ok"}


@router.get("/health/ready")
async def ready(services: PipelineServices = Depends(get_services)) -> dict[str, Any]:
    """
    Readiness check - verifies the collaborators the pipeline depends on.

    Checks:
    - Database: a trivial query through the session factory
    - LLM: provider health (optional, heuristics work without it)
    - Similarity index: ChromaDB heartbeat (optional, new FAQs are not deduplicated without it)
    """
    checks: dict[str, str] = {}
    all_ok = True

    try:
        async with services.session_maker() as session:
            await session.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception as e:
        checks["database"] = f"error: {type(e).__name__}"
        all_ok = False

    if services.llm is None:
        checks["llm"] = "warning: no provider configured"
    else:
        try:
            if await services.llm.check_health():
                checks["llm"] = f"ok ({services.llm.provider_name})"
            else:
                checks["llm"] = f"error: {services.llm.provider_name} not healthy"
                all_ok = False
        except Exception as e:
            checks["llm"] = f"error: {type(e).__name__}"
            all_ok = False

    if services.similarity_index is None:
        checks["similarity"] = "warning: no similarity index configured"
    else:
        try:
            if await services.similarity_index.check_health():
                checks["similarity"] = "ok"
            else:
                checks["similarity"] = "error: not reachable"
                all_ok = False
        except Exception as e:
            checks["similarity"] = f"error: {type(e).__name__}"
            all_ok = False

    status = "ready" if all_ok else "degraded"
    return {"status": status, "services": checks}
