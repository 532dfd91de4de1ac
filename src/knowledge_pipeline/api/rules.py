"""Automation rule endpoints."""

from fastapi import APIRouter, Depends, Response

from knowledge_pipeline.api.dependencies import get_services
from knowledge_pipeline.api.schemas import RuleCreateRequest, RuleResponse, RuleRunResponse, RuleUpdateRequest
from knowledge_pipeline.services import PipelineServices

router = APIRouter(prefix="/rules", tags=["rules"])


@router.post("", response_model=RuleResponse, status_code=201)
async def create_rule(request: RuleCreateRequest, services: PipelineServices = Depends(get_services)):
    return await services.rules.create_rule(**request.model_dump())


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    enabled: bool | None = None,
    action_type: str | None = None,
    trigger_type: str | None = None,
    search: str | None = None,
    services: PipelineServices = Depends(get_services),
):
    return await services.rules.list_rules(
        enabled=enabled, action_type=action_type, trigger_type=trigger_type, search=search
    )


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: int, services: PipelineServices = Depends(get_services)):
    return await services.rules.get_rule(rule_id)


@router.patch("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: int,
    request: RuleUpdateRequest,
    services: PipelineServices = Depends(get_services),
):
    return await services.rules.update_rule(rule_id, **request.model_dump(exclude_unset=True))


@router.delete("/{rule_id}", status_code=204)
async def delete_rule(rule_id: int, services: PipelineServices = Depends(get_services)):
    await services.rules.delete_rule(rule_id)
    return Response(status_code=204)


@router.post("/{rule_id}/run", response_model=RuleRunResponse, status_code=202)
async def run_rule(rule_id: int, services: PipelineServices = Depends(get_services)):
    """Fire the rule now. Disabled rules are rejected with 400."""
    job_id = await services.rules.fire_rule(rule_id, triggered_by="manual")
    return RuleRunResponse(rule_id=rule_id, job_id=job_id)
