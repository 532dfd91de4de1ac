"""API request and response schemas."""

import json
from datetime import datetime
from typing import Annotated, Any, Literal

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator

from knowledge_pipeline.jobs.models import ActionType, JobType, RuleEventType, TriggerType


def _lower(value: Any) -> Any:
    return value.strip().lower() if isinstance(value, str) else value


Lowered = BeforeValidator(_lower)


class ErrorResponse(BaseModel):
    """Body of every pipeline error response."""

    detail: str
    error_type: str


# =============================================================================
# Events
# =============================================================================


class EventResponse(BaseModel):
    status: str = Field(..., description="Ingestion outcome: complete, duplicate or failed")
    record_id: int | None = Field(default=None, description="Audit record of the event")
    message: str = ""


class EventRetryRequest(BaseModel):
    max_attempts: int | None = Field(default=None, ge=1, le=100)
    limit: int = Field(default=100, ge=1, le=1000)


# =============================================================================
# Jobs
# =============================================================================


class JobCreateRequest(BaseModel):
    job_type: Annotated[JobType, Lowered]
    payload: dict[str, Any] = Field(default_factory=dict)
    priority: int = Field(default=0, ge=-100, le=100)
    delay_seconds: float = Field(default=0, ge=0)
    max_retries: int | None = Field(default=None, ge=0, le=20)
    created_by: str = "api"

    model_config = {"json_schema_extra": {
        "example": {
            "job_type": "document_creation",
            "payload": {"message_ids": [1, 2, 3], "title": "Resetting a VPN token"},
            "priority": 5,
        }
    }}


class JobCreatedResponse(BaseModel):
    job_id: str
    status: str = "queued"


class JobResponse(BaseModel):
    job_id: str
    job_type: str
    status: str
    progress: int
    priority: int
    error: str | None = None
    retry_count: int
    max_retries: int
    awaiting_retry: bool
    run_after: datetime | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    rule_id: int | None = None
    created_by: str
    worker_id: str | None = None
    heartbeat_at: datetime | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None


class JobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: str
    job_type: str
    status: str
    progress: int
    priority: int
    retry_count: int
    error_message: str | None = None
    created_at: datetime | None = None
    completed_at: datetime | None = None


class CancelResponse(BaseModel):
    job_id: str
    cancelled: bool


# =============================================================================
# Documents
# =============================================================================


class AssembleRequest(BaseModel):
    message_ids: list[int] = Field(..., min_length=1)
    title: str | None = Field(default=None, max_length=200)
    description: str | None = None
    category: str | None = None
    created_by: str = "api"
    background: bool = Field(default=False, description="Queue a job instead of assembling inline")


class AssembleAllRequest(BaseModel):
    batch_size: int | None = Field(default=None, ge=1)
    created_by: str = "api"
    priority: int = 0


class DocumentUpdateRequest(BaseModel):
    title: str | None = Field(default=None, max_length=200)
    description: str | None = None
    category: str | None = None


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    description: str
    category: str
    status: str
    confidence_score: float
    error_message: str | None = None
    created_by: str
    created_at: datetime | None = None
    updated_at: datetime | None = None
    completed_at: datetime | None = None


class DocumentMessageResponse(BaseModel):
    message_id: int
    external_id: str
    author: str
    text: str
    timestamp: datetime
    role: str
    confidence: float
    reasoning: str


class QAPairResponse(BaseModel):
    question_message_id: int
    answer_message_id: int
    confidence: float
    topic: str


class DocumentDetailResponse(BaseModel):
    document: DocumentResponse
    messages: list[DocumentMessageResponse]
    qa_pairs: list[QAPairResponse]


# =============================================================================
# FAQs
# =============================================================================


class FAQGenerateRequest(BaseModel):
    document_ids: list[int] = Field(default_factory=list)
    require_approval: bool | None = None
    created_by: str = "api"
    background: bool = Field(default=True, description="Queue a job instead of synthesizing inline")


class FAQReviewRequest(BaseModel):
    decision: Annotated[Literal["approve", "reject"], Lowered]
    reviewer_id: str = Field(..., min_length=1)
    notes: str | None = None


class FAQResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    question: str
    answer: str
    category: str
    status: str
    confidence_score: float
    question_clarity: float
    answer_completeness: float
    context_relevance: float
    created_by: str
    approved_by: str | None = None
    approved_at: datetime | None = None
    review_notes: str | None = None
    created_at: datetime | None = None


class FAQSourceResponse(BaseModel):
    document_id: int
    message_id: int
    external_id: str
    contribution: str
    author: str
    text: str
    timestamp: datetime


class DuplicateReviewResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    question: str
    answer: str
    category: str
    confidence_score: float
    matched_faq_id: int
    similarity_score: float
    document_id: int
    status: str
    resolution: str | None = None
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    created_at: datetime | None = None


class DuplicateResolveRequest(BaseModel):
    action: Annotated[Literal["create", "merge", "dismiss"], Lowered]
    reviewer_id: str = Field(..., min_length=1)


# =============================================================================
# Rules
# =============================================================================


class RuleCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    description: str = ""
    enabled: bool = True
    trigger_type: Annotated[TriggerType, Lowered]
    schedule: str | None = Field(default=None, description="Crontab expression (UTC)")
    event_type: Annotated[RuleEventType | None, Lowered] = None
    action_type: Annotated[ActionType, Lowered]
    action_parameters: dict[str, Any] = Field(default_factory=dict)
    created_by: str = "api"

    model_config = {"json_schema_extra": {
        "example": {
            "name": "nightly-faqs",
            "trigger_type": "schedule",
            "schedule": "0 2 * * *",
            "action_type": "faq",
        }
    }}


class RuleUpdateRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    description: str | None = None
    enabled: bool | None = None
    trigger_type: Annotated[TriggerType | None, Lowered] = None
    schedule: str | None = None
    event_type: Annotated[RuleEventType | None, Lowered] = None
    action_type: Annotated[ActionType | None, Lowered] = None
    action_parameters: dict[str, Any] | None = None


class RuleResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: str
    enabled: bool
    trigger_type: str
    schedule: str | None = None
    event_type: str | None = None
    action_type: str
    action_parameters: dict[str, Any] = Field(default_factory=dict)
    run_count: int
    success_count: int
    failure_count: int
    avg_execution_seconds: float
    last_run_at: datetime | None = None
    next_run_at: datetime | None = None
    created_by: str
    created_at: datetime | None = None

    @field_validator("action_parameters", mode="before")
    @classmethod
    def parse_parameters(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value or "{}")
        return value


class RuleRunResponse(BaseModel):
    rule_id: int
    job_id: str
