"""Inbound platform events (Slack Events API)."""

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from slack_sdk.signature import SignatureVerifier

from knowledge_pipeline.api.dependencies import get_services
from knowledge_pipeline.api.schemas import EventResponse
from knowledge_pipeline.config import settings
from knowledge_pipeline.ingestion.slack_events import normalize_slack_event
from knowledge_pipeline.services import PipelineServices

logger = logging.getLogger(__name__)

router = APIRouter(tags=["events"])


def _verify_signature(body: bytes, headers) -> None:
    if not settings.SLACK_SIGNING_SECRET:
        return
    verifier = SignatureVerifier(settings.SLACK_SIGNING_SECRET)
    if not verifier.is_valid_request(body, dict(headers)):
        logger.warning("Rejected event with an invalid Slack signature")
        raise HTTPException(status_code=401, detail="Invalid request signature")


@router.post("/events", response_model=None)
async def receive_event(
    request: Request,
    services: PipelineServices = Depends(get_services),
) -> dict[str, Any]:
    """Slack Events API endpoint.

    Answers 200 for every authentic event, including ones whose processing
    failed (the failure is kept on the event record for retry), so the
    platform does not redeliver it.
    """
    raw_body = await request.body()
    _verify_signature(raw_body, request.headers)

    try:
        body = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as e:
        raise HTTPException(status_code=400, detail="Body is not valid JSON") from e

    if body.get("type") == "url_verification":
        return {"challenge": body.get("challenge", "")}

    event = normalize_slack_event(body)
    if event is None:
        return EventResponse(status="ignored", record_id=None, message="Not an event callback").model_dump()

    result = await services.guard.ingest(event.external_id, event.kind, event.payload, event.channel)
    return EventResponse(
        status=result.status.value, record_id=result.record_id, message=result.message
    ).model_dump()
