"""Mapping of pipeline errors onto HTTP responses."""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from knowledge_pipeline.exceptions import (
    ConflictError,
    NotFoundError,
    PermanentFailure,
    PipelineError,
    TransientError,
    ValidationError,
)

logger = logging.getLogger(__name__)

# Most specific first
STATUS_CODES: list[tuple[type[PipelineError], int]] = [
    (NotFoundError, 404),
    (ValidationError, 400),
    (ConflictError, 409),
    (TransientError, 503),
    (PermanentFailure, 500),
]


def status_for(error: PipelineError) -> int:
    for error_class, status_code in STATUS_CODES:
        if isinstance(error, error_class):
            return status_code
    return 500


async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    headers = {}
    if isinstance(exc, TransientError) and exc.retry_after:
        headers["Retry-After"] = str(int(exc.retry_after))
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error_type": exc.error_type},
        headers=headers or None,
    )


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(PipelineError, pipeline_error_handler)
