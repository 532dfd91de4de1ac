"""FastAPI dependencies."""

from fastapi import Request

from knowledge_pipeline.services import PipelineServices


def get_services(request: Request) -> PipelineServices:
    """Services built by the application lifespan."""
    return request.app.state.services
