"""FastAPI application entry point."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from knowledge_pipeline import __version__
from knowledge_pipeline.api.admin import router as admin_router
from knowledge_pipeline.api.documents import router as documents_router
from knowledge_pipeline.api.errors import register_error_handlers
from knowledge_pipeline.api.events import router as events_router
from knowledge_pipeline.api.faqs import router as faqs_router
from knowledge_pipeline.api.health import router as health_router
from knowledge_pipeline.api.jobs import router as jobs_router
from knowledge_pipeline.api.rules import router as rules_router
from knowledge_pipeline.config import settings
from knowledge_pipeline.db.database import init_db
from knowledge_pipeline.services import PipelineServices, build_services

logger = logging.getLogger(__name__)


def create_app(services: PipelineServices | None = None, run_worker: bool | None = None) -> FastAPI:
    """Build the application.

    Without `services` the lifespan creates the tables and builds the service
    graph from settings.
    """
    run_worker = settings.API_RUN_WORKER if run_worker is None else run_worker

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is None:
            await init_db()
            app.state.services = await build_services()
        else:
            app.state.services = services

        worker = None
        if run_worker:
            worker = asyncio.create_task(app.state.services.orchestrator.run_forever())
            logger.info("Job orchestrator running in the API process")
        try:
            yield
        finally:
            if worker is not None:
                await app.state.services.orchestrator.shutdown()
                await worker

    app = FastAPI(
        title=settings.APP_NAME,
        description="Turns chat conversations into documents and reviewed FAQs",
        version=__version__,
        lifespan=lifespan,
    )
    if services is not None:
        app.state.services = services

    # CORS Configuration
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(health_router)
    app.include_router(events_router)
    app.include_router(jobs_router)
    app.include_router(documents_router)
    app.include_router(faqs_router)
    app.include_router(rules_router)
    app.include_router(admin_router)

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint with basic application info."""
        return {"name": settings.APP_NAME, "version": __version__, "docs": "/docs"}

    return app


app = create_app()
