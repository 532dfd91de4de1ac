"""Job handlers: one coroutine per job type."""

import logging
from typing import Any, Awaitable, Callable

from knowledge_pipeline.config import settings
from knowledge_pipeline.documents.assembler import DocumentAssembler
from knowledge_pipeline.documents.models import AssemblyOptions
from knowledge_pipeline.exceptions import QuotaExceededError, ValidationError
from knowledge_pipeline.faqs.models import SynthesisOptions
from knowledge_pipeline.faqs.synthesizer import FAQSynthesizer
from knowledge_pipeline.ingestion.channel_pull import ChannelPuller
from knowledge_pipeline.ingestion.guard import EventIngestionGuard
from knowledge_pipeline.ingestion.models import ChannelPullOptions
from knowledge_pipeline.jobs.context import JobContext
from knowledge_pipeline.jobs.models import JobType
from knowledge_pipeline.jobs.store import JobStore

logger = logging.getLogger(__name__)

JobHandler = Callable[[JobContext, dict[str, Any]], Awaitable[dict[str, Any]]]


def _int_list(payload: dict[str, Any], key: str) -> list[int]:
    values = payload.get(key) or []
    if not isinstance(values, list):
        raise ValidationError(f"{key} must be a list of ids")
    try:
        return [int(v) for v in values]
    except (TypeError, ValueError) as e:
        raise ValidationError(f"{key} must be a list of ids") from e


def _assembly_options(payload: dict[str, Any]) -> AssemblyOptions:
    return AssemblyOptions(
        title=payload.get("title"),
        description=payload.get("description"),
        category=payload.get("category"),
        created_by=payload.get("created_by", "system"),
    )


def _synthesis_options(payload: dict[str, Any]) -> SynthesisOptions:
    return SynthesisOptions(
        require_approval=payload.get("require_approval"),
        created_by=payload.get("created_by", "system"),
    )


class JobHandlers:
    """Binds job types to the pipeline services."""

    def __init__(
        self,
        assembler: DocumentAssembler,
        synthesizer: FAQSynthesizer,
        guard: EventIngestionGuard,
        store: JobStore,
        puller: ChannelPuller | None = None,
    ):
        self.assembler = assembler
        self.synthesizer = synthesizer
        self.guard = guard
        self.store = store
        self.puller = puller or ChannelPuller(guard)

    def as_map(self) -> dict[JobType, JobHandler]:
        return {
            JobType.DOCUMENT_CREATION: self.document_creation,
            JobType.FAQ_GENERATION: self.faq_generation,
            JobType.DOCUMENT_ENHANCEMENT: self.document_enhancement,
            JobType.BATCH_PROCESSING: self.batch_processing,
            JobType.CLEANUP: self.cleanup,
            JobType.CHANNEL_PULL: self.channel_pull,
        }

    async def document_creation(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Assemble the listed messages, or every unprocessed message."""
        message_ids = _int_list(payload, "message_ids")
        if message_ids:
            document = await self.assembler.assemble(
                message_ids, _assembly_options(payload), checkpoint=ctx.checkpoint
            )
            return {
                "documents_created": 1,
                "messages_processed": len(message_ids),
                "document_ids": [document.id],
                "errors": [],
            }

        pending = _int_list(payload, "pending_document_ids")
        result = await self.assembler.assemble_all_unprocessed(
            batch_size=payload.get("batch_size"),
            options=_assembly_options(payload),
            checkpoint=ctx.checkpoint,
            progress=ctx.report_progress,
        )
        document_ids = pending + [i for i in result.document_ids if i not in pending]
        if result.halted:
            if result.document_ids:
                await ctx.save_payload(pending_document_ids=document_ids)
            raise QuotaExceededError(
                f"Quota exhausted after {result.documents_created} documents: {result.errors[-1]}"
            )
        summary = result.to_dict()
        summary.update(documents_created=len(document_ids), document_ids=document_ids)
        return summary

    async def faq_generation(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Synthesize FAQs for the listed documents, or for documents without any."""
        document_ids = _int_list(payload, "document_ids")
        if payload.get("document_id") is not None:
            document_ids.append(int(payload["document_id"]))
        if not document_ids:
            document_ids = await self.synthesizer.documents_without_faqs(limit=payload.get("limit", 100))

        result = await self.synthesizer.synthesize_many(
            document_ids,
            _synthesis_options(payload),
            checkpoint=ctx.checkpoint,
            progress=ctx.report_progress,
        )
        if result.halted:
            raise QuotaExceededError(
                f"Quota exhausted after {result.documents_processed} documents: {result.errors[-1]}"
            )
        return result.to_dict()

    async def document_enhancement(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        document_id = payload.get("document_id")
        if document_id is None:
            raise ValidationError("document_id is required")
        document = await self.assembler.enhance_document(int(document_id), checkpoint=ctx.checkpoint)
        return {
            "document_id": document.id,
            "title": document.title,
            "category": document.category,
        }

    async def batch_processing(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Assemble unprocessed messages, then synthesize FAQs for the new documents.

        Documents assembled by an earlier attempt of this job are kept in the
        payload as `pending_document_ids`, so a retry after a quota halt still
        synthesizes them even though their messages are no longer unassigned.
        """
        pending = _int_list(payload, "pending_document_ids")
        assembled = await self.assembler.assemble_all_unprocessed(
            batch_size=payload.get("batch_size"),
            options=_assembly_options(payload),
            checkpoint=ctx.checkpoint,
            progress=ctx.scaled(0, 50),
        )
        document_ids = pending + [i for i in assembled.document_ids if i not in pending]
        if assembled.document_ids:
            await ctx.save_payload(pending_document_ids=document_ids)
        if assembled.halted:
            raise QuotaExceededError(f"Quota exhausted during assembly: {assembled.errors[-1]}")
        await ctx.report_progress(50)

        synthesized = await self.synthesizer.synthesize_many(
            document_ids,
            _synthesis_options(payload),
            checkpoint=ctx.checkpoint,
            progress=ctx.scaled(50, 100),
        )
        if synthesized.halted:
            raise QuotaExceededError(f"Quota exhausted during FAQ synthesis: {synthesized.errors[-1]}")

        return {
            "documents_created": len(document_ids),
            "document_ids": document_ids,
            "assembly": assembled.to_dict(),
            "faqs": synthesized.to_dict(),
        }

    async def cleanup(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Prune finished jobs and processed events past the retention period."""
        days = int(payload.get("retention_days", settings.CLEANUP_RETENTION_DAYS))
        if days < 1:
            raise ValidationError("retention_days must be at least 1")
        jobs_pruned = await self.store.prune_jobs(days)
        await ctx.report_progress(50)
        events_pruned = await self.guard.prune_events(days)
        logger.info(f"Cleanup removed {jobs_pruned} jobs and {events_pruned} events")
        return {"jobs_pruned": jobs_pruned, "events_pruned": events_pruned, "retention_days": days}

    async def channel_pull(self, ctx: JobContext, payload: dict[str, Any]) -> dict[str, Any]:
        """Backfill a Slack channel's history. Safe to re-run over the same window."""
        channel_id = payload.get("channel_id")
        if not channel_id:
            raise ValidationError("channel_id is required")
        include_threads = payload.get("include_threads")
        options = ChannelPullOptions(
            channel_id=str(channel_id),
            oldest=payload.get("oldest"),
            latest=payload.get("latest"),
            include_threads=None if include_threads is None else bool(include_threads),
        )
        result = await self.puller.pull(options, checkpoint=ctx.checkpoint, progress=ctx.report_progress)
        return result.to_dict()
