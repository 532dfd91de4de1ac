"""Assembly of messages into documents."""

import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Sequence

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from knowledge_pipeline.analysis.analyzer import ConversationAnalyzer
from knowledge_pipeline.analysis.models import ConversationAnalysis, ConversationMessage
from knowledge_pipeline.config import settings
from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.db.models import Document, DocumentMessage, DocumentQAPair, Message, utcnow
from knowledge_pipeline.documents.metadata import DocumentMetadataGenerator
from knowledge_pipeline.documents.models import (
    DEFAULT_CATEGORY,
    AssemblyOptions,
    BatchAssemblyResult,
    DocumentMetadata,
    DocumentStatus,
)
from knowledge_pipeline.exceptions import (
    ConflictError,
    JobCancelledError,
    NotFoundError,
    PipelineError,
    QuotaExceededError,
    TransientError,
    ValidationError,
    classify_error,
)

logger = logging.getLogger(__name__)

Checkpoint = Callable[[], Awaitable[None]]
ProgressCallback = Callable[[int], Awaitable[None]]

BASE_CONFIDENCE = 0.7
MULTI_MESSAGE_BONUS = 0.1


def _should_retry(error: BaseException) -> bool:
    """Transient failures are retried; quota exhaustion is not."""
    if not isinstance(error, Exception):
        return False
    classified = classify_error(error)
    return isinstance(classified, TransientError) and not isinstance(classified, QuotaExceededError)


def document_confidence(analysis: ConversationAnalysis, message_count: int) -> float:
    """Mean of the analysis confidence and a size-based base score, within [0, 1]."""
    base = BASE_CONFIDENCE + (MULTI_MESSAGE_BONUS if message_count >= 3 else 0.0)
    return min(1.0, max(0.0, (analysis.overall_confidence + base) / 2))


class DocumentAssembler:
    """Groups messages into documents with per-message roles.

    A message can belong to one document only. The "not yet assigned" check
    runs when the request is validated and again in the transaction that writes
    the memberships, so two overlapping assemblies cannot both succeed.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        analyzer: ConversationAnalyzer | None = None,
        metadata_generator: DocumentMetadataGenerator | None = None,
        max_attempts: int | None = None,
        retry_wait=None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.analyzer = analyzer or ConversationAnalyzer()
        self.metadata_generator = metadata_generator or DocumentMetadataGenerator(
            max_title_length=settings.MAX_TITLE_LENGTH
        )
        self.max_attempts = max_attempts or settings.ASSEMBLY_MAX_ATTEMPTS
        self.retry_wait = retry_wait or wait_exponential(multiplier=1, min=1, max=10)

    async def assemble(
        self,
        message_ids: Sequence[int],
        options: AssemblyOptions | None = None,
        checkpoint: Checkpoint | None = None,
    ) -> Document:
        """Create a COMPLETE document from the given messages.

        Raises:
            ValidationError: Empty or oversized request, title too long, unknown
                or already assigned messages
            ConflictError: Another assembly claimed a message first
            TransientError / PermanentFailure: Analysis or generation failed
                after the retry limit (the document is left FAILED)
        """
        options = options or AssemblyOptions()
        ids = list(dict.fromkeys(message_ids))
        self._validate_request(ids, options)

        async with self.session_maker() as session:
            messages = await self._load_messages(session, ids)
            assigned = await self._assigned_ids(session, ids)
            if assigned:
                raise ValidationError(f"Messages already belong to a document: {sorted(assigned)}")

            document = Document(
                title=options.title or "",
                description=options.description or "",
                category=options.category or DEFAULT_CATEGORY,
                status=DocumentStatus.CREATING.value,
                created_by=options.created_by,
            )
            session.add(document)
            await session.commit()
            document_id = document.id

        conversation = sorted(
            (ConversationMessage.from_record(m) for m in messages), key=lambda m: (m.timestamp, m.id)
        )
        logger.info(f"Assembling document {document_id} from {len(conversation)} messages")

        try:
            analysis, metadata = await self._analyze_with_retry(conversation, options)
            if checkpoint is not None:
                await checkpoint()
            return await self._commit(document_id, conversation, analysis, metadata, options)
        except ConflictError:
            raise
        except JobCancelledError:
            await self._mark_failed(document_id, "Assembly cancelled")
            raise
        except Exception as e:
            classified = classify_error(e)
            logger.error(f"Assembly of document {document_id} failed: {classified}")
            await self._mark_failed(document_id, str(classified))
            if classified is e:
                raise
            raise classified from e

    def _validate_request(self, ids: list[int], options: AssemblyOptions) -> None:
        if not ids:
            raise ValidationError("At least one message id is required")
        if len(ids) > settings.MAX_MESSAGES_PER_DOCUMENT:
            raise ValidationError(
                f"A document holds at most {settings.MAX_MESSAGES_PER_DOCUMENT} messages, got {len(ids)}"
            )
        if options.title and len(options.title) > settings.MAX_TITLE_LENGTH:
            raise ValidationError(f"Title exceeds {settings.MAX_TITLE_LENGTH} characters")

    async def _load_messages(self, session: AsyncSession, ids: list[int]) -> list[Message]:
        result = await session.execute(select(Message).where(Message.id.in_(ids)))
        messages = list(result.scalars())
        missing = set(ids) - {m.id for m in messages}
        if missing:
            raise ValidationError(f"Unknown message ids: {sorted(missing)}")
        return messages

    async def _assigned_ids(self, session: AsyncSession, ids: list[int]) -> set[int]:
        result = await session.execute(
            select(DocumentMessage.message_id).where(DocumentMessage.message_id.in_(ids))
        )
        return set(result.scalars())

    async def _analyze_with_retry(
        self, conversation: list[ConversationMessage], options: AssemblyOptions
    ) -> tuple[ConversationAnalysis, DocumentMetadata | None]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self.retry_wait,
            retry=retry_if_exception(_should_retry),
            reraise=True,
        ):
            with attempt:
                analysis = await self.analyzer.analyze(conversation)
                metadata = None
                if not options.title or not options.category:
                    metadata = await self.metadata_generator.generate(conversation)
        return analysis, metadata

    async def _commit(
        self,
        document_id: int,
        conversation: list[ConversationMessage],
        analysis: ConversationAnalysis,
        metadata: DocumentMetadata | None,
        options: AssemblyOptions,
    ) -> Document:
        ids = [m.id for m in conversation]
        async with self.session_maker() as session:
            assigned = await self._assigned_ids(session, ids)
            if assigned:
                await self._mark_failed(document_id, f"Messages claimed concurrently: {sorted(assigned)}")
                raise ConflictError(f"Messages already belong to another document: {sorted(assigned)}")

            document = await session.get(Document, document_id)
            if metadata is not None:
                document.title = options.title or metadata.title
                document.category = options.category or metadata.category
                document.description = options.description or metadata.description

            for message in conversation:
                assignment = analysis.roles[message.id]
                session.add(
                    DocumentMessage(
                        document_id=document_id,
                        message_id=message.id,
                        role=assignment.role.value,
                        confidence=assignment.confidence,
                        reasoning=assignment.reasoning,
                    )
                )
            for pair in analysis.qa_pairs:
                session.add(
                    DocumentQAPair(
                        document_id=document_id,
                        question_message_id=pair.question_id,
                        answer_message_id=pair.answer_id,
                        confidence=pair.confidence,
                        topic=pair.topic,
                    )
                )

            document.confidence_score = document_confidence(analysis, len(conversation))
            document.status = DocumentStatus.COMPLETE.value
            document.completed_at = utcnow()
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                await self._mark_failed(document_id, "Messages claimed concurrently")
                raise ConflictError("Messages already belong to another document") from e

        logger.info(
            f"Document {document_id} complete: '{document.title}' with "
            f"{len(conversation)} messages and {len(analysis.qa_pairs)} Q&A pairs"
        )
        return document

    async def _mark_failed(self, document_id: int, error: str) -> None:
        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None or document.status != DocumentStatus.CREATING.value:
                return
            document.status = DocumentStatus.FAILED.value
            document.error_message = error
            document.updated_at = utcnow()
            await session.commit()

    async def assemble_all_unprocessed(
        self,
        batch_size: int | None = None,
        options: AssemblyOptions | None = None,
        checkpoint: Checkpoint | None = None,
        progress: ProgressCallback | None = None,
    ) -> BatchAssemblyResult:
        """Assemble every message that has no document yet.

        Messages are grouped by channel, ordered chronologically and cut into
        batches. Failed batches are reported and skipped; a quota error stops
        the run with the documents created so far kept.
        """
        batch_size = batch_size or settings.DEFAULT_BATCH_SIZE
        if batch_size < 1 or batch_size > settings.MAX_MESSAGES_PER_DOCUMENT:
            raise ValidationError(
                f"Batch size must be between 1 and {settings.MAX_MESSAGES_PER_DOCUMENT}"
            )
        options = options or AssemblyOptions()

        batches = await self._unprocessed_batches(batch_size)
        result = BatchAssemblyResult()
        logger.info(f"Assembling {len(batches)} batches of unprocessed messages")

        for index, (channel, batch) in enumerate(batches, start=1):
            if checkpoint is not None:
                await checkpoint()
            try:
                document = await self.assemble(batch, replace(options), checkpoint=checkpoint)
            except QuotaExceededError as e:
                result.errors.append(f"Batch {index} ({channel}): {e}")
                result.halted = True
                logger.warning(f"Quota exhausted, stopping after {index - 1} of {len(batches)} batches")
                break
            except JobCancelledError:
                raise
            except PipelineError as e:
                result.errors.append(f"Batch {index} ({channel}): {e}")
            else:
                result.documents_created += 1
                result.messages_processed += len(batch)
                result.document_ids.append(document.id)

            if progress is not None:
                await progress(int(index * 100 / len(batches)))

        return result

    async def _unprocessed_batches(self, batch_size: int) -> list[tuple[str, list[int]]]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(Message.id, Message.channel)
                .outerjoin(DocumentMessage, DocumentMessage.message_id == Message.id)
                .where(DocumentMessage.id.is_(None))
                .order_by(Message.channel, Message.timestamp, Message.id)
            )
            rows = result.all()

        by_channel: dict[str, list[int]] = {}
        for message_id, channel in rows:
            by_channel.setdefault(channel, []).append(message_id)

        return [
            (channel, ids[start : start + batch_size])
            for channel, ids in by_channel.items()
            for start in range(0, len(ids), batch_size)
        ]

    # -------------------------------------------------------------------------
    # Queries and metadata edits
    # -------------------------------------------------------------------------

    async def get_document(self, document_id: int) -> Document:
        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        return document

    async def get_document_detail(self, document_id: int) -> dict[str, Any]:
        """Document with its messages (in order, with roles) and Q&A pairs."""
        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise NotFoundError(f"Document {document_id} not found")

            rows = await session.execute(
                select(Message, DocumentMessage)
                .join(DocumentMessage, DocumentMessage.message_id == Message.id)
                .where(DocumentMessage.document_id == document_id)
                .order_by(Message.timestamp, Message.id)
            )
            messages = [
                {
                    "message_id": message.id,
                    "external_id": message.external_id,
                    "author": message.author,
                    "text": message.text,
                    "timestamp": message.timestamp,
                    "role": link.role,
                    "confidence": link.confidence,
                    "reasoning": link.reasoning,
                }
                for message, link in rows.all()
            ]
            pairs = await session.execute(
                select(DocumentQAPair).where(DocumentQAPair.document_id == document_id)
            )
            qa_pairs = [
                {
                    "question_message_id": pair.question_message_id,
                    "answer_message_id": pair.answer_message_id,
                    "confidence": pair.confidence,
                    "topic": pair.topic,
                }
                for pair in pairs.scalars()
            ]

        return {"document": document, "messages": messages, "qa_pairs": qa_pairs}

    async def list_documents(
        self,
        status: str | None = None,
        category: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Document]:
        query = select(Document).order_by(Document.created_at.desc(), Document.id.desc())
        if status:
            query = query.where(Document.status == status)
        if category:
            query = query.where(Document.category == category)
        async with self.session_maker() as session:
            result = await session.execute(query.limit(limit).offset(offset))
            return list(result.scalars())

    async def get_document_stats(self) -> dict[str, Any]:
        async with self.session_maker() as session:
            by_status = {status.value: 0 for status in DocumentStatus}
            for status, count in (
                await session.execute(select(Document.status, func.count()).group_by(Document.status))
            ).all():
                by_status[status] = count
            by_category = dict(
                (
                    await session.execute(
                        select(Document.category, func.count())
                        .where(Document.status == DocumentStatus.COMPLETE.value)
                        .group_by(Document.category)
                    )
                ).all()
            )
            average = await session.scalar(
                select(func.avg(Document.confidence_score)).where(
                    Document.status == DocumentStatus.COMPLETE.value
                )
            )
            assigned = await session.scalar(select(func.count(DocumentMessage.id)))
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_category": by_category,
            "average_confidence": round(average or 0.0, 3),
            "messages_assigned": assigned or 0,
        }

    async def update_document_metadata(
        self,
        document_id: int,
        title: str | None = None,
        description: str | None = None,
        category: str | None = None,
    ) -> Document:
        """Edit the fields that stay mutable after completion."""
        if title is not None and not title.strip():
            raise ValidationError("Title cannot be empty")
        if title is not None and len(title) > settings.MAX_TITLE_LENGTH:
            raise ValidationError(f"Title exceeds {settings.MAX_TITLE_LENGTH} characters")

        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise NotFoundError(f"Document {document_id} not found")
            if title is not None:
                document.title = title.strip()
            if description is not None:
                document.description = description
            if category is not None:
                document.category = category.strip().lower() or DEFAULT_CATEGORY
            document.updated_at = utcnow()
            await session.commit()
        return document

    async def enhance_document(self, document_id: int, checkpoint: Checkpoint | None = None) -> Document:
        """Regenerate title, description and category of a COMPLETE document.

        Roles and memberships are not touched. When generation falls back to
        the basic summary the existing metadata is kept.
        """
        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise NotFoundError(f"Document {document_id} not found")
            if document.status != DocumentStatus.COMPLETE.value:
                raise ValidationError(f"Document {document_id} is {document.status}, not complete")
            result = await session.execute(
                select(Message)
                .join(DocumentMessage, DocumentMessage.message_id == Message.id)
                .where(DocumentMessage.document_id == document_id)
                .order_by(Message.timestamp, Message.id)
            )
            conversation = [ConversationMessage.from_record(m) for m in result.scalars()]

        try:
            metadata = await self.metadata_generator.generate(conversation)
        except Exception as e:
            raise classify_error(e) from e

        if not metadata.generated:
            logger.info(f"No generated metadata for document {document_id}, keeping current values")
            return document

        if checkpoint is not None:
            await checkpoint()
        return await self.update_document_metadata(
            document_id,
            title=metadata.title,
            description=metadata.description,
            category=metadata.category,
        )
