"""FAQ review, duplicate-review resolution and reporting."""

import logging
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.db.models import FAQ, DocumentMessage, FAQDuplicateReview, FAQSource, Message, utcnow
from knowledge_pipeline.exceptions import ConflictError, NotFoundError, ValidationError
from knowledge_pipeline.faqs.models import (
    ConfidenceFactors,
    DuplicateResolution,
    DuplicateReviewStatus,
    FAQCandidate,
    FAQStatus,
    ReviewDecision,
)
from knowledge_pipeline.faqs.scoring import score_candidate
from knowledge_pipeline.faqs.similarity import SimilarityIndex
from knowledge_pipeline.faqs.store import add_sources, new_faq

logger = logging.getLogger(__name__)


class FAQReviewService:
    """Human decisions on FAQs.

    Approval and rejection are terminal. The transition is a conditional
    update on PENDING, so two reviewers racing on one FAQ cannot both win.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        similarity_index: SimilarityIndex | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.similarity_index = similarity_index

    async def review_faq(
        self,
        faq_id: int,
        decision: ReviewDecision | str,
        reviewer_id: str,
        notes: str | None = None,
    ) -> FAQ:
        """Approve or reject a PENDING FAQ.

        Raises:
            ValidationError: Missing reviewer or unknown decision
            NotFoundError: FAQ does not exist
            ConflictError: FAQ was already reviewed
        """
        if not reviewer_id or not reviewer_id.strip():
            raise ValidationError("A reviewer id is required")
        try:
            decision = ReviewDecision(decision)
        except ValueError as e:
            raise ValidationError(f"Unknown review decision: {decision!r}") from e

        new_status = FAQStatus.APPROVED if decision == ReviewDecision.APPROVE else FAQStatus.REJECTED
        now = utcnow()

        async with self.session_maker() as session:
            updated = await session.execute(
                update(FAQ)
                .where(FAQ.id == faq_id, FAQ.status == FAQStatus.PENDING.value)
                .values(
                    status=new_status.value,
                    approved_by=reviewer_id,
                    approved_at=now,
                    review_notes=notes,
                    updated_at=now,
                )
            )
            await session.commit()

            faq = await session.get(FAQ, faq_id, populate_existing=True)
            if faq is None:
                raise NotFoundError(f"FAQ {faq_id} not found")
            if updated.rowcount == 0:
                raise ConflictError(f"FAQ {faq_id} was already reviewed ({faq.status})")

        logger.info(f"FAQ {faq_id} {new_status.value} by {reviewer_id}")
        if self.similarity_index is not None:
            try:
                if new_status == FAQStatus.REJECTED:
                    await self.similarity_index.remove_faq(faq_id)
                else:
                    await self.similarity_index.index_faq(faq)
            except Exception as e:
                logger.warning(f"Failed to refresh index entry for FAQ {faq_id}: {e}")
        return faq

    async def get_faq(self, faq_id: int) -> FAQ:
        async with self.session_maker() as session:
            faq = await session.get(FAQ, faq_id)
        if faq is None:
            raise NotFoundError(f"FAQ {faq_id} not found")
        return faq

    async def list_faqs(
        self,
        status: str | None = None,
        category: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[FAQ]:
        query = select(FAQ).order_by(FAQ.created_at.desc(), FAQ.id.desc())
        if status:
            query = query.where(FAQ.status == status)
        if category:
            query = query.where(FAQ.category == category)
        async with self.session_maker() as session:
            result = await session.execute(query.limit(limit).offset(offset))
            return list(result.scalars())

    async def get_faq_sources(self, faq_id: int) -> list[dict[str, Any]]:
        """The messages an FAQ was derived from, with their documents."""
        async with self.session_maker() as session:
            if await session.get(FAQ, faq_id) is None:
                raise NotFoundError(f"FAQ {faq_id} not found")
            rows = await session.execute(
                select(FAQSource, Message)
                .join(Message, Message.id == FAQSource.message_id)
                .where(FAQSource.faq_id == faq_id)
                .order_by(FAQSource.document_id, Message.timestamp)
            )
            return [
                {
                    "document_id": source.document_id,
                    "message_id": message.id,
                    "external_id": message.external_id,
                    "contribution": source.contribution,
                    "author": message.author,
                    "text": message.text,
                    "timestamp": message.timestamp,
                }
                for source, message in rows.all()
            ]

    async def get_faq_stats(self) -> dict[str, Any]:
        async with self.session_maker() as session:
            by_status = {status.value: 0 for status in FAQStatus}
            for status, count in (
                await session.execute(select(FAQ.status, func.count()).group_by(FAQ.status))
            ).all():
                by_status[status] = count
            by_category = dict(
                (await session.execute(select(FAQ.category, func.count()).group_by(FAQ.category))).all()
            )
            average = await session.scalar(select(func.avg(FAQ.confidence_score)))
            open_reviews = await session.scalar(
                select(func.count(FAQDuplicateReview.id)).where(
                    FAQDuplicateReview.status == DuplicateReviewStatus.OPEN.value
                )
            )
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_category": by_category,
            "average_confidence": round(average or 0.0, 3),
            "pending_review": by_status[FAQStatus.PENDING.value],
            "open_duplicate_reviews": open_reviews or 0,
        }

    async def list_duplicate_reviews(
        self, status: str | None = DuplicateReviewStatus.OPEN.value
    ) -> list[FAQDuplicateReview]:
        query = select(FAQDuplicateReview).order_by(FAQDuplicateReview.created_at, FAQDuplicateReview.id)
        if status:
            query = query.where(FAQDuplicateReview.status == status)
        async with self.session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars())

    async def resolve_duplicate_review(
        self,
        review_id: int,
        action: DuplicateResolution | str,
        reviewer_id: str,
    ) -> FAQDuplicateReview:
        """Settle a potential duplicate: create it, merge it or dismiss it.

        A created FAQ starts PENDING like any other; merging only extends the
        matched FAQ's trace.
        """
        if not reviewer_id or not reviewer_id.strip():
            raise ValidationError("A reviewer id is required")
        try:
            action = DuplicateResolution(action)
        except ValueError as e:
            raise ValidationError(f"Unknown resolution: {action!r}") from e

        created: FAQ | None = None
        async with self.session_maker() as session:
            review = await session.get(FAQDuplicateReview, review_id)
            if review is None:
                raise NotFoundError(f"Duplicate review {review_id} not found")
            if review.status != DuplicateReviewStatus.OPEN.value:
                raise ConflictError(f"Duplicate review {review_id} is already resolved")

            if action == DuplicateResolution.CREATE:
                candidate = FAQCandidate(
                    question=review.question,
                    answer=review.answer,
                    category=review.category,
                    document_id=review.document_id,
                    question_message_id=review.question_message_id,
                    answer_message_id=review.answer_message_id,
                )
                factors: ConfidenceFactors = score_candidate(
                    review.question, review.answer, await self._source_roles(session, review)
                )
                created = new_faq(candidate, factors, require_approval=True, created_by=reviewer_id)
                session.add(created)
                await session.flush()
                await add_sources(
                    session, created.id, review.document_id, review.question_message_id, review.answer_message_id
                )
            elif action == DuplicateResolution.MERGE:
                await add_sources(
                    session,
                    review.matched_faq_id,
                    review.document_id,
                    review.question_message_id,
                    review.answer_message_id,
                )

            review.status = DuplicateReviewStatus.RESOLVED.value
            review.resolution = action.value
            review.resolved_by = reviewer_id
            review.resolved_at = utcnow()
            await session.commit()

        logger.info(f"Duplicate review {review_id} resolved as {action.value} by {reviewer_id}")
        if created is not None and self.similarity_index is not None:
            try:
                await self.similarity_index.index_faq(created)
            except Exception as e:
                logger.warning(f"Failed to index FAQ {created.id}: {e}")
        return review

    async def _source_roles(self, session: AsyncSession, review: FAQDuplicateReview) -> list[str]:
        result = await session.execute(
            select(DocumentMessage.role).where(
                DocumentMessage.document_id == review.document_id,
                DocumentMessage.message_id.in_([review.question_message_id, review.answer_message_id]),
            )
        )
        return list(result.scalars())
