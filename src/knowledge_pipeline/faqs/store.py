"""FAQ rows and their source traces."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_pipeline.db.models import FAQ, FAQSource, utcnow
from knowledge_pipeline.faqs.models import ConfidenceFactors, FAQCandidate, FAQStatus, SourceContribution


def new_faq(
    candidate: FAQCandidate,
    factors: ConfidenceFactors,
    require_approval: bool,
    created_by: str,
) -> FAQ:
    faq = FAQ(
        question=candidate.question,
        answer=candidate.answer,
        category=candidate.category,
        status=(FAQStatus.PENDING if require_approval else FAQStatus.APPROVED).value,
        confidence_score=factors.overall,
        question_clarity=factors.question_clarity,
        answer_completeness=factors.answer_completeness,
        context_relevance=factors.context_relevance,
        created_by=created_by,
    )
    if not require_approval:
        faq.approved_by = created_by
        faq.approved_at = utcnow()
    return faq


async def add_sources(
    session: AsyncSession,
    faq_id: int,
    document_id: int,
    question_message_id: int,
    answer_message_id: int,
) -> int:
    """Add the question and answer messages to an FAQ's trace.

    Messages already traced to the FAQ are skipped. Returns the number of rows
    added; the caller commits.
    """
    result = await session.execute(
        select(FAQSource.message_id).where(
            FAQSource.faq_id == faq_id,
            FAQSource.message_id.in_([question_message_id, answer_message_id]),
        )
    )
    present = set(result.scalars())

    added = 0
    for message_id, contribution in (
        (question_message_id, SourceContribution.QUESTION),
        (answer_message_id, SourceContribution.ANSWER),
    ):
        if message_id in present:
            continue
        session.add(
            FAQSource(
                faq_id=faq_id,
                document_id=document_id,
                message_id=message_id,
                contribution=contribution.value,
            )
        )
        added += 1
    return added


async def find_traced_faq(
    session: AsyncSession,
    document_id: int,
    question_message_id: int,
    answer_message_id: int,
) -> int | None:
    """FAQ whose trace already holds both messages of this pair from this document."""
    result = await session.execute(
        select(FAQSource.faq_id)
        .where(
            FAQSource.document_id == document_id,
            FAQSource.message_id.in_([question_message_id, answer_message_id]),
        )
        .group_by(FAQSource.faq_id)
        .having(func.count(func.distinct(FAQSource.message_id)) == 2)
        .order_by(FAQSource.faq_id)
        .limit(1)
    )
    return result.scalar()
