"""Tests for FAQ review and duplicate-review resolution."""

import asyncio

import pytest
from sqlalchemy import func, select

from knowledge_pipeline.db.models import FAQ, FAQSource
from knowledge_pipeline.exceptions import ConflictError, NotFoundError, ValidationError
from knowledge_pipeline.faqs import FAQReviewService, FAQStatus, FAQSynthesizer


@pytest.fixture
def review(session_maker, similarity_index):
    return FAQReviewService(session_maker, similarity_index=similarity_index)


@pytest.fixture
def synthesizer(session_maker, similarity_index):
    return FAQSynthesizer(session_maker, similarity_index=similarity_index, delay_seconds=0)


@pytest.fixture
def pending_faq(synthesizer, support_document):
    """Synthesize SUPPORT_THREAD and return the PENDING FAQ id."""

    async def _make(channel: str = "C-support") -> int:
        document_id, _ = await support_document(channel=channel)
        [faq_id] = (await synthesizer.synthesize(document_id)).faq_ids
        return faq_id

    return _make


@pytest.fixture
def duplicate_review(review, synthesizer, support_document, similarity_index, pending_faq):
    """An open duplicate review of a second document against the first one's FAQ.

    Returns (review, matched_faq_id).
    """

    async def _make():
        faq_id = await pending_faq("C-one")
        similarity_index.scores[faq_id] = 0.8
        document_id, _ = await support_document(channel="C-two")
        await synthesizer.synthesize(document_id)
        [open_review] = await review.list_duplicate_reviews()
        return open_review, faq_id

    return _make


async def source_count(session_maker, faq_id: int) -> int:
    async with session_maker() as session:
        return await session.scalar(select(func.count()).select_from(FAQSource).where(FAQSource.faq_id == faq_id))


class TestReviewFAQ:
    """Tests for FAQReviewService.review_faq."""

    @pytest.mark.asyncio
    async def test_approve(self, review, pending_faq, similarity_index):
        faq_id = await pending_faq()
        similarity_index.entries.clear()

        faq = await review.review_faq(faq_id, "approve", "reviewer-1", notes="Looks right")

        assert faq.status == FAQStatus.APPROVED.value
        assert faq.approved_by == "reviewer-1"
        assert faq.approved_at is not None
        assert faq.review_notes == "Looks right"
        assert faq_id in similarity_index.entries

    @pytest.mark.asyncio
    async def test_reject_removes_from_index(self, review, pending_faq, similarity_index):
        faq_id = await pending_faq()

        faq = await review.review_faq(faq_id, "reject", "reviewer-1")

        assert faq.status == "rejected"
        assert faq_id not in similarity_index.entries

    @pytest.mark.asyncio
    async def test_decisions_are_terminal(self, review, pending_faq):
        """A reviewed FAQ cannot be reviewed again."""
        faq_id = await pending_faq()
        await review.review_faq(faq_id, "approve", "reviewer-1")

        with pytest.raises(ConflictError, match="approved"):
            await review.review_faq(faq_id, "reject", "reviewer-2")

    @pytest.mark.asyncio
    async def test_concurrent_reviews_have_one_winner(self, review, pending_faq, session_maker):
        faq_id = await pending_faq()

        results = await asyncio.gather(
            review.review_faq(faq_id, "approve", "reviewer-1"),
            review.review_faq(faq_id, "reject", "reviewer-2"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, ConflictError) for r in results) == 1
        winner = next(r for r in results if not isinstance(r, Exception))
        async with session_maker() as session:
            faq = await session.get(FAQ, faq_id)
        assert faq.status == winner.status
        assert faq.approved_by == winner.approved_by

    @pytest.mark.asyncio
    async def test_index_failure_does_not_undo_review(self, review, pending_faq, similarity_index):
        faq_id = await pending_faq()
        similarity_index.fail_indexing = True

        faq = await review.review_faq(faq_id, "approve", "reviewer-1")

        assert faq.status == "approved"

    @pytest.mark.asyncio
    async def test_unknown_faq(self, review):
        with pytest.raises(NotFoundError):
            await review.review_faq(404, "approve", "reviewer-1")

    @pytest.mark.parametrize("decision, reviewer", [("maybe", "reviewer-1"), ("approve", "  ")])
    @pytest.mark.asyncio
    async def test_invalid_requests(self, review, pending_faq, decision, reviewer):
        faq_id = await pending_faq()
        with pytest.raises(ValidationError):
            await review.review_faq(faq_id, decision, reviewer)


class TestQueries:
    """Listing, sources and stats."""

    @pytest.mark.asyncio
    async def test_list_and_stats(self, review, pending_faq):
        first = await pending_faq("C-one")
        await review.review_faq(first, "approve", "reviewer-1")

        approved = await review.list_faqs(status="approved")
        stats = await review.get_faq_stats()

        assert [f.id for f in approved] == [first]
        assert stats["total"] == 1
        assert stats["by_status"] == {"pending": 0, "approved": 1, "rejected": 0}
        assert stats["by_category"] == {"accounts": 1}
        assert stats["pending_review"] == 0
        assert stats["open_duplicate_reviews"] == 0

    @pytest.mark.asyncio
    async def test_sources_of_unknown_faq(self, review):
        with pytest.raises(NotFoundError):
            await review.get_faq_sources(404)

    @pytest.mark.asyncio
    async def test_get_faq(self, review, pending_faq):
        faq_id = await pending_faq()
        assert (await review.get_faq(faq_id)).question == "How do I reset my password?"
        with pytest.raises(NotFoundError):
            await review.get_faq(404)


class TestDuplicateReviews:
    """Tests for resolve_duplicate_review."""

    @pytest.mark.asyncio
    async def test_create(self, review, duplicate_review, session_maker, similarity_index):
        """Creating makes a separate PENDING FAQ traced to the candidate's messages."""
        open_review, matched = await duplicate_review()

        resolved = await review.resolve_duplicate_review(open_review.id, "create", "reviewer-1")

        assert resolved.status == "resolved"
        assert resolved.resolution == "create"
        async with session_maker() as session:
            faqs = list((await session.execute(select(FAQ).order_by(FAQ.id))).scalars())
        assert len(faqs) == 2
        created = faqs[1]
        assert created.status == "pending"
        assert created.created_by == "reviewer-1"
        assert created.confidence_score == pytest.approx(2.75 / 3)
        assert await source_count(session_maker, created.id) == 2
        assert created.id in similarity_index.entries

    @pytest.mark.asyncio
    async def test_merge(self, review, duplicate_review, session_maker):
        """Merging extends the matched FAQ's trace and leaves its text alone."""
        open_review, matched = await duplicate_review()

        await review.resolve_duplicate_review(open_review.id, "merge", "reviewer-1")

        assert await source_count(session_maker, matched) == 4
        async with session_maker() as session:
            assert await session.scalar(select(func.count()).select_from(FAQ)) == 1

    @pytest.mark.asyncio
    async def test_dismiss(self, review, duplicate_review, session_maker):
        open_review, matched = await duplicate_review()

        resolved = await review.resolve_duplicate_review(open_review.id, "dismiss", "reviewer-1")

        assert resolved.resolution == "dismiss"
        assert await source_count(session_maker, matched) == 2
        assert await review.list_duplicate_reviews() == []
        assert len(await review.list_duplicate_reviews(status="resolved")) == 1

    @pytest.mark.asyncio
    async def test_resolution_is_final(self, review, duplicate_review):
        open_review, _ = await duplicate_review()
        await review.resolve_duplicate_review(open_review.id, "dismiss", "reviewer-1")

        with pytest.raises(ConflictError):
            await review.resolve_duplicate_review(open_review.id, "merge", "reviewer-2")

    @pytest.mark.asyncio
    async def test_invalid_resolution(self, review, duplicate_review):
        open_review, _ = await duplicate_review()
        with pytest.raises(ValidationError):
            await review.resolve_duplicate_review(open_review.id, "ignore", "reviewer-1")

    @pytest.mark.asyncio
    async def test_unknown_review(self, review):
        with pytest.raises(NotFoundError):
            await review.resolve_duplicate_review(404, "dismiss", "reviewer-1")
