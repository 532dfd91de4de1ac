"""FAQ synthesis from assembled documents."""

import asyncio
import logging
from typing import Awaitable, Callable, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.config import settings
from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.db.models import (
    FAQ,
    Document,
    DocumentMessage,
    DocumentQAPair,
    FAQDuplicateReview,
    FAQSource,
    Message,
    utcnow,
)
from knowledge_pipeline.documents.models import DocumentStatus
from knowledge_pipeline.exceptions import (
    JobCancelledError,
    NotFoundError,
    PipelineError,
    QuotaExceededError,
    TransientError,
    ValidationError,
    classify_error,
)
from knowledge_pipeline.faqs.models import (
    BatchSynthesisResult,
    DuplicateReviewStatus,
    FAQCandidate,
    FAQStatus,
    SynthesisOptions,
    SynthesisResult,
)
from knowledge_pipeline.faqs.scoring import score_candidate
from knowledge_pipeline.faqs.similarity import SimilarityIndex, SimilarityMatch
from knowledge_pipeline.faqs.store import add_sources, find_traced_faq, new_faq
from knowledge_pipeline.llm.base import BaseLLM
from knowledge_pipeline.llm.exceptions import LLMRateLimitError
from knowledge_pipeline.pii import PIIRedactor, RegexPIIRedactor

logger = logging.getLogger(__name__)

Checkpoint = Callable[[], Awaitable[None]]
ProgressCallback = Callable[[int], Awaitable[None]]

CANDIDATE_PROMPT = """Turn this exchange from a support chat into a reusable FAQ entry.

Topic: {topic}
Question asked: {question}
Answer given: {answer}

Rewrite the question so it stands on its own, and the answer so it is complete
and actionable without the surrounding chat. Do not invent facts.

Return JSON with "question", "answer" and "category" (one or two lowercase words)."""


class _GenerationGate:
    """Enforces the fixed pause between consecutive generation calls."""

    def __init__(self, delay: float, sleep: Callable[[float], Awaitable[None]]):
        self.delay = delay
        self.sleep = sleep
        self._calls = 0

    async def wait(self) -> None:
        if self._calls and self.delay > 0:
            await self.sleep(self.delay)
        self._calls += 1


def _stats(pairs: list[DocumentQAPair], result: SynthesisResult, require_approval: bool) -> dict:
    return {
        "qa_pairs": len(pairs),
        "faqs_touched": len(set(result.faq_ids)),
        "require_approval": require_approval,
    }


class FAQSynthesizer:
    """Builds FAQ candidates from a document's Q&A pairs and files each one.

    For every pair, in order:

    1. an FAQ already traced to both messages of the pair in this document is
       a duplicate (re-running synthesis is idempotent and does not depend on
       the similarity index having caught up);
    2. a similarity match at or above the duplicate threshold is a duplicate:
       the pair's messages are added to that FAQ's trace and its text is left
       alone;
    3. a match at or above the potential-duplicate threshold is parked as a
       duplicate review for a human;
    4. anything else becomes a new FAQ, which is then indexed.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        llm: BaseLLM | None = None,
        similarity_index: SimilarityIndex | None = None,
        redactor: PIIRedactor | None = None,
        duplicate_threshold: float | None = None,
        potential_duplicate_threshold: float | None = None,
        delay_seconds: float | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.session_maker = session_maker or async_session_maker
        self.llm = llm
        self.similarity_index = similarity_index
        self.redactor = redactor or RegexPIIRedactor()
        self.duplicate_threshold = (
            duplicate_threshold if duplicate_threshold is not None else settings.FAQ_DUPLICATE_THRESHOLD
        )
        self.potential_duplicate_threshold = (
            potential_duplicate_threshold
            if potential_duplicate_threshold is not None
            else settings.FAQ_POTENTIAL_DUPLICATE_THRESHOLD
        )
        if self.potential_duplicate_threshold >= self.duplicate_threshold:
            raise ValueError("Potential duplicate threshold must be lower than the duplicate threshold")
        self.delay_seconds = (
            delay_seconds if delay_seconds is not None else settings.FAQ_GENERATION_DELAY_SECONDS
        )
        self.sleep = sleep

    async def synthesize(
        self,
        document_id: int,
        options: SynthesisOptions | None = None,
        checkpoint: Checkpoint | None = None,
        _gate: _GenerationGate | None = None,
    ) -> SynthesisResult:
        """Synthesize FAQs for one COMPLETE document.

        Per-pair failures are collected in the result. Quota errors are raised
        as QuotaExceededError; pairs handled before that stay committed and the
        result so far is attached to the error as `partial`.
        """
        options = options or SynthesisOptions()
        require_approval = (
            options.require_approval if options.require_approval is not None else settings.FAQ_REQUIRE_APPROVAL
        )
        gate = _gate or _GenerationGate(self.delay_seconds, self.sleep)

        async with self.session_maker() as session:
            document = await session.get(Document, document_id)
            if document is None:
                raise NotFoundError(f"Document {document_id} not found")
            if document.status != DocumentStatus.COMPLETE.value:
                raise ValidationError(f"Document {document_id} is {document.status}, not complete")

            pairs = list(
                (
                    await session.execute(
                        select(DocumentQAPair)
                        .where(DocumentQAPair.document_id == document_id)
                        .order_by(DocumentQAPair.id)
                    )
                ).scalars()
            )
            rows = await session.execute(
                select(Message, DocumentMessage.role)
                .join(DocumentMessage, DocumentMessage.message_id == Message.id)
                .where(DocumentMessage.document_id == document_id)
            )
            members = {message.id: (message, role) for message, role in rows.all()}
            category = document.category

        result = SynthesisResult(document_id=document_id)
        logger.info(f"Synthesizing FAQs for document {document_id} from {len(pairs)} Q&A pairs")

        for pair in pairs:
            question = members.get(pair.question_message_id)
            answer = members.get(pair.answer_message_id)
            if question is None or answer is None:
                result.errors.append(f"Q&A pair {pair.id} references messages outside the document")
                continue
            try:
                await self._process_pair(
                    pair, question, answer, category, require_approval, options, result, gate, checkpoint
                )
            except JobCancelledError:
                raise
            except Exception as e:
                classified = classify_error(e)
                if isinstance(classified, QuotaExceededError):
                    logger.warning(f"Quota exhausted while synthesizing document {document_id}")
                    result.errors.append(f"Q&A pair {pair.id}: {classified}")
                    result.stats = _stats(pairs, result, require_approval)
                    classified.partial = result
                    if classified is e:
                        raise
                    raise classified from e
                logger.error(f"FAQ synthesis failed for pair {pair.id} of document {document_id}: {classified}")
                result.errors.append(f"Q&A pair {pair.id}: {classified}")

        result.stats = _stats(pairs, result, require_approval)
        logger.info(
            f"Document {document_id}: {result.new_faqs_created} new FAQs, "
            f"{result.duplicates_found} duplicates ({result.duplicates_enhanced} enhanced), "
            f"{result.potential_duplicates} held for review"
        )
        return result

    async def _process_pair(
        self,
        pair: DocumentQAPair,
        question: tuple[Message, str],
        answer: tuple[Message, str],
        category: str,
        require_approval: bool,
        options: SynthesisOptions,
        result: SynthesisResult,
        gate: _GenerationGate,
        checkpoint: Checkpoint | None,
    ) -> None:
        question_message, question_role = question
        answer_message, answer_role = answer

        async with self.session_maker() as session:
            traced = await find_traced_faq(session, pair.document_id, question_message.id, answer_message.id)
        if traced is not None:
            logger.debug(f"Q&A pair {pair.id} already traced to FAQ {traced}")
            result.duplicates_found += 1
            result.faq_ids.append(traced)
            return

        candidate = await self.build_candidate(pair, question_message, answer_message, category, gate)
        factors = score_candidate(candidate.question, candidate.answer, [question_role, answer_role])
        match = await self._best_match(candidate)

        if checkpoint is not None:
            await checkpoint()

        if match is not None and match.score >= self.duplicate_threshold:
            async with self.session_maker() as session:
                added = await add_sources(
                    session, match.faq_id, pair.document_id, question_message.id, answer_message.id
                )
                faq = await session.get(FAQ, match.faq_id)
                faq.updated_at = utcnow()
                await session.commit()
            result.duplicates_found += 1
            if added:
                result.duplicates_enhanced += 1
            result.faq_ids.append(match.faq_id)
            logger.info(f"Q&A pair {pair.id} duplicates FAQ {match.faq_id} (score {match.score:.2f})")
            return

        if match is not None:
            await self._hold_for_review(candidate, factors.overall, match)
            result.potential_duplicates += 1
            return

        async with self.session_maker() as session:
            faq = new_faq(candidate, factors, require_approval, options.created_by)
            session.add(faq)
            await session.flush()
            await add_sources(session, faq.id, pair.document_id, question_message.id, answer_message.id)
            await session.commit()

        result.new_faqs_created += 1
        result.faq_ids.append(faq.id)
        logger.info(f"Created FAQ {faq.id} ({faq.status}, confidence {faq.confidence_score:.2f})")
        await self._index(faq)

    async def build_candidate(
        self,
        pair: DocumentQAPair,
        question_message: Message,
        answer_message: Message,
        category: str,
        gate: _GenerationGate | None = None,
    ) -> FAQCandidate:
        """Generate a candidate, falling back to the redacted message texts."""
        question_text = self.redactor.redact(question_message.text.strip())
        answer_text = self.redactor.redact(answer_message.text.strip())
        fallback = FAQCandidate(
            question=question_text,
            answer=answer_text,
            category=category,
            document_id=pair.document_id,
            question_message_id=question_message.id,
            answer_message_id=answer_message.id,
            generated=False,
        )
        if self.llm is None:
            return fallback

        if gate is not None:
            await gate.wait()
        try:
            data = await self.llm.generate_json(
                CANDIDATE_PROMPT.format(topic=pair.topic, question=question_text, answer=answer_text)
            )
        except LLMRateLimitError:
            raise
        except Exception as e:
            logger.warning(f"Candidate generation failed for pair {pair.id}, using message texts: {e}")
            return fallback

        question = str(data.get("question") or "").strip()
        answer = str(data.get("answer") or "").strip()
        if not question or not answer:
            return fallback
        return FAQCandidate(
            question=question,
            answer=answer,
            category=" ".join(str(data.get("category") or category).lower().split())[:64] or category,
            document_id=pair.document_id,
            question_message_id=question_message.id,
            answer_message_id=answer_message.id,
        )

    async def _best_match(self, candidate: FAQCandidate) -> SimilarityMatch | None:
        """Top match at or above the potential-duplicate threshold, ignoring rejected or missing FAQs."""
        if self.similarity_index is None:
            return None
        try:
            matches = await self.similarity_index.find_similar(candidate.text, settings.FAQ_SIMILARITY_TOP_K)
        except Exception as e:
            raise TransientError(f"Similarity lookup failed: {e}") from e

        eligible = [
            m for m in matches if m.faq_id is not None and m.score >= self.potential_duplicate_threshold
        ]
        if not eligible:
            return None

        async with self.session_maker() as session:
            result = await session.execute(
                select(FAQ.id).where(
                    FAQ.id.in_([m.faq_id for m in eligible]),
                    FAQ.status != FAQStatus.REJECTED.value,
                )
            )
            live = set(result.scalars())

        for match in sorted(eligible, key=lambda m: m.score, reverse=True):
            if match.faq_id in live:
                return match
        return None

    async def _hold_for_review(self, candidate: FAQCandidate, confidence: float, match: SimilarityMatch) -> None:
        async with self.session_maker() as session:
            existing = await session.scalar(
                select(FAQDuplicateReview.id).where(
                    FAQDuplicateReview.document_id == candidate.document_id,
                    FAQDuplicateReview.question_message_id == candidate.question_message_id,
                    FAQDuplicateReview.answer_message_id == candidate.answer_message_id,
                    FAQDuplicateReview.status == DuplicateReviewStatus.OPEN.value,
                )
            )
            if existing is not None:
                return
            session.add(
                FAQDuplicateReview(
                    question=candidate.question,
                    answer=candidate.answer,
                    category=candidate.category,
                    confidence_score=confidence,
                    matched_faq_id=match.faq_id,
                    similarity_score=match.score,
                    document_id=candidate.document_id,
                    question_message_id=candidate.question_message_id,
                    answer_message_id=candidate.answer_message_id,
                )
            )
            await session.commit()
        logger.info(
            f"Candidate from document {candidate.document_id} may duplicate FAQ {match.faq_id} "
            f"(score {match.score:.2f}), held for review"
        )

    async def _index(self, faq: FAQ) -> None:
        if self.similarity_index is None:
            return
        try:
            await self.similarity_index.index_faq(faq)
        except Exception as e:
            logger.warning(f"Failed to index FAQ {faq.id}, it will not be found as a duplicate yet: {e}")

    async def synthesize_many(
        self,
        document_ids: Sequence[int],
        options: SynthesisOptions | None = None,
        checkpoint: Checkpoint | None = None,
        progress: ProgressCallback | None = None,
    ) -> BatchSynthesisResult:
        """Synthesize several documents, stopping at the first quota error."""
        batch = BatchSynthesisResult()
        gate = _GenerationGate(self.delay_seconds, self.sleep)

        for index, document_id in enumerate(document_ids, start=1):
            if checkpoint is not None:
                await checkpoint()
            try:
                result = await self.synthesize(document_id, options, checkpoint=checkpoint, _gate=gate)
            except QuotaExceededError as e:
                if e.partial is not None:
                    batch.add(e.partial, finished=False)
                else:
                    batch.errors.append(f"Document {document_id}: {e}")
                batch.halted = True
                logger.warning(f"Quota exhausted, stopping after {index - 1} of {len(document_ids)} documents")
                break
            except JobCancelledError:
                raise
            except PipelineError as e:
                batch.errors.append(f"Document {document_id}: {e}")
            else:
                batch.add(result)

            if progress is not None:
                await progress(int(index * 100 / len(document_ids)))

        return batch

    async def documents_without_faqs(self, limit: int = 100) -> list[int]:
        """COMPLETE documents with Q&A pairs but no FAQ traced to them yet."""
        async with self.session_maker() as session:
            traced = select(FAQSource.document_id).distinct()
            result = await session.execute(
                select(Document.id)
                .where(
                    Document.status == DocumentStatus.COMPLETE.value,
                    Document.id.in_(select(DocumentQAPair.document_id)),
                    Document.id.not_in(traced),
                )
                .order_by(Document.id)
                .limit(limit)
            )
            return list(result.scalars())
