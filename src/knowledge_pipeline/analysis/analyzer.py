"""Conversation analysis: message roles, conversation boundaries and Q&A pairs."""

import logging
import time
from datetime import timedelta
from typing import Sequence

from knowledge_pipeline.analysis.classifier import LLMRoleClassifier
from knowledge_pipeline.analysis.heuristics import HeuristicRoleStrategy, RoleStrategy, heuristic_topic
from knowledge_pipeline.analysis.models import (
    ConversationAnalysis,
    ConversationBoundary,
    ConversationMessage,
    MessageRole,
    QAPair,
    RoleAssignment,
)
from knowledge_pipeline.config import settings

logger = logging.getLogger(__name__)

MIN_CONVERSATION_LENGTH = 2


class ConversationAnalyzer:
    """Classifies message roles and pairs questions with answers.

    Heuristics run first. When they are inconclusive the semantic classifier is
    consulted and the more confident of the two wins. If the classifier fails,
    the heuristic answer is kept with a reduced confidence and the classifier
    is not called again for the rest of that analysis: every later inconclusive
    message gets the same penalized heuristic answer.
    """

    def __init__(
        self,
        classifier: LLMRoleClassifier | None = None,
        heuristics: RoleStrategy | None = None,
        gap_minutes: int | None = None,
        max_answer_delay_minutes: int | None = None,
        min_answer_confidence: float | None = None,
    ):
        self.classifier = classifier
        self.heuristics = heuristics or HeuristicRoleStrategy()
        self.gap = timedelta(minutes=gap_minutes or settings.CONVERSATION_GAP_MINUTES)
        self.max_answer_delay = timedelta(
            minutes=max_answer_delay_minutes or settings.QA_MAX_ANSWER_DELAY_MINUTES
        )
        self.min_answer_confidence = (
            min_answer_confidence
            if min_answer_confidence is not None
            else settings.QA_MIN_ANSWER_CONFIDENCE
        )

    async def analyze(self, messages: Sequence[ConversationMessage]) -> ConversationAnalysis:
        started = time.perf_counter()
        ordered = sorted(messages, key=lambda m: (m.timestamp, m.id))
        run = _AnalysisRun(classifier=self.classifier)

        roles: dict[int, RoleAssignment] = {}
        for message in ordered:
            roles[message.id] = await self._classify(message.text, run)

        analysis = ConversationAnalysis(roles=roles)
        if len(ordered) >= MIN_CONVERSATION_LENGTH:
            segments = self._segment(ordered)
            analysis.boundaries = [
                ConversationBoundary(
                    start_id=segment[0].id,
                    end_id=segment[-1].id,
                    message_count=len(segment),
                    started_at=segment[0].timestamp,
                    ended_at=segment[-1].timestamp,
                )
                for segment in segments
                if len(segment) >= MIN_CONVERSATION_LENGTH
            ]
            segment_of = {m.id: index for index, segment in enumerate(segments) for m in segment}
            analysis.qa_pairs = await self._pair(ordered, roles, segment_of, run)

        analysis.overall_confidence = self._overall_confidence(analysis)
        analysis.processing_ms = (time.perf_counter() - started) * 1000
        logger.debug(
            f"Analyzed {len(ordered)} messages: {len(analysis.qa_pairs)} Q&A pairs, "
            f"{len(analysis.boundaries)} conversations in {analysis.processing_ms:.1f}ms"
        )
        return analysis

    async def _classify(self, text: str, run: "_AnalysisRun") -> RoleAssignment:
        heuristic = await self.heuristics.classify(text)
        if heuristic.conclusive:
            return heuristic
        if run.failed:
            return self._fallback(heuristic)
        if run.classifier is None:
            return heuristic

        try:
            semantic = await run.classifier.classify(text)
        except Exception as e:
            logger.warning(f"Role classifier failed, using heuristics only: {e}")
            run.failed = True
            return self._fallback(heuristic)

        if semantic.confidence > heuristic.confidence:
            return semantic
        return heuristic

    def _fallback(self, heuristic: RoleAssignment) -> RoleAssignment:
        return RoleAssignment(
            role=heuristic.role,
            confidence=heuristic.confidence * settings.CLASSIFIER_FALLBACK_PENALTY,
            reasoning=f"{heuristic.reasoning} (heuristic fallback, classifier unavailable)",
            conclusive=False,
        )

    def _segment(self, ordered: list[ConversationMessage]) -> list[list[ConversationMessage]]:
        """Split chronologically ordered messages on silences longer than the gap."""
        segments = [[ordered[0]]]
        for previous, current in zip(ordered, ordered[1:]):
            if current.timestamp - previous.timestamp > self.gap:
                segments.append([])
            segments[-1].append(current)
        return segments

    async def _pair(
        self,
        ordered: list[ConversationMessage],
        roles: dict[int, RoleAssignment],
        segment_of: dict[int, int],
        run: "_AnalysisRun",
    ) -> list[QAPair]:
        pairs = []
        for index, question in enumerate(ordered):
            question_role = roles[question.id]
            if question_role.role != MessageRole.QUESTION:
                continue

            best: ConversationMessage | None = None
            for candidate in ordered[index + 1 :]:
                if candidate.timestamp - question.timestamp > self.max_answer_delay:
                    break
                if segment_of[candidate.id] != segment_of[question.id]:
                    break
                if not candidate.in_context_of(question):
                    continue

                candidate_role = roles[candidate.id]
                if candidate_role.role == MessageRole.QUESTION:
                    break
                if candidate_role.role != MessageRole.ANSWER:
                    continue
                if candidate_role.confidence < self.min_answer_confidence:
                    continue
                # Iteration is chronological, so strict comparison keeps the earliest on ties
                if best is None or candidate_role.confidence > roles[best.id].confidence:
                    best = candidate

            if best is None:
                continue

            pairs.append(
                QAPair(
                    question_id=question.id,
                    answer_id=best.id,
                    confidence=(question_role.confidence + roles[best.id].confidence) / 2,
                    topic=await self._topic(question.text, run),
                )
            )
        return pairs

    async def _topic(self, question: str, run: "_AnalysisRun") -> str:
        if run.classifier is not None and not run.failed:
            try:
                return await run.classifier.derive_topic(question)
            except Exception as e:
                logger.warning(f"Topic derivation failed, using keywords: {e}")
                run.failed = True
        return heuristic_topic(question)

    @staticmethod
    def _overall_confidence(analysis: ConversationAnalysis) -> float:
        """Mean role confidence, averaged with the mean pair confidence when pairs exist."""
        if not analysis.roles:
            return 0.0
        role_mean = sum(r.confidence for r in analysis.roles.values()) / len(analysis.roles)
        if not analysis.qa_pairs:
            return min(1.0, max(0.0, role_mean))
        pair_mean = sum(p.confidence for p in analysis.qa_pairs) / len(analysis.qa_pairs)
        return min(1.0, max(0.0, (role_mean + pair_mean) / 2))


class _AnalysisRun:
    """Per-call state; the classifier is not consulted again after its first failure."""

    def __init__(self, classifier: LLMRoleClassifier | None):
        self.classifier = classifier
        self.failed = False
