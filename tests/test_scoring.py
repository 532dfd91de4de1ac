"""Tests for FAQ confidence factors."""

import pytest

from knowledge_pipeline.analysis.models import MessageRole
from knowledge_pipeline.faqs.models import ConfidenceFactors
from knowledge_pipeline.faqs.scoring import (
    answer_completeness,
    context_relevance,
    question_clarity,
    score_candidate,
)


class TestQuestionClarity:
    @pytest.mark.parametrize(
        "question, expected",
        [
            ("How do I reset my password?", 1.0),
            ("Reset my password please?", 0.7),
            ("How do I reset my password", 0.5),
            ("password reset", 0.0),
            ("?", 0.5),
        ],
    )
    def test_components(self, question, expected):
        """Question mark, interrogative opening and length add up."""
        assert question_clarity(question) == pytest.approx(expected)


class TestAnswerCompleteness:
    def test_short_actionable_answer(self):
        assert answer_completeness("Go to settings and click reset") == pytest.approx(0.75)

    def test_long_actionable_answer_saturates(self):
        answer = "Go to settings, open the Security tab and click reset, then confirm the e-mail you receive"
        assert answer_completeness(answer) == pytest.approx(1.0)

    def test_vague_answer(self):
        assert answer_completeness("It depends") == pytest.approx(0.5 * 2 / 12)


class TestContextRelevance:
    def test_question_and_answer(self):
        assert context_relevance(["question", "answer"]) == 1.0

    def test_enum_roles(self):
        assert context_relevance([MessageRole.QUESTION, MessageRole.CONTEXT]) == 0.5

    def test_neither(self):
        assert context_relevance(["context", "confirmation"]) == 0.0


class TestScoreCandidate:
    def test_overall_is_mean(self):
        """Overall confidence is the mean of the three factors."""
        factors = score_candidate(
            "How do I reset my password?", "Go to settings and click reset", ["question", "answer"]
        )
        assert factors == ConfidenceFactors(1.0, 0.75, 1.0)
        assert factors.overall == pytest.approx(2.75 / 3)

    def test_overall_is_clamped(self):
        assert ConfidenceFactors(1.5, 1.5, 1.5).overall == 1.0
