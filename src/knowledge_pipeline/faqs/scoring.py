"""FAQ confidence factors."""

import re
from typing import Iterable

from knowledge_pipeline.analysis.heuristics import QUESTION_WORDS, WORD_PATTERN, first_word
from knowledge_pipeline.analysis.models import MessageRole
from knowledge_pipeline.faqs.models import ConfidenceFactors

# Word count at which an answer counts as fully developed
COMPLETE_ANSWER_WORDS = 12

ACTIONABLE_PATTERN = re.compile(
    r"\b(go to|click|navigate|open|select|run|restart|reset|enable|disable|install|update|"
    r"set|use|try|check|contact|enter|change|you can|you should|you need to|step \d)\b",
    re.IGNORECASE,
)


def question_clarity(question: str) -> float:
    """Question mark 0.5, interrogative opening 0.3, reasonable length 0.2."""
    text = question.strip()
    score = 0.0
    if "?" in text:
        score += 0.5
    if first_word(text) in QUESTION_WORDS:
        score += 0.3
    if 3 <= len(WORD_PATTERN.findall(text.lower())) <= 40:
        score += 0.2
    return min(1.0, score)


def answer_completeness(answer: str) -> float:
    """Half for length (saturating at COMPLETE_ANSWER_WORDS), half for actionable phrasing."""
    words = len(WORD_PATTERN.findall(answer.lower()))
    score = 0.5 * min(1.0, words / COMPLETE_ANSWER_WORDS)
    if ACTIONABLE_PATTERN.search(answer):
        score += 0.5
    return min(1.0, score)


def context_relevance(source_roles: Iterable[str | MessageRole]) -> float:
    """1.0 when the sources hold a question and an answer, 0.5 for one of them."""
    roles = {MessageRole(role) for role in source_roles}
    has_question = MessageRole.QUESTION in roles
    has_answer = MessageRole.ANSWER in roles
    if has_question and has_answer:
        return 1.0
    if has_question or has_answer:
        return 0.5
    return 0.0


def score_candidate(question: str, answer: str, source_roles: Iterable[str | MessageRole]) -> ConfidenceFactors:
    return ConfidenceFactors(
        question_clarity=question_clarity(question),
        answer_completeness=answer_completeness(answer),
        context_relevance=context_relevance(source_roles),
    )
