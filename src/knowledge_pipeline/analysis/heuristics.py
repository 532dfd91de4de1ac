"""Rule-based role classification and topic extraction."""

import re
from typing import Protocol

from knowledge_pipeline.analysis.models import MessageRole, RoleAssignment
from knowledge_pipeline.config import settings

QUESTION_WORDS = {
    "how", "what", "when", "where", "why", "who", "which", "whose",
    "can", "could", "would", "should", "is", "are", "do", "does", "did",
    "will", "anyone", "any",
}

# Verbs that open an instruction ("Go to settings", "Restart the agent")
IMPERATIVE_VERBS = {
    "go", "click", "open", "navigate", "try", "run", "use", "check", "select",
    "set", "enable", "disable", "restart", "reset", "install", "update", "add",
    "remove", "delete", "create", "type", "enter", "press", "change", "make",
    "clear", "log", "sign", "contact", "visit", "follow", "ask", "email",
}

STEP_PATTERN = re.compile(r"\bstep \d|\b(first|second|third|then|next|finally),?\s", re.IGNORECASE)
INSTRUCTION_PATTERN = re.compile(
    r"^(you can|you could|you should|you need to|you have to|you'll need|just|make sure|"
    r"the fix is|the solution is|to do that)\b",
    re.IGNORECASE,
)
SUCCESS_PATTERN = re.compile(r"\b(worked|works now|fixed|solved|resolved|that did it)\b", re.IGNORECASE)
GRATITUDE_PATTERN = re.compile(r"^(thanks|thank you|thx|ty|perfect|great|awesome|got it)\b", re.IGNORECASE)
FOLLOW_UP_PATTERN = re.compile(r"^(but|also|and|what if|one more|additionally|however)\b", re.IGNORECASE)

WORD_PATTERN = re.compile(r"[a-z0-9']+")

TOPIC_STOPWORDS = QUESTION_WORDS | {
    "i", "we", "you", "my", "our", "your", "the", "a", "an", "to", "in", "on",
    "for", "of", "it", "this", "that", "there", "with", "me", "get", "be",
    "have", "has", "way", "please", "someone", "know",
}


class RoleStrategy(Protocol):
    """Anything that can assign a conversational role to a message text."""

    async def classify(self, text: str) -> RoleAssignment: ...


def first_word(text: str) -> str:
    words = WORD_PATTERN.findall(text.lower())
    return words[0] if words else ""


def is_likely_question(text: str) -> bool:
    """Ends with a question mark or opens with an interrogative word."""
    stripped = text.strip()
    return stripped.endswith("?") or first_word(stripped) in QUESTION_WORDS


def is_actionable(text: str) -> bool:
    """Instructional phrasing: numbered steps, imperative verbs or 'you can ...'."""
    stripped = text.strip()
    if STEP_PATTERN.search(stripped) or INSTRUCTION_PATTERN.search(stripped):
        return True
    return first_word(stripped) in IMPERATIVE_VERBS


def classify_text(text: str) -> RoleAssignment:
    """Classify a message with pattern rules only.

    Assignments below HEURISTIC_CONCLUSIVE_CONFIDENCE are marked inconclusive so
    the analyzer can consult the semantic classifier.
    """
    stripped = text.strip()
    lower = stripped.lower()
    word = first_word(lower)

    if not stripped:
        role, confidence, reasoning = MessageRole.CONTEXT, 0.5, "Empty message"
    elif FOLLOW_UP_PATTERN.search(lower) and "?" in lower:
        role, confidence = MessageRole.FOLLOW_UP, 0.8
        reasoning = "Transitional phrasing introducing a further question"
    elif "?" in lower:
        role, confidence = MessageRole.QUESTION, 0.9
        reasoning = "Contains a question mark"
    elif SUCCESS_PATTERN.search(lower):
        role, confidence = MessageRole.CONFIRMATION, 0.9
        reasoning = "Reports that a suggestion worked"
    elif GRATITUDE_PATTERN.search(lower):
        role, confidence = MessageRole.CONFIRMATION, 0.85
        reasoning = "Expresses gratitude or acknowledgement"
    elif STEP_PATTERN.search(lower):
        role, confidence = MessageRole.ANSWER, 0.85
        reasoning = "Step-by-step instructions"
    elif INSTRUCTION_PATTERN.search(lower) or word in IMPERATIVE_VERBS:
        role, confidence = MessageRole.ANSWER, 0.8
        reasoning = "Instructional or imperative phrasing"
    elif word in ("how", "what"):
        role, confidence = MessageRole.QUESTION, 0.85
        reasoning = f"Opens with interrogative '{word}'"
    elif word in QUESTION_WORDS:
        role, confidence = MessageRole.QUESTION, 0.7
        reasoning = f"Opens with interrogative '{word}' but has no question mark"
    elif FOLLOW_UP_PATTERN.search(lower):
        role, confidence = MessageRole.FOLLOW_UP, 0.7
        reasoning = "Transitional phrasing"
    else:
        role, confidence = MessageRole.CONTEXT, 0.5
        reasoning = "No question, answer or confirmation markers"

    return RoleAssignment(
        role=role,
        confidence=confidence,
        reasoning=reasoning,
        conclusive=confidence >= settings.HEURISTIC_CONCLUSIVE_CONFIDENCE,
    )


def heuristic_topic(question: str, max_words: int = 6) -> str:
    """Keyword topic from a question: its content words, in order."""
    words = [w for w in WORD_PATTERN.findall(question.lower()) if w not in TOPIC_STOPWORDS]
    if not words:
        return "General"
    return " ".join(words[:max_words]).capitalize()


class HeuristicRoleStrategy:
    """Role strategy backed purely by pattern rules."""

    async def classify(self, text: str) -> RoleAssignment:
        return classify_text(text)
