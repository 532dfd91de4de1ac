"""Semantic role classifier backed by the generation provider."""

import logging

from cachetools import LRUCache

from knowledge_pipeline.analysis.models import MessageRole, RoleAssignment
from knowledge_pipeline.config import settings
from knowledge_pipeline.llm.base import BaseLLM
from knowledge_pipeline.llm.exceptions import LLMResponseError

logger = logging.getLogger(__name__)

ROLE_PROMPT = """Classify the conversational role of this chat message.

Roles:
- question: asks for help or information
- answer: provides a solution, instructions or information that resolves a question
- context: background, status updates or chatter
- follow_up: continues an earlier question with more detail or a new angle
- confirmation: acknowledges that an answer worked, or thanks someone

Message:
\"\"\"{text}\"\"\"

Return JSON: {{"role": "<one of the roles>", "confidence": <number between 0 and 1>}}"""

TOPIC_PROMPT = """Give a short topic label (at most 6 words) for this support question.

Question:
\"\"\"{question}\"\"\"

Return JSON: {{"topic": "<label>"}}"""


class LLMRoleClassifier:
    """Role and topic classification through an LLM.

    Responses are cached per text in bounded LRU caches, so the same message
    classified twice yields the same answer and costs one call while it stays
    among the `cache_size` most recently used texts.
    """

    def __init__(self, llm: BaseLLM, cache_size: int | None = None):
        self.llm = llm
        cache_size = cache_size or settings.CLASSIFIER_CACHE_SIZE
        self._role_cache: LRUCache = LRUCache(maxsize=cache_size)
        self._topic_cache: LRUCache = LRUCache(maxsize=cache_size)

    async def classify_message_role(self, text: str) -> dict:
        """Return {"role": MessageRole, "confidence": float}.

        Raises:
            LLMResponseError: If the response does not name a valid role
            LLMError: Any provider error, unchanged
        """
        if text in self._role_cache:
            return self._role_cache[text]

        data = await self.llm.generate_json(ROLE_PROMPT.format(text=text[:2000]))
        try:
            role = MessageRole(str(data.get("role", "")).lower())
            confidence = float(data.get("confidence", 0.0))
        except (ValueError, TypeError) as e:
            raise LLMResponseError(
                f"Unusable role classification: {data!r}", provider=self.llm.provider_name
            ) from e

        result = {"role": role, "confidence": min(1.0, max(0.0, confidence))}
        self._role_cache[text] = result
        return result

    async def derive_topic(self, question: str) -> str:
        if question in self._topic_cache:
            return self._topic_cache[question]

        data = await self.llm.generate_json(TOPIC_PROMPT.format(question=question[:1000]))
        topic = str(data.get("topic", "")).strip()
        if not topic:
            raise LLMResponseError("Empty topic", provider=self.llm.provider_name)

        topic = topic[:200]
        self._topic_cache[question] = topic
        return topic

    async def classify(self, text: str) -> RoleAssignment:
        result = await self.classify_message_role(text)
        return RoleAssignment(
            role=result["role"],
            confidence=result["confidence"],
            reasoning=f"Semantic classifier ({self.llm.provider_name})",
        )
