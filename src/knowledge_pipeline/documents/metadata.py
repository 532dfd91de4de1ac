"""Title, description and category generation for assembled documents."""

import logging

from knowledge_pipeline.analysis.models import ConversationMessage
from knowledge_pipeline.documents.models import DEFAULT_CATEGORY, DocumentMetadata
from knowledge_pipeline.llm.base import BaseLLM
from knowledge_pipeline.llm.exceptions import LLMRateLimitError
from knowledge_pipeline.pii import PIIRedactor, RegexPIIRedactor

logger = logging.getLogger(__name__)

# Transcripts shorter than this are not worth a generation call
MIN_TRANSCRIPT_CHARS = 100
MAX_TRANSCRIPT_CHARS = 4000

METADATA_PROMPT = """You are organizing a support knowledge base built from team chat.
Read this conversation and describe it.

Conversation:
{transcript}

Return JSON with:
- "title": a specific title of at most 80 characters
- "category": one or two lowercase words naming the subject area (e.g. "billing", "account access")
- "description": one or two sentences summarizing the problem and its resolution"""


def _normalize_category(category: str) -> str:
    return " ".join(category.lower().split())[:64] or DEFAULT_CATEGORY


class DocumentMetadataGenerator:
    """Generates document metadata, falling back to a participant-based summary.

    Only quota errors escape (as LLMRateLimitError); any other failure yields
    the fallback metadata.
    """

    def __init__(
        self,
        llm: BaseLLM | None = None,
        redactor: PIIRedactor | None = None,
        max_title_length: int = 200,
    ):
        self.llm = llm
        self.redactor = redactor or RegexPIIRedactor()
        self.max_title_length = max_title_length

    def transcript(self, messages: list[ConversationMessage]) -> str:
        lines = [f"{m.author or 'unknown'}: {self.redactor.redact(m.text)}" for m in messages]
        return "\n".join(lines)[:MAX_TRANSCRIPT_CHARS]

    async def generate(self, messages: list[ConversationMessage]) -> DocumentMetadata:
        transcript = self.transcript(messages)
        if self.llm is None or len(transcript) < MIN_TRANSCRIPT_CHARS:
            return self.basic_metadata(messages)

        try:
            data = await self.llm.generate_json(METADATA_PROMPT.format(transcript=transcript))
        except LLMRateLimitError:
            raise
        except Exception as e:
            logger.warning(f"Metadata generation failed, using basic metadata: {e}")
            return self.basic_metadata(messages)

        title = str(data.get("title") or "").strip()
        if not title:
            logger.warning("Metadata generation returned no title, using basic metadata")
            return self.basic_metadata(messages)

        return DocumentMetadata(
            title=title[: self.max_title_length],
            description=str(data.get("description") or "").strip(),
            category=_normalize_category(str(data.get("category") or DEFAULT_CATEGORY)),
        )

    def basic_metadata(self, messages: list[ConversationMessage]) -> DocumentMetadata:
        participants = list(dict.fromkeys(m.author for m in messages if m.author))[:3]
        first_text = self.redactor.redact(messages[0].text[:100]) if messages else "Discussion"
        title = f"Discussion with {', '.join(participants)}" if participants else "Discussion"
        return DocumentMetadata(
            title=title[: self.max_title_length],
            description=f'Document created from {len(messages)} messages. Started with: "{first_text}..."',
            category=DEFAULT_CATEGORY,
            generated=False,
        )
