"""Data models for conversation analysis."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class MessageRole(str, Enum):
    """Conversational role of a message."""

    QUESTION = "question"
    ANSWER = "answer"
    CONTEXT = "context"
    FOLLOW_UP = "follow_up"
    CONFIRMATION = "confirmation"


@dataclass
class ConversationMessage:
    """The slice of a stored message the analyzer needs."""

    id: int
    text: str
    author: str
    channel: str
    timestamp: datetime
    external_id: str = ""
    parent_external_id: str | None = None

    def in_context_of(self, question: "ConversationMessage") -> bool:
        """Whether this message can answer `question`.

        Replies in the question's thread qualify, as do messages at the same
        level (both top-level in the channel, or both replies in one thread).
        """
        if self.channel != question.channel:
            return False
        if self.parent_external_id and self.parent_external_id == question.external_id:
            return True
        return self.parent_external_id == question.parent_external_id

    @classmethod
    def from_record(cls, message) -> "ConversationMessage":
        """Build from a db.models.Message row."""
        return cls(
            id=message.id,
            text=message.text or "",
            author=message.author or "",
            channel=message.channel,
            timestamp=message.timestamp,
            external_id=message.external_id,
            parent_external_id=message.parent_external_id,
        )


@dataclass
class RoleAssignment:
    """Role of one message with confidence in [0, 1] and a short reasoning."""

    role: MessageRole
    confidence: float
    reasoning: str
    conclusive: bool = True


@dataclass
class QAPair:
    """A question matched to the answer that best resolves it."""

    question_id: int
    answer_id: int
    confidence: float
    topic: str


@dataclass
class ConversationBoundary:
    """A run of messages without a long silence between consecutive ones."""

    start_id: int
    end_id: int
    message_count: int
    started_at: datetime
    ended_at: datetime


@dataclass
class ConversationAnalysis:
    """Result of analyzing a set of messages."""

    roles: dict[int, RoleAssignment] = field(default_factory=dict)
    qa_pairs: list[QAPair] = field(default_factory=list)
    boundaries: list[ConversationBoundary] = field(default_factory=list)
    overall_confidence: float = 0.0
    processing_ms: float = 0.0

    @property
    def is_empty(self) -> bool:
        return not self.roles
