"""Data models for FAQ synthesis and review."""

from dataclasses import dataclass, field
from enum import Enum


class FAQStatus(str, Enum):
    """FAQ review status. APPROVED and REJECTED are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class ReviewDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"


class DuplicateReviewStatus(str, Enum):
    OPEN = "open"
    RESOLVED = "resolved"


class DuplicateResolution(str, Enum):
    """What a reviewer decided about a potential duplicate."""

    CREATE = "create"  # Not a duplicate: create it as a new FAQ
    MERGE = "merge"  # Duplicate: add its sources to the matched FAQ
    DISMISS = "dismiss"  # Drop the candidate


class SourceContribution(str, Enum):
    QUESTION = "question"
    ANSWER = "answer"


@dataclass
class FAQCandidate:
    """A generated question/answer not yet checked for duplicates."""

    question: str
    answer: str
    category: str
    document_id: int
    question_message_id: int
    answer_message_id: int
    generated: bool = True

    @property
    def text(self) -> str:
        return faq_text(self.question, self.answer)


def faq_text(question: str, answer: str) -> str:
    """Text used for similarity search and indexing."""
    return f"Q: {question}\nA: {answer}"


@dataclass
class ConfidenceFactors:
    """Independent confidence factors, each in [0, 1]."""

    question_clarity: float
    answer_completeness: float
    context_relevance: float

    @property
    def overall(self) -> float:
        mean = (self.question_clarity + self.answer_completeness + self.context_relevance) / 3
        return min(1.0, max(0.0, mean))


@dataclass
class SynthesisOptions:
    require_approval: bool | None = None
    created_by: str = "system"


@dataclass
class SynthesisResult:
    """Outcome of synthesizing FAQs from one document."""

    document_id: int
    faq_ids: list[int] = field(default_factory=list)
    new_faqs_created: int = 0
    duplicates_found: int = 0
    duplicates_enhanced: int = 0
    potential_duplicates: int = 0
    errors: list[str] = field(default_factory=list)
    stats: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "document_id": self.document_id,
            "faq_ids": self.faq_ids,
            "new_faqs_created": self.new_faqs_created,
            "duplicates_found": self.duplicates_found,
            "duplicates_enhanced": self.duplicates_enhanced,
            "potential_duplicates": self.potential_duplicates,
            "errors": self.errors,
            "stats": self.stats,
        }


@dataclass
class BatchSynthesisResult:
    """Outcome of synthesizing FAQs across several documents."""

    documents_processed: int = 0
    new_faqs_created: int = 0
    duplicates_found: int = 0
    duplicates_enhanced: int = 0
    potential_duplicates: int = 0
    results: list[SynthesisResult] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    halted: bool = False

    def add(self, result: SynthesisResult, finished: bool = True) -> None:
        """Fold in one document's result; `finished=False` for a document cut short by a halt."""
        self.results.append(result)
        if finished:
            self.documents_processed += 1
        self.new_faqs_created += result.new_faqs_created
        self.duplicates_found += result.duplicates_found
        self.duplicates_enhanced += result.duplicates_enhanced
        self.potential_duplicates += result.potential_duplicates
        self.errors.extend(f"Document {result.document_id}: {error}" for error in result.errors)

    def to_dict(self) -> dict:
        return {
            "documents_processed": self.documents_processed,
            "new_faqs_created": self.new_faqs_created,
            "duplicates_found": self.duplicates_found,
            "duplicates_enhanced": self.duplicates_enhanced,
            "potential_duplicates": self.potential_duplicates,
            "errors": self.errors,
            "halted": self.halted,
        }
