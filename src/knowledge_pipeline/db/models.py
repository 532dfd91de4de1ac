"""SQLAlchemy models for the knowledge pipeline.

Status and role columns store the string value of the matching enum from the
domain packages (ingestion.models, documents.models, faqs.models, jobs.models).
JSON payloads are stored as Text.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from knowledge_pipeline.analysis.models import MessageRole


def utcnow() -> datetime:
    """Current UTC time as a naive datetime (how SQLite stores it)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


# =============================================================================
# Ingestion
# =============================================================================


class IngestedEvent(Base):
    """Audit record of one inbound message event, keyed by its external id."""

    __tablename__ = "ingested_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    kind: Mapped[str] = mapped_column(String(16))
    # Kinds: create, edit, delete, other
    payload: Mapped[str] = mapped_column(Text, default="{}")  # JSON
    channel: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    # Statuses: pending, processing, complete, failed, duplicate
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<IngestedEvent(external_id={self.external_id}, kind={self.kind}, status={self.status})>"


class Message(Base):
    """A chat message. Thread replies point at their root via parent_external_id."""

    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    external_id: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    text: Mapped[str] = mapped_column(Text, default="")
    author: Mapped[str] = mapped_column(String(64), default="")
    channel: Mapped[str] = mapped_column(String(64), index=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, index=True)
    parent_external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Message(external_id={self.external_id}, channel={self.channel})>"


# =============================================================================
# Documents
# =============================================================================


class Document(Base):
    """A group of messages assembled into one unit of knowledge."""

    __tablename__ = "documents"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(200), default="")
    description: Mapped[str] = mapped_column(Text, default="")
    category: Mapped[str] = mapped_column(String(64), default="general", index=True)

    status: Mapped[str] = mapped_column(String(16), default="creating", index=True)
    # Statuses: creating, complete, failed
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_by: Mapped[str] = mapped_column(String(64), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<Document(id={self.id}, title={self.title[:30]}, status={self.status})>"


class DocumentMessage(Base):
    """Membership of a message in a document, with its conversational role."""

    __tablename__ = "document_messages"
    __table_args__ = (
        CheckConstraint(
            "role IN (" + ", ".join(f"'{role.value}'" for role in MessageRole) + ")",
            name="ck_document_messages_role",
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    # A message belongs to at most one document
    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), unique=True
    )
    role: Mapped[str] = mapped_column(String(16))
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    reasoning: Mapped[str] = mapped_column(Text, default="")

    def __repr__(self) -> str:
        return f"<DocumentMessage(document={self.document_id}, message={self.message_id}, role={self.role})>"


class DocumentQAPair(Base):
    """A question/answer pair detected while assembling a document."""

    __tablename__ = "document_qa_pairs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    document_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    question_message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE")
    )
    answer_message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE")
    )
    confidence: Mapped[float] = mapped_column(Float, default=0.0)
    topic: Mapped[str] = mapped_column(String(200), default="")

    def __repr__(self) -> str:
        return (
            f"<DocumentQAPair(document={self.document_id}, "
            f"q={self.question_message_id}, a={self.answer_message_id})>"
        )


# =============================================================================
# FAQs
# =============================================================================


class FAQ(Base):
    """A synthesized question/answer entry."""

    __tablename__ = "faqs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question: Mapped[str] = mapped_column(Text)
    answer: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(64), default="general", index=True)

    status: Mapped[str] = mapped_column(String(16), default="pending", index=True)
    # Statuses: pending, approved, rejected

    # Confidence and its factors, each in [0, 1]
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    question_clarity: Mapped[float] = mapped_column(Float, default=0.0)
    answer_completeness: Mapped[float] = mapped_column(Float, default=0.0)
    context_relevance: Mapped[float] = mapped_column(Float, default=0.0)

    created_by: Mapped[str] = mapped_column(String(64), default="system")
    approved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    approved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    review_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<FAQ(id={self.id}, question={self.question[:30]}, status={self.status})>"


class FAQSource(Base):
    """Trace from an FAQ back to the document message it was derived from."""

    __tablename__ = "faq_sources"
    __table_args__ = (UniqueConstraint("faq_id", "message_id", name="uq_faq_sources_faq_message"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    faq_id: Mapped[int] = mapped_column(Integer, ForeignKey("faqs.id", ondelete="CASCADE"), index=True)
    document_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), index=True
    )
    contribution: Mapped[str] = mapped_column(String(16))
    # Contributions: question, answer
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return f"<FAQSource(faq={self.faq_id}, message={self.message_id}, {self.contribution})>"


class FAQDuplicateReview(Base):
    """A candidate that looked similar to an existing FAQ and awaits a human decision."""

    __tablename__ = "faq_duplicate_reviews"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    question: Mapped[str] = mapped_column(Text)
    answer: Mapped[str] = mapped_column(Text)
    category: Mapped[str] = mapped_column(String(64), default="general")
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)

    matched_faq_id: Mapped[int] = mapped_column(Integer, ForeignKey("faqs.id", ondelete="CASCADE"))
    similarity_score: Mapped[float] = mapped_column(Float)

    document_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("documents.id", ondelete="CASCADE"), index=True
    )
    question_message_id: Mapped[int] = mapped_column(Integer)
    answer_message_id: Mapped[int] = mapped_column(Integer)

    status: Mapped[str] = mapped_column(String(16), default="open", index=True)
    # Statuses: open, resolved
    resolution: Mapped[str | None] = mapped_column(String(16), nullable=True)
    # Resolutions: create, merge, dismiss
    resolved_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    def __repr__(self) -> str:
        return (
            f"<FAQDuplicateReview(id={self.id}, matched={self.matched_faq_id}, "
            f"score={self.similarity_score:.2f}, status={self.status})>"
        )


# =============================================================================
# Jobs and automation
# =============================================================================


class AutomationRule(Base):
    """A trigger (manual, cron schedule or pipeline event) bound to an action."""

    __tablename__ = "automation_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), unique=True)
    description: Mapped[str] = mapped_column(Text, default="")
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)

    # Trigger
    trigger_type: Mapped[str] = mapped_column(String(16))
    # Triggers: manual, schedule, event
    schedule: Mapped[str | None] = mapped_column(String(128), nullable=True)  # crontab
    event_type: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    # Action
    action_type: Mapped[str] = mapped_column(String(16))
    # Actions: document, faq, cleanup, batch
    action_parameters: Mapped[str] = mapped_column(Text, default="{}")  # JSON

    # Run statistics
    run_count: Mapped[int] = mapped_column(Integer, default=0)
    success_count: Mapped[int] = mapped_column(Integer, default=0)
    failure_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_execution_seconds: Mapped[float] = mapped_column(Float, default=0.0)
    last_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    next_run_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_by: Mapped[str] = mapped_column(String(64), default="system")
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<AutomationRule(id={self.id}, name={self.name}, enabled={self.enabled})>"


class AutomationJob(Base):
    """A unit of background work and its lifecycle."""

    __tablename__ = "automation_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(String(36), unique=True, index=True)  # uuid4
    job_type: Mapped[str] = mapped_column(String(32), index=True)

    status: Mapped[str] = mapped_column(String(16), default="queued", index=True)
    # Statuses: queued, processing, complete, failed, cancelled
    progress: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    run_after: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)

    # Retry bookkeeping; a job waiting for a retry stays in processing
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, default=3)
    awaiting_retry: Mapped[bool] = mapped_column(Boolean, default=False)

    # Ownership: the worker that claimed the job and when it last reported in
    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    payload: Mapped[str] = mapped_column(Text, default="{}")  # JSON
    result: Mapped[str | None] = mapped_column(Text, nullable=True)  # JSON
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    rule_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("automation_rules.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by: Mapped[str] = mapped_column(String(64), default="system")

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<AutomationJob(job_id={self.job_id}, type={self.job_type}, status={self.status})>"
