"""Data models for event ingestion."""

from dataclasses import dataclass
from enum import Enum


class EventKind(str, Enum):
    """Kind of inbound message event."""

    CREATE = "create"
    EDIT = "edit"
    DELETE = "delete"
    OTHER = "other"

    @classmethod
    def parse(cls, value: "str | EventKind") -> "EventKind":
        """Unknown kinds are recorded as OTHER rather than rejected."""
        try:
            return cls(value)
        except ValueError:
            return cls.OTHER


class EventStatus(str, Enum):
    """Processing status of an ingested event."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    DUPLICATE = "duplicate"


@dataclass
class IngestResult:
    """Outcome reported to the caller of ingest()."""

    status: EventStatus
    record_id: int | None
    message: str = ""


@dataclass
class MessageChange:
    """A message mutation that downstream listeners may react to."""

    kind: EventKind
    message_external_id: str
    channel: str | None = None
    message_id: int | None = None


@dataclass
class NormalizedEvent:
    """A platform event reduced to what the ingestion guard needs."""

    external_id: str
    kind: EventKind
    payload: dict
    channel: str | None = None


@dataclass
class ChannelPullOptions:
    """What to pull from one channel. `oldest`/`latest` bound the history window."""

    channel_id: str
    oldest: str | None = None
    latest: str | None = None
    include_threads: bool | None = None


@dataclass
class ChannelPullResult:
    """Counts of a channel history pull."""

    channel_id: str
    messages_fetched: int = 0
    new_messages: int = 0
    duplicate_messages: int = 0
    failed_messages: int = 0
    skipped_messages: int = 0
    threads_fetched: int = 0
    thread_replies_fetched: int = 0
    pages: int = 0

    def to_dict(self) -> dict:
        return {
            "channel_id": self.channel_id,
            "messages_fetched": self.messages_fetched,
            "new_messages": self.new_messages,
            "duplicate_messages": self.duplicate_messages,
            "failed_messages": self.failed_messages,
            "skipped_messages": self.skipped_messages,
            "threads_fetched": self.threads_fetched,
            "thread_replies_fetched": self.thread_replies_fetched,
            "pages": self.pages,
        }
