"""Data models for document assembly."""

from dataclasses import dataclass, field
from enum import Enum


class DocumentStatus(str, Enum):
    """Document lifecycle status."""

    CREATING = "creating"
    COMPLETE = "complete"
    FAILED = "failed"


DEFAULT_CATEGORY = "general"


@dataclass
class AssemblyOptions:
    """Caller-supplied metadata; missing title or category is generated."""

    title: str | None = None
    description: str | None = None
    category: str | None = None
    created_by: str = "system"


@dataclass
class DocumentMetadata:
    title: str
    description: str
    category: str
    generated: bool = True


@dataclass
class BatchAssemblyResult:
    """Outcome of assembling every unassigned message."""

    documents_created: int = 0
    messages_processed: int = 0
    document_ids: list[int] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    halted: bool = False

    def to_dict(self) -> dict:
        return {
            "documents_created": self.documents_created,
            "messages_processed": self.messages_processed,
            "document_ids": self.document_ids,
            "errors": self.errors,
            "halted": self.halted,
        }
