"""Data models for background jobs and automation rules."""

from enum import Enum


class JobType(str, Enum):
    """Kinds of background work."""

    DOCUMENT_CREATION = "document_creation"
    FAQ_GENERATION = "faq_generation"
    DOCUMENT_ENHANCEMENT = "document_enhancement"
    BATCH_PROCESSING = "batch_processing"
    CLEANUP = "cleanup"
    CHANNEL_PULL = "channel_pull"


class JobStatus(str, Enum):
    """Job lifecycle: queued -> processing -> complete | failed, or cancelled."""

    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_JOB_STATUSES = {JobStatus.COMPLETE, JobStatus.FAILED, JobStatus.CANCELLED}


class TriggerType(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    EVENT = "event"


class ActionType(str, Enum):
    DOCUMENT = "document"
    FAQ = "faq"
    CLEANUP = "cleanup"
    BATCH = "batch"
    CHANNEL_PULL = "channel_pull"


class RuleEventType(str, Enum):
    """Pipeline events an event-triggered rule can listen to."""

    MESSAGE_CREATED = "message_created"
    MESSAGE_EDITED = "message_edited"
    MESSAGE_DELETED = "message_deleted"
    DOCUMENTS_CREATED = "documents_created"


ACTION_JOB_TYPES = {
    ActionType.DOCUMENT: JobType.DOCUMENT_CREATION,
    ActionType.FAQ: JobType.FAQ_GENERATION,
    ActionType.CLEANUP: JobType.CLEANUP,
    ActionType.BATCH: JobType.BATCH_PROCESSING,
    ActionType.CHANNEL_PULL: JobType.CHANNEL_PULL,
}
