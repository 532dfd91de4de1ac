"""Idempotent ingestion of chat message events."""

from knowledge_pipeline.ingestion.channel_pull import ChannelPuller
from knowledge_pipeline.ingestion.guard import EventIngestionGuard
from knowledge_pipeline.ingestion.models import (
    ChannelPullOptions,
    ChannelPullResult,
    EventKind,
    EventStatus,
    IngestResult,
    MessageChange,
    NormalizedEvent,
)
from knowledge_pipeline.ingestion.signals import MessageChangeNotifier
from knowledge_pipeline.ingestion.slack_events import normalize_slack_event

__all__ = [
    "ChannelPullOptions",
    "ChannelPullResult",
    "ChannelPuller",
    "EventIngestionGuard",
    "EventKind",
    "EventStatus",
    "IngestResult",
    "MessageChange",
    "MessageChangeNotifier",
    "NormalizedEvent",
    "normalize_slack_event",
]
