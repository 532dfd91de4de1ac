"""Database module."""

from knowledge_pipeline.db.database import async_session_maker, engine, get_session, init_db
from knowledge_pipeline.db.models import (
    FAQ,
    AutomationJob,
    AutomationRule,
    Base,
    Document,
    DocumentMessage,
    DocumentQAPair,
    FAQDuplicateReview,
    FAQSource,
    IngestedEvent,
    Message,
    utcnow,
)

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_session",
    "init_db",
    "utcnow",
    "IngestedEvent",
    "Message",
    "Document",
    "DocumentMessage",
    "DocumentQAPair",
    "FAQ",
    "FAQSource",
    "FAQDuplicateReview",
    "AutomationJob",
    "AutomationRule",
]
