"""Background jobs and automation rules."""

from knowledge_pipeline.jobs.context import JobContext
from knowledge_pipeline.jobs.handlers import JobHandler, JobHandlers
from knowledge_pipeline.jobs.models import (
    ACTION_JOB_TYPES,
    TERMINAL_JOB_STATUSES,
    ActionType,
    JobStatus,
    JobType,
    RuleEventType,
    TriggerType,
)
from knowledge_pipeline.jobs.orchestrator import JobOrchestrator
from knowledge_pipeline.jobs.rules import AutomationRuleService, next_fire_time, validate_cron
from knowledge_pipeline.jobs.store import JobStore

__all__ = [
    "ACTION_JOB_TYPES",
    "TERMINAL_JOB_STATUSES",
    "ActionType",
    "AutomationRuleService",
    "JobContext",
    "JobHandler",
    "JobHandlers",
    "JobOrchestrator",
    "JobStatus",
    "JobStore",
    "JobType",
    "RuleEventType",
    "TriggerType",
    "next_fire_time",
    "validate_cron",
]
