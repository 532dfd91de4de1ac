"""Automation rules: manual, cron and event triggers bound to job actions."""

import json
import logging
from datetime import datetime, timezone
from typing import Any

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.db.models import AutomationJob, AutomationRule, utcnow
from knowledge_pipeline.exceptions import ConflictError, NotFoundError, ValidationError
from knowledge_pipeline.ingestion.models import EventKind, MessageChange
from knowledge_pipeline.jobs.models import (
    ACTION_JOB_TYPES,
    ActionType,
    JobStatus,
    RuleEventType,
    TriggerType,
)
from knowledge_pipeline.jobs.store import JobStore, build_job

logger = logging.getLogger(__name__)

MESSAGE_EVENTS = {
    EventKind.CREATE: RuleEventType.MESSAGE_CREATED,
    EventKind.EDIT: RuleEventType.MESSAGE_EDITED,
    EventKind.DELETE: RuleEventType.MESSAGE_DELETED,
}

UPDATABLE_FIELDS = {
    "name",
    "description",
    "enabled",
    "trigger_type",
    "schedule",
    "event_type",
    "action_type",
    "action_parameters",
}


def validate_cron(expression: str) -> CronTrigger:
    """Parse a five-field crontab expression (evaluated in UTC)."""
    if not expression or not expression.strip():
        raise ValidationError("A cron schedule is required")
    try:
        return CronTrigger.from_crontab(expression.strip(), timezone="UTC")
    except ValueError as e:
        raise ValidationError(f"Invalid cron schedule {expression!r}: {e}") from e


def next_fire_time(expression: str, after: datetime) -> datetime | None:
    """Next fire time strictly after `after`, as naive UTC."""
    trigger = validate_cron(expression)
    aware = after.replace(tzinfo=timezone.utc) if after.tzinfo is None else after.astimezone(timezone.utc)
    fire_at = trigger.get_next_fire_time(aware, aware)
    if fire_at is None:
        return None
    return fire_at.astimezone(timezone.utc).replace(tzinfo=None)


def _rule_parameters(rule: AutomationRule) -> dict[str, Any]:
    try:
        parameters = json.loads(rule.action_parameters or "{}")
    except json.JSONDecodeError:
        return {}
    return parameters if isinstance(parameters, dict) else {}


class AutomationRuleService:
    """CRUD and firing of automation rules.

    Firing a rule re-reads `enabled` in the UPDATE that bumps its run count,
    and the job is written in that same transaction: a rule disabled a moment
    earlier never produces a job.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        store: JobStore | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.store = store or JobStore(self.session_maker)

    async def create_rule(
        self,
        name: str,
        trigger_type: TriggerType | str,
        action_type: ActionType | str,
        schedule: str | None = None,
        event_type: RuleEventType | str | None = None,
        action_parameters: dict[str, Any] | None = None,
        description: str = "",
        enabled: bool = True,
        created_by: str = "system",
    ) -> AutomationRule:
        values = self._validated(
            {
                "name": name,
                "description": description,
                "enabled": enabled,
                "trigger_type": trigger_type,
                "schedule": schedule,
                "event_type": event_type,
                "action_type": action_type,
                "action_parameters": action_parameters,
            }
        )
        rule = AutomationRule(**values, created_by=created_by)
        async with self.session_maker() as session:
            session.add(rule)
            try:
                await session.commit()
            except IntegrityError as e:
                raise ConflictError(f"A rule named {name!r} already exists") from e

        logger.info(f"Created {rule.trigger_type} rule {rule.name!r} -> {rule.action_type}")
        return rule

    async def update_rule(self, rule_id: int, **changes: Any) -> AutomationRule:
        unknown = set(changes) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown rule fields: {sorted(unknown)}")

        async with self.session_maker() as session:
            rule = await session.get(AutomationRule, rule_id)
            if rule is None:
                raise NotFoundError(f"Rule {rule_id} not found")

            current = {
                "name": rule.name,
                "description": rule.description,
                "enabled": rule.enabled,
                "trigger_type": rule.trigger_type,
                "schedule": rule.schedule,
                "event_type": rule.event_type,
                "action_type": rule.action_type,
                "action_parameters": _rule_parameters(rule),
            }
            current.update(changes)
            for key, value in self._validated(current).items():
                setattr(rule, key, value)
            rule.updated_at = utcnow()
            try:
                await session.commit()
            except IntegrityError as e:
                raise ConflictError(f"A rule named {current['name']!r} already exists") from e

        logger.info(f"Updated rule {rule_id}: {sorted(changes)}")
        return rule

    def _validated(self, fields: dict[str, Any]) -> dict[str, Any]:
        name = (fields.get("name") or "").strip()
        if not name:
            raise ValidationError("A rule name is required")
        try:
            trigger_type = TriggerType(fields["trigger_type"])
        except ValueError as e:
            raise ValidationError(f"Unknown trigger type: {fields['trigger_type']!r}") from e
        try:
            action_type = ActionType(fields["action_type"])
        except ValueError as e:
            raise ValidationError(f"Unknown action type: {fields['action_type']!r}") from e

        parameters = fields.get("action_parameters") or {}
        if not isinstance(parameters, dict):
            raise ValidationError("Action parameters must be an object")

        schedule = fields.get("schedule") or None
        event_type = fields.get("event_type") or None
        next_run_at = None

        if trigger_type == TriggerType.SCHEDULE:
            validate_cron(schedule)
            if fields.get("enabled", True):
                next_run_at = next_fire_time(schedule, utcnow())
        else:
            schedule = None

        if trigger_type == TriggerType.EVENT:
            if event_type is None:
                raise ValidationError("Event rules need an event type")
            try:
                event_type = RuleEventType(event_type).value
            except ValueError as e:
                raise ValidationError(f"Unknown event type: {event_type!r}") from e
        else:
            event_type = None

        return {
            "name": name,
            "description": fields.get("description") or "",
            "enabled": bool(fields.get("enabled", True)),
            "trigger_type": trigger_type.value,
            "schedule": schedule,
            "event_type": event_type,
            "action_type": action_type.value,
            "action_parameters": json.dumps(parameters, default=str),
            "next_run_at": next_run_at,
        }

    async def delete_rule(self, rule_id: int) -> None:
        """Delete a rule. Its past jobs are kept and lose the reference."""
        async with self.session_maker() as session:
            if await session.get(AutomationRule, rule_id) is None:
                raise NotFoundError(f"Rule {rule_id} not found")
            await session.execute(
                update(AutomationJob).where(AutomationJob.rule_id == rule_id).values(rule_id=None)
            )
            await session.execute(delete(AutomationRule).where(AutomationRule.id == rule_id))
            await session.commit()
        logger.info(f"Deleted rule {rule_id}")

    async def get_rule(self, rule_id: int) -> AutomationRule:
        async with self.session_maker() as session:
            rule = await session.get(AutomationRule, rule_id)
        if rule is None:
            raise NotFoundError(f"Rule {rule_id} not found")
        return rule

    async def list_rules(
        self,
        enabled: bool | None = None,
        action_type: str | None = None,
        trigger_type: str | None = None,
        search: str | None = None,
    ) -> list[AutomationRule]:
        query = select(AutomationRule).order_by(AutomationRule.name)
        if enabled is not None:
            query = query.where(AutomationRule.enabled.is_(enabled))
        if action_type:
            query = query.where(AutomationRule.action_type == action_type)
        if trigger_type:
            query = query.where(AutomationRule.trigger_type == trigger_type)
        if search:
            pattern = f"%{search}%"
            query = query.where(
                or_(AutomationRule.name.ilike(pattern), AutomationRule.description.ilike(pattern))
            )
        async with self.session_maker() as session:
            result = await session.execute(query)
            return list(result.scalars())

    # -------------------------------------------------------------------------
    # Firing
    # -------------------------------------------------------------------------

    async def fire_rule(
        self,
        rule_id: int,
        triggered_by: str = "manual",
        context: dict[str, Any] | None = None,
    ) -> str:
        """Queue the rule's action now. Returns the job id.

        Raises:
            NotFoundError: Rule does not exist
            ValidationError: Rule is disabled
        """
        now = utcnow()
        async with self.session_maker() as session:
            fired = await session.execute(
                update(AutomationRule)
                .where(AutomationRule.id == rule_id, AutomationRule.enabled.is_(True))
                .values(run_count=AutomationRule.run_count + 1, last_run_at=now)
            )
            rule = await session.get(AutomationRule, rule_id, populate_existing=True)
            if rule is None:
                raise NotFoundError(f"Rule {rule_id} not found")
            if fired.rowcount == 0:
                await session.rollback()
                raise ValidationError(f"Rule {rule.name!r} is disabled")

            job = self._job_for(rule, triggered_by, context)
            session.add(job)
            await session.commit()

        logger.info(f"Rule {rule.name!r} fired ({triggered_by}), job {job.job_id}")
        return job.job_id

    async def fire_due_schedules(self, now: datetime | None = None) -> list[str]:
        """Fire every enabled schedule rule whose next run time has passed.

        Missed runs collapse into one job. The advance of next_run_at is
        conditional on the value read, so concurrent callers fire a rule once.
        """
        now = now or utcnow()
        job_ids = []
        async with self.session_maker() as session:
            result = await session.execute(
                select(AutomationRule)
                .where(
                    AutomationRule.enabled.is_(True),
                    AutomationRule.trigger_type == TriggerType.SCHEDULE.value,
                    AutomationRule.next_run_at <= now,
                )
                .order_by(AutomationRule.next_run_at, AutomationRule.id)
            )
            for rule in result.scalars().all():
                fired = await session.execute(
                    update(AutomationRule)
                    .where(
                        AutomationRule.id == rule.id,
                        AutomationRule.enabled.is_(True),
                        AutomationRule.next_run_at == rule.next_run_at,
                    )
                    .values(
                        run_count=AutomationRule.run_count + 1,
                        last_run_at=now,
                        next_run_at=next_fire_time(rule.schedule, now),
                    )
                )
                if not fired.rowcount:
                    continue
                job = self._job_for(rule, "schedule", None)
                session.add(job)
                job_ids.append(job.job_id)
            await session.commit()

        if job_ids:
            logger.info(f"Fired {len(job_ids)} scheduled rules")
        return job_ids

    async def fire_event(
        self,
        event_type: RuleEventType | str,
        context: dict[str, Any] | None = None,
    ) -> list[str]:
        """Fire the enabled rules listening to `event_type`.

        A rule that still has a job waiting in the queue is not fired again,
        so a burst of events results in one run.
        """
        try:
            event_type = RuleEventType(event_type)
        except ValueError as e:
            raise ValidationError(f"Unknown event type: {event_type!r}") from e

        async with self.session_maker() as session:
            queued = select(AutomationJob.rule_id).where(
                AutomationJob.status == JobStatus.QUEUED.value,
                AutomationJob.rule_id.is_not(None),
            )
            result = await session.execute(
                select(AutomationRule.id)
                .where(
                    AutomationRule.enabled.is_(True),
                    AutomationRule.trigger_type == TriggerType.EVENT.value,
                    AutomationRule.event_type == event_type.value,
                    AutomationRule.id.not_in(queued),
                )
                .order_by(AutomationRule.id)
            )
            rule_ids = list(result.scalars())

        job_ids = []
        for rule_id in rule_ids:
            try:
                job_ids.append(
                    await self.fire_rule(rule_id, triggered_by=f"event:{event_type.value}", context=context)
                )
            except (NotFoundError, ValidationError) as e:
                logger.debug(f"Skipping rule {rule_id} for {event_type.value}: {e}")
        return job_ids

    async def on_message_change(self, change: MessageChange) -> None:
        """Listener for ingestion notifications."""
        event_type = MESSAGE_EVENTS.get(change.kind)
        if event_type is None:
            return
        await self.fire_event(
            event_type,
            {"message_external_id": change.message_external_id, "channel": change.channel},
        )

    def _job_for(
        self, rule: AutomationRule, triggered_by: str, context: dict[str, Any] | None
    ) -> AutomationJob:
        payload = _rule_parameters(rule)
        payload["trigger"] = {"type": triggered_by, **(context or {})}
        priority = payload.pop("priority", 0)
        return build_job(
            ACTION_JOB_TYPES[ActionType(rule.action_type)],
            payload,
            priority=priority if isinstance(priority, int) else 0,
            rule_id=rule.id,
            created_by=f"rule:{rule.name}",
        )

    async def record_run_outcome(self, rule_id: int, success: bool, elapsed_seconds: float) -> None:
        """Count a finished run and fold its duration into the running average."""
        finished = AutomationRule.success_count + AutomationRule.failure_count
        values: dict[str, Any] = {
            "avg_execution_seconds": (AutomationRule.avg_execution_seconds * finished + elapsed_seconds)
            / (finished + 1),
        }
        if success:
            values["success_count"] = AutomationRule.success_count + 1
        else:
            values["failure_count"] = AutomationRule.failure_count + 1

        async with self.session_maker() as session:
            await session.execute(update(AutomationRule).where(AutomationRule.id == rule_id).values(**values))
            await session.commit()
