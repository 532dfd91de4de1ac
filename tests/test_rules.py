"""Tests for automation rules."""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from knowledge_pipeline.db.models import AutomationJob, AutomationRule, utcnow
from knowledge_pipeline.exceptions import ConflictError, NotFoundError, ValidationError
from knowledge_pipeline.ingestion.models import EventKind, MessageChange
from knowledge_pipeline.jobs import AutomationRuleService, JobStore, next_fire_time, validate_cron


@pytest.fixture
def store(session_maker):
    return JobStore(session_maker)


@pytest.fixture
def rules(session_maker, store):
    return AutomationRuleService(session_maker, store)


async def get_rule(session_maker, rule_id: int) -> AutomationRule:
    async with session_maker() as session:
        return await session.get(AutomationRule, rule_id)


async def set_rule(session_maker, rule_id: int, **values) -> None:
    async with session_maker() as session:
        await session.execute(update(AutomationRule).where(AutomationRule.id == rule_id).values(**values))
        await session.commit()


class TestCron:
    @pytest.mark.parametrize("expression", ["", "   ", "every hour", "61 * * * *", "* * *"])
    def test_invalid(self, expression):
        with pytest.raises(ValidationError):
            validate_cron(expression)

    def test_next_fire_time(self):
        assert next_fire_time("0 * * * *", datetime(2024, 3, 4, 9, 0)) == datetime(2024, 3, 4, 10, 0)
        assert next_fire_time("*/15 * * * *", datetime(2024, 3, 4, 9, 7)) == datetime(2024, 3, 4, 9, 15)

    def test_daily(self):
        """Fire times are strictly after the reference time."""
        assert next_fire_time("30 2 * * *", datetime(2024, 3, 4, 2, 30)) == datetime(2024, 3, 5, 2, 30)


class TestCreateRule:
    @pytest.mark.asyncio
    async def test_schedule_rule(self, rules):
        rule = await rules.create_rule(
            "nightly faqs",
            "schedule",
            "faq",
            schedule="0 2 * * *",
            action_parameters={"require_approval": True},
            description="FAQs for yesterday's documents",
        )

        assert rule.id is not None
        assert rule.enabled
        assert rule.next_run_at > utcnow()
        assert rule.event_type is None
        assert rule.run_count == 0

    @pytest.mark.asyncio
    async def test_disabled_schedule_has_no_next_run(self, rules):
        rule = await rules.create_rule("paused", "schedule", "cleanup", schedule="0 3 * * *", enabled=False)
        assert rule.next_run_at is None

    @pytest.mark.asyncio
    async def test_manual_rule_ignores_schedule_and_event(self, rules):
        rule = await rules.create_rule(
            "manual", "manual", "batch", schedule="0 3 * * *", event_type="message_created"
        )
        assert rule.schedule is None
        assert rule.event_type is None
        assert rule.next_run_at is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"trigger_type": "event", "action_type": "faq"},
            {"trigger_type": "event", "action_type": "faq", "event_type": "reaction_added"},
            {"trigger_type": "hourly", "action_type": "faq"},
            {"trigger_type": "schedule", "action_type": "faq"},
            {"trigger_type": "manual", "action_type": "mining"},
            {"trigger_type": "manual", "action_type": "faq", "action_parameters": ["not", "a", "dict"]},
        ],
    )
    @pytest.mark.asyncio
    async def test_invalid_rules(self, rules, kwargs):
        with pytest.raises(ValidationError):
            await rules.create_rule("broken", **kwargs)

    @pytest.mark.asyncio
    async def test_name_is_required(self, rules):
        with pytest.raises(ValidationError):
            await rules.create_rule("  ", "manual", "faq")

    @pytest.mark.asyncio
    async def test_duplicate_name(self, rules):
        await rules.create_rule("weekly cleanup", "manual", "cleanup")
        with pytest.raises(ConflictError):
            await rules.create_rule("weekly cleanup", "manual", "faq")


class TestUpdateAndDelete:
    @pytest.mark.asyncio
    async def test_update(self, rules):
        rule = await rules.create_rule("faqs", "manual", "faq")

        updated = await rules.update_rule(rule.id, trigger_type="schedule", schedule="*/30 * * * *")

        assert updated.trigger_type == "schedule"
        assert updated.schedule == "*/30 * * * *"
        assert updated.next_run_at is not None

    @pytest.mark.asyncio
    async def test_switching_away_from_schedule_clears_it(self, rules):
        rule = await rules.create_rule("faqs", "schedule", "faq", schedule="0 * * * *")

        updated = await rules.update_rule(rule.id, trigger_type="event", event_type="documents_created")

        assert updated.schedule is None
        assert updated.next_run_at is None
        assert updated.event_type == "documents_created"

    @pytest.mark.asyncio
    async def test_disabling_clears_next_run(self, rules):
        rule = await rules.create_rule("faqs", "schedule", "faq", schedule="0 * * * *")
        assert (await rules.update_rule(rule.id, enabled=False)).next_run_at is None

    @pytest.mark.asyncio
    async def test_unknown_field(self, rules):
        rule = await rules.create_rule("faqs", "manual", "faq")
        with pytest.raises(ValidationError, match="run_count"):
            await rules.update_rule(rule.id, run_count=10)

    @pytest.mark.asyncio
    async def test_unknown_rule(self, rules):
        with pytest.raises(NotFoundError):
            await rules.update_rule(404, enabled=False)
        with pytest.raises(NotFoundError):
            await rules.delete_rule(404)
        with pytest.raises(NotFoundError):
            await rules.get_rule(404)

    @pytest.mark.asyncio
    async def test_delete_keeps_jobs(self, rules, store):
        """Deleting a rule keeps its jobs, without the rule reference."""
        rule = await rules.create_rule("faqs", "manual", "faq")
        job_id = await rules.fire_rule(rule.id)

        await rules.delete_rule(rule.id)

        status = await store.get_job_status(job_id)
        assert status["rule_id"] is None
        assert await rules.list_rules() == []

    @pytest.mark.asyncio
    async def test_list_filters(self, rules):
        await rules.create_rule("nightly faqs", "schedule", "faq", schedule="0 2 * * *")
        await rules.create_rule("cleanup", "manual", "cleanup", description="Prune old jobs", enabled=False)
        await rules.create_rule("faqs on new documents", "event", "faq", event_type="documents_created")

        assert [r.name for r in await rules.list_rules()] == ["cleanup", "faqs on new documents", "nightly faqs"]
        assert [r.name for r in await rules.list_rules(enabled=False)] == ["cleanup"]
        assert len(await rules.list_rules(action_type="faq")) == 2
        assert [r.name for r in await rules.list_rules(trigger_type="event")] == ["faqs on new documents"]
        assert [r.name for r in await rules.list_rules(search="prune")] == ["cleanup"]


class TestFireRule:
    @pytest.mark.asyncio
    async def test_fire(self, rules, store):
        rule = await rules.create_rule(
            "urgent faqs", "manual", "faq", action_parameters={"document_ids": [4], "priority": 7}
        )

        job_id = await rules.fire_rule(rule.id, context={"requested_by": "U1"})

        status = await store.get_job_status(job_id)
        assert status["job_type"] == "faq_generation"
        assert status["priority"] == 7
        assert status["payload"] == {
            "document_ids": [4],
            "trigger": {"type": "manual", "requested_by": "U1"},
        }
        assert status["rule_id"] == rule.id
        assert status["created_by"] == "rule:urgent faqs"

        rule = await rules.get_rule(rule.id)
        assert rule.run_count == 1
        assert rule.last_run_at is not None

    @pytest.mark.asyncio
    async def test_disabled_rule_queues_nothing(self, rules, store):
        rule = await rules.create_rule("paused", "manual", "cleanup", enabled=False)

        with pytest.raises(ValidationError, match="disabled"):
            await rules.fire_rule(rule.id)

        assert await store.list_jobs() == []
        assert (await rules.get_rule(rule.id)).run_count == 0

    @pytest.mark.asyncio
    async def test_unknown_rule(self, rules):
        with pytest.raises(NotFoundError):
            await rules.fire_rule(404)


class TestScheduledRules:
    @pytest.mark.asyncio
    async def test_due_rule_fires_once_and_advances(self, rules, store, session_maker):
        rule = await rules.create_rule("hourly", "schedule", "cleanup", schedule="0 * * * *")
        await set_rule(session_maker, rule.id, next_run_at=datetime(2024, 3, 4, 9, 0))
        now = datetime(2024, 3, 4, 9, 0, 30)

        first = await rules.fire_due_schedules(now)
        second = await rules.fire_due_schedules(now)

        assert len(first) == 1
        assert second == []
        rule = await get_rule(session_maker, rule.id)
        assert rule.next_run_at == datetime(2024, 3, 4, 10, 0)
        assert rule.run_count == 1
        status = await store.get_job_status(first[0])
        assert status["payload"]["trigger"] == {"type": "schedule"}

    @pytest.mark.asyncio
    async def test_missed_runs_collapse(self, rules, session_maker):
        """A rule several periods overdue fires once and moves past now."""
        rule = await rules.create_rule("quarter-hourly", "schedule", "faq", schedule="*/15 * * * *")
        await set_rule(session_maker, rule.id, next_run_at=datetime(2024, 3, 4, 6, 0))

        fired = await rules.fire_due_schedules(datetime(2024, 3, 4, 9, 7))

        assert len(fired) == 1
        assert (await get_rule(session_maker, rule.id)).next_run_at == datetime(2024, 3, 4, 9, 15)

    @pytest.mark.asyncio
    async def test_not_yet_due(self, rules):
        await rules.create_rule("hourly", "schedule", "cleanup", schedule="0 * * * *")
        assert await rules.fire_due_schedules(utcnow()) == []


class TestEventRules:
    @pytest.mark.asyncio
    async def test_burst_of_events_queues_one_job(self, rules, store):
        await rules.create_rule("assemble", "event", "document", event_type="message_created")

        first = await rules.fire_event("message_created", {"channel": "C1"})
        second = await rules.fire_event("message_created", {"channel": "C1"})

        assert len(first) == 1
        assert second == []
        assert len(await store.list_jobs()) == 1

    @pytest.mark.asyncio
    async def test_fires_again_once_job_started(self, rules, store, session_maker):
        await rules.create_rule("assemble", "event", "document", event_type="message_created")
        [job_id] = await rules.fire_event("message_created")
        async with session_maker() as session:
            await session.execute(
                update(AutomationJob).where(AutomationJob.job_id == job_id).values(status="processing")
            )
            await session.commit()

        assert len(await rules.fire_event("message_created")) == 1

    @pytest.mark.asyncio
    async def test_only_matching_enabled_rules(self, rules):
        await rules.create_rule("edits", "event", "document", event_type="message_edited")
        await rules.create_rule("paused", "event", "document", event_type="message_created", enabled=False)

        assert await rules.fire_event("message_created") == []

    @pytest.mark.asyncio
    async def test_unknown_event(self, rules):
        with pytest.raises(ValidationError):
            await rules.fire_event("reaction_added")

    @pytest.mark.parametrize(
        "kind, event_type",
        [
            (EventKind.CREATE, "message_created"),
            (EventKind.EDIT, "message_edited"),
            (EventKind.DELETE, "message_deleted"),
        ],
    )
    @pytest.mark.asyncio
    async def test_message_changes(self, rules, store, kind, event_type):
        await rules.create_rule("react", "event", "batch", event_type=event_type)

        await rules.on_message_change(MessageChange(kind, "C1:1700000000.000100", "C1"))

        [job] = await store.list_jobs()
        status = await store.get_job_status(job.job_id)
        assert status["job_type"] == "batch_processing"
        assert status["payload"]["trigger"]["type"] == f"event:{event_type}"

    @pytest.mark.asyncio
    async def test_other_changes_are_ignored(self, rules, store):
        await rules.create_rule("react", "event", "batch", event_type="message_created")

        await rules.on_message_change(MessageChange(EventKind.OTHER, "C1:1"))

        assert await store.list_jobs() == []


class TestRunOutcome:
    @pytest.mark.asyncio
    async def test_average_duration(self, rules):
        rule = await rules.create_rule("faqs", "manual", "faq")

        await rules.record_run_outcome(rule.id, True, 10.0)
        await rules.record_run_outcome(rule.id, False, 20.0)

        rule = await rules.get_rule(rule.id)
        assert rule.success_count == 1
        assert rule.failure_count == 1
        assert rule.avg_execution_seconds == pytest.approx(15.0)

    @pytest.mark.asyncio
    async def test_finished_jobs_do_not_block_events(self, rules, store, session_maker):
        rule = await rules.create_rule("faqs", "event", "faq", event_type="documents_created")
        job_id = await rules.fire_rule(rule.id)
        async with session_maker() as session:
            await session.execute(
                update(AutomationJob)
                .where(AutomationJob.job_id == job_id)
                .values(status="complete", completed_at=utcnow() - timedelta(minutes=1))
            )
            await session.commit()

        assert len(await rules.fire_event("documents_created")) == 1
