"""Tests for the event ingestion guard."""

import asyncio
import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import func, select

from knowledge_pipeline.db.models import (
    Document,
    DocumentMessage,
    DocumentQAPair,
    IngestedEvent,
    Message,
    utcnow,
)
from knowledge_pipeline.exceptions import ValidationError
from knowledge_pipeline.ingestion import EventIngestionGuard, EventKind, EventStatus, MessageChangeNotifier
from knowledge_pipeline.ingestion.guard import parse_timestamp


def create_payload(message_id: str = "C1:1700000000.000100", text: str = "How do I reset my VPN token?"):
    return {
        "message_id": message_id,
        "text": text,
        "author": "U123",
        "channel": "C1",
        "timestamp": "1700000000.000100",
    }


@pytest.fixture
def notifier():
    return MessageChangeNotifier()


@pytest.fixture
def guard(session_maker, notifier):
    return EventIngestionGuard(session_maker, notifier)


async def count(session_maker, model) -> int:
    async with session_maker() as session:
        return await session.scalar(select(func.count()).select_from(model))


# =============================================================================
# Timestamp parsing
# =============================================================================


class TestParseTimestamp:
    """Tests for parse_timestamp."""

    def test_slack_ts_string(self):
        """Slack's "seconds.micros" string is parsed as epoch seconds."""
        assert parse_timestamp("1700000000.000100") == datetime(2023, 11, 14, 22, 13, 20, 100)

    def test_epoch_number(self):
        """Numbers are epoch seconds in UTC."""
        assert parse_timestamp(0) == datetime(1970, 1, 1)

    def test_iso_with_zone_is_converted_to_naive_utc(self):
        """ISO text with an offset is normalized to naive UTC."""
        assert parse_timestamp("2024-03-04T10:00:00+01:00") == datetime(2024, 3, 4, 9, 0)

    def test_iso_with_z_suffix(self):
        """A trailing Z is accepted."""
        assert parse_timestamp("2024-03-04T09:00:00Z") == datetime(2024, 3, 4, 9, 0)

    @pytest.mark.parametrize("value", [None, "", "yesterday", [1]])
    def test_invalid_values(self, value):
        """Unusable values raise ValidationError."""
        with pytest.raises(ValidationError):
            parse_timestamp(value)


# =============================================================================
# Idempotency
# =============================================================================


class TestIngest:
    """Tests for EventIngestionGuard.ingest."""

    @pytest.mark.asyncio
    async def test_create_stores_message(self, guard, session_maker):
        """A create event inserts the message and completes the record."""
        result = await guard.ingest("Ev1", EventKind.CREATE, create_payload(), channel="C1")

        assert result.status == EventStatus.COMPLETE
        async with session_maker() as session:
            message = await session.scalar(select(Message))
            record = await session.get(IngestedEvent, result.record_id)
        assert message.text == "How do I reset my VPN token?"
        assert message.channel == "C1"
        assert record.status == "complete"
        assert record.attempts == 1
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_redelivery_is_duplicate(self, guard, session_maker):
        """Delivering the same event id twice applies it once."""
        first = await guard.ingest("Ev1", "create", create_payload())
        second = await guard.ingest("Ev1", "create", create_payload())

        assert first.status == EventStatus.COMPLETE
        assert second.status == EventStatus.DUPLICATE
        assert second.record_id == first.record_id
        assert await count(session_maker, Message) == 1
        assert await count(session_maker, IngestedEvent) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_apply_once(self, guard, session_maker):
        """Two simultaneous deliveries of one event create one message."""
        results = await asyncio.gather(
            guard.ingest("Ev1", "create", create_payload()),
            guard.ingest("Ev1", "create", create_payload()),
        )

        statuses = sorted(r.status.value for r in results)
        assert statuses == ["complete", "duplicate"]
        assert await count(session_maker, Message) == 1

    @pytest.mark.asyncio
    async def test_same_message_under_new_event_id(self, guard, session_maker):
        """A message delivered again under another event id is not inserted twice."""
        await guard.ingest("Ev1", "create", create_payload())
        result = await guard.ingest("Ev2", "create", create_payload())

        assert result.status == EventStatus.DUPLICATE
        assert await count(session_maker, Message) == 1
        assert await count(session_maker, IngestedEvent) == 2

    @pytest.mark.asyncio
    async def test_unknown_kind_is_recorded_as_other(self, guard, session_maker):
        """Unknown kinds are recorded and completed without side effects."""
        result = await guard.ingest("Ev9", "reaction_added", {"reaction": "thumbsup"})

        assert result.status == EventStatus.COMPLETE
        async with session_maker() as session:
            record = await session.get(IngestedEvent, result.record_id)
        assert record.kind == "other"
        assert await count(session_maker, Message) == 0


# =============================================================================
# Failures and retries
# =============================================================================


class TestFailures:
    """Handler failures are stored, never raised."""

    @pytest.mark.asyncio
    async def test_handler_error_marks_record_failed(self, guard, session_maker):
        """A payload the handler cannot apply leaves a FAILED record with the error."""
        payload = create_payload()
        payload["timestamp"] = "not a time"

        result = await guard.ingest("Ev1", "create", payload)

        assert result.status == EventStatus.FAILED
        async with session_maker() as session:
            record = await session.get(IngestedEvent, result.record_id)
        assert record.status == "failed"
        assert "timestamp" in record.last_error
        assert record.completed_at is None
        assert await count(session_maker, Message) == 0

    @pytest.mark.asyncio
    async def test_failed_event_is_processed_again_on_redelivery(self, guard, session_maker):
        """Redelivering a FAILED event runs the handler again."""
        bad = create_payload()
        bad.pop("channel")
        failed = await guard.ingest("Ev1", "create", bad)
        assert failed.status == EventStatus.FAILED

        # The stored payload is what gets processed, so fix it in place
        async with session_maker() as session:
            record = await session.get(IngestedEvent, failed.record_id)
            record.payload = json.dumps(create_payload())
            await session.commit()

        retried = await guard.ingest("Ev1", "create", create_payload())
        assert retried.status == EventStatus.COMPLETE
        async with session_maker() as session:
            record = await session.get(IngestedEvent, failed.record_id)
        assert record.attempts == 2
        assert await count(session_maker, Message) == 1

    @pytest.mark.asyncio
    async def test_retry_failed_events_respects_attempt_cap(self, guard, session_maker):
        """Events that used up their attempts are skipped by the retry sweep."""
        bad = create_payload()
        bad["timestamp"] = "never"
        await guard.ingest("Ev1", "create", bad)
        await guard.ingest("Ev2", "create", {**bad, "message_id": "C1:2"})

        async with session_maker() as session:
            record = await session.scalar(select(IngestedEvent).where(IngestedEvent.external_id == "Ev2"))
            record.attempts = 3
            await session.commit()

        stats = await guard.retry_failed_events(max_attempts=3)

        assert stats == {"retried": 1, "succeeded": 0, "failed": 1}

    @pytest.mark.asyncio
    async def test_event_stats(self, guard):
        """Stats count records per status."""
        await guard.ingest("Ev1", "create", create_payload())
        await guard.ingest("Ev1", "create", create_payload())
        await guard.ingest("Ev2", "create", {**create_payload("C1:2"), "timestamp": "bad"})

        stats = await guard.get_event_stats()

        assert stats["total"] == 2
        assert stats["by_status"]["complete"] == 1
        assert stats["by_status"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_prune_keeps_failed_and_recent(self, guard, session_maker):
        """Pruning removes settled records older than the window only."""
        await guard.ingest("Ev1", "create", create_payload())
        await guard.ingest("Ev2", "create", {**create_payload("C1:2"), "timestamp": "bad"})
        await guard.ingest("Ev3", "other", {})
        async with session_maker() as session:
            for record in (await session.execute(select(IngestedEvent))).scalars():
                if record.external_id != "Ev3":
                    record.created_at = utcnow() - timedelta(days=40)
            await session.commit()

        pruned = await guard.prune_events(30)

        assert pruned == 1
        async with session_maker() as session:
            remaining = set((await session.execute(select(IngestedEvent.external_id))).scalars())
        assert remaining == {"Ev2", "Ev3"}


# =============================================================================
# Edits and deletes
# =============================================================================


class TestMutations:
    """Tests for edit and delete events."""

    @pytest.mark.asyncio
    async def test_edit_updates_text(self, guard, session_maker):
        """An edit replaces the message text."""
        await guard.ingest("Ev1", "create", create_payload())
        result = await guard.ingest("Ev2", "edit", {"message_id": "C1:1700000000.000100", "text": "Edited"})

        assert result.status == EventStatus.COMPLETE
        async with session_maker() as session:
            message = await session.scalar(select(Message))
        assert message.text == "Edited"
        assert message.updated_at is not None

    @pytest.mark.asyncio
    async def test_edit_of_unknown_message_is_noop(self, guard):
        """Edits for messages never seen complete without effect."""
        result = await guard.ingest("Ev2", "edit", {"message_id": "C1:404", "text": "Edited"})
        assert result.status == EventStatus.COMPLETE

    @pytest.mark.asyncio
    async def test_delete_removes_message_and_document_links(self, guard, session_maker):
        """Deleting an assembled message drops its membership and Q&A pairs."""
        await guard.ingest("Ev1", "create", create_payload())
        await guard.ingest("Ev2", "create", create_payload("C1:2", "Run vpn-reset from the portal"))
        async with session_maker() as session:
            q, a = (await session.execute(select(Message.id).order_by(Message.id))).scalars().all()
            document = Document(title="VPN", status="complete")
            session.add(document)
            await session.flush()
            session.add_all(
                [
                    DocumentMessage(document_id=document.id, message_id=q, role="question", confidence=0.9),
                    DocumentMessage(document_id=document.id, message_id=a, role="answer", confidence=0.8),
                    DocumentQAPair(document_id=document.id, question_message_id=q, answer_message_id=a),
                ]
            )
            await session.commit()

        result = await guard.ingest("Ev3", "delete", {"message_id": "C1:1700000000.000100"})

        assert result.status == EventStatus.COMPLETE
        assert await count(session_maker, Message) == 1
        assert await count(session_maker, DocumentMessage) == 1
        assert await count(session_maker, DocumentQAPair) == 0


class TestNotifications:
    """Message changes are announced to listeners."""

    @pytest.mark.asyncio
    async def test_listeners_receive_changes(self, guard, notifier):
        """Create, edit and delete each notify once."""
        seen = []

        async def listener(change):
            seen.append(change.kind)

        notifier.subscribe(listener)
        await guard.ingest("Ev1", "create", create_payload())
        await guard.ingest("Ev1", "create", create_payload())
        await guard.ingest("Ev2", "edit", {"message_id": "C1:1700000000.000100", "text": "x"})
        await guard.ingest("Ev3", "delete", {"message_id": "C1:1700000000.000100"})

        assert seen == [EventKind.CREATE, EventKind.EDIT, EventKind.DELETE]

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_fail_ingestion(self, guard, notifier):
        """A listener error is logged, the event still completes."""

        async def broken(change):
            raise RuntimeError("listener down")

        notifier.subscribe(broken)
        result = await guard.ingest("Ev1", "create", create_payload())

        assert result.status == EventStatus.COMPLETE
