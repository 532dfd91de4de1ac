"""Idempotent ingestion of message events."""

import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from knowledge_pipeline.config import settings
from knowledge_pipeline.db.database import async_session_maker
from knowledge_pipeline.db.models import (
    DocumentMessage,
    DocumentQAPair,
    FAQSource,
    IngestedEvent,
    Message,
    utcnow,
)
from knowledge_pipeline.exceptions import ValidationError
from knowledge_pipeline.ingestion.models import EventKind, EventStatus, IngestResult, MessageChange
from knowledge_pipeline.ingestion.signals import MessageChangeNotifier

logger = logging.getLogger(__name__)

HandlerOutcome = tuple[EventStatus, MessageChange | None]
Handler = Callable[[AsyncSession, dict[str, Any]], Awaitable[HandlerOutcome]]


def parse_timestamp(value: Any) -> datetime:
    """Parse epoch seconds (number or Slack "1700000000.000100" string), ISO text or datetime.

    Returns a naive UTC datetime.
    """
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc).replace(tzinfo=None)
    if isinstance(value, str) and value:
        try:
            return parse_timestamp(float(value))
        except ValueError:
            pass
        try:
            return parse_timestamp(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError as e:
            raise ValidationError(f"Unparseable timestamp: {value!r}") from e
    raise ValidationError(f"Missing or invalid timestamp: {value!r}")


def _require(payload: dict[str, Any], key: str) -> Any:
    value = payload.get(key)
    if value in (None, ""):
        raise ValidationError(f"Event payload is missing '{key}'")
    return value


class EventIngestionGuard:
    """Applies each external event at most once.

    The event's external id is recorded before anything else happens. A
    redelivery of an event that is pending, processing or done is reported as
    DUPLICATE without side effects; a redelivery of a FAILED event processes it
    again. Handler errors are stored on the record and never raised to the
    caller.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession] | None = None,
        notifier: MessageChangeNotifier | None = None,
    ):
        self.session_maker = session_maker or async_session_maker
        self.notifier = notifier or MessageChangeNotifier()
        self._handlers: dict[EventKind, Handler] = {
            EventKind.CREATE: self._handle_create,
            EventKind.EDIT: self._handle_edit,
            EventKind.DELETE: self._handle_delete,
            EventKind.OTHER: self._handle_other,
        }
        missing = set(EventKind) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for event kinds: {sorted(k.value for k in missing)}")

    async def ingest(
        self,
        external_id: str,
        kind: EventKind | str,
        payload: dict[str, Any],
        channel: str | None = None,
    ) -> IngestResult:
        """Record and apply one event. Never raises."""
        try:
            return await self._ingest(external_id, EventKind.parse(kind), payload, channel)
        except Exception as e:
            logger.exception(f"Ingestion of event {external_id} failed outside its handler: {e}")
            return IngestResult(EventStatus.FAILED, None, str(e))

    async def _ingest(
        self,
        external_id: str,
        kind: EventKind,
        payload: dict[str, Any],
        channel: str | None,
    ) -> IngestResult:
        async with self.session_maker() as session:
            existing = await session.scalar(
                select(IngestedEvent).where(IngestedEvent.external_id == external_id)
            )
            if existing is not None:
                if existing.status != EventStatus.FAILED.value:
                    logger.debug(f"Duplicate delivery of event {external_id} ({existing.status})")
                    return IngestResult(EventStatus.DUPLICATE, existing.id, "Event already received")
                logger.info(f"Redelivery of failed event {external_id}, processing again")
                record_id = existing.id
            else:
                record = IngestedEvent(
                    external_id=external_id,
                    kind=kind.value,
                    payload=json.dumps(payload, default=str),
                    channel=channel,
                    status=EventStatus.PENDING.value,
                )
                session.add(record)
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    logger.debug(f"Concurrent delivery of event {external_id}")
                    existing_id = await session.scalar(
                        select(IngestedEvent.id).where(IngestedEvent.external_id == external_id)
                    )
                    return IngestResult(EventStatus.DUPLICATE, existing_id, "Event already received")
                record_id = record.id

        return await self._process(record_id)

    async def _process(self, record_id: int) -> IngestResult:
        async with self.session_maker() as session:
            claimed = await session.execute(
                update(IngestedEvent)
                .where(
                    IngestedEvent.id == record_id,
                    IngestedEvent.status.in_([EventStatus.PENDING.value, EventStatus.FAILED.value]),
                )
                .values(
                    status=EventStatus.PROCESSING.value,
                    attempts=IngestedEvent.attempts + 1,
                    last_attempt_at=utcnow(),
                )
            )
            await session.commit()
            if claimed.rowcount == 0:
                return IngestResult(EventStatus.DUPLICATE, record_id, "Event is already being processed")

            record = await session.get(IngestedEvent, record_id)
            kind = EventKind.parse(record.kind)
            payload = json.loads(record.payload or "{}")
            external_id = record.external_id

        try:
            async with self.session_maker() as session:
                status, change = await self._handlers[kind](session, payload)
        except Exception as e:
            logger.error(f"Handler for {kind.value} event {external_id} failed: {e}")
            await self._finish(record_id, EventStatus.FAILED, error=str(e))
            return IngestResult(EventStatus.FAILED, record_id, str(e))

        await self._finish(record_id, status)
        if change is not None:
            await self.notifier.notify(change)
        return IngestResult(status, record_id, f"{kind.value} event processed")

    async def _finish(self, record_id: int, status: EventStatus, error: str | None = None) -> None:
        async with self.session_maker() as session:
            values: dict[str, Any] = {"status": status.value, "last_error": error}
            if status != EventStatus.FAILED:
                values["completed_at"] = utcnow()
            await session.execute(
                update(IngestedEvent).where(IngestedEvent.id == record_id).values(**values)
            )
            await session.commit()

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _handle_create(self, session: AsyncSession, payload: dict[str, Any]) -> HandlerOutcome:
        message_id = _require(payload, "message_id")
        channel = _require(payload, "channel")
        existing = await session.scalar(select(Message.id).where(Message.external_id == message_id))
        if existing is not None:
            return EventStatus.DUPLICATE, None

        message = Message(
            external_id=message_id,
            text=payload.get("text") or "",
            author=payload.get("author") or "",
            channel=channel,
            timestamp=parse_timestamp(payload.get("timestamp")),
            parent_external_id=payload.get("parent_id"),
        )
        session.add(message)
        try:
            await session.commit()
        except IntegrityError:
            # Same message delivered under a different event id
            await session.rollback()
            return EventStatus.DUPLICATE, None

        return EventStatus.COMPLETE, MessageChange(EventKind.CREATE, message_id, channel, message.id)

    async def _handle_edit(self, session: AsyncSession, payload: dict[str, Any]) -> HandlerOutcome:
        message_id = _require(payload, "message_id")
        message = await session.scalar(select(Message).where(Message.external_id == message_id))
        if message is None:
            logger.debug(f"Edit for unknown message {message_id}, nothing to do")
            return EventStatus.COMPLETE, None

        message.text = payload.get("text") or ""
        if payload.get("timestamp"):
            message.timestamp = parse_timestamp(payload["timestamp"])
        message.updated_at = utcnow()
        await session.commit()
        return EventStatus.COMPLETE, MessageChange(EventKind.EDIT, message_id, message.channel, message.id)

    async def _handle_delete(self, session: AsyncSession, payload: dict[str, Any]) -> HandlerOutcome:
        message_id = _require(payload, "message_id")
        message = await session.scalar(select(Message).where(Message.external_id == message_id))
        if message is None:
            logger.debug(f"Delete for unknown message {message_id}, nothing to do")
            return EventStatus.COMPLETE, None

        internal_id, channel = message.id, message.channel
        await session.execute(delete(FAQSource).where(FAQSource.message_id == internal_id))
        await session.execute(
            delete(DocumentQAPair).where(
                or_(
                    DocumentQAPair.question_message_id == internal_id,
                    DocumentQAPair.answer_message_id == internal_id,
                )
            )
        )
        await session.execute(delete(DocumentMessage).where(DocumentMessage.message_id == internal_id))
        await session.delete(message)
        await session.commit()
        return EventStatus.COMPLETE, MessageChange(EventKind.DELETE, message_id, channel, internal_id)

    async def _handle_other(self, session: AsyncSession, payload: dict[str, Any]) -> HandlerOutcome:
        return EventStatus.COMPLETE, None

    # -------------------------------------------------------------------------
    # Operator actions
    # -------------------------------------------------------------------------

    async def retry_failed_events(self, max_attempts: int | None = None, limit: int = 100) -> dict[str, int]:
        """Re-dispatch FAILED events that have not used up their attempts, oldest first."""
        max_attempts = max_attempts or settings.EVENT_RETRY_MAX_ATTEMPTS
        async with self.session_maker() as session:
            result = await session.execute(
                select(IngestedEvent.id)
                .where(
                    IngestedEvent.status == EventStatus.FAILED.value,
                    IngestedEvent.attempts < max_attempts,
                )
                .order_by(IngestedEvent.created_at, IngestedEvent.id)
                .limit(limit)
            )
            record_ids = list(result.scalars())

        stats = {"retried": 0, "succeeded": 0, "failed": 0}
        for record_id in record_ids:
            outcome = await self._process(record_id)
            stats["retried"] += 1
            if outcome.status == EventStatus.FAILED:
                stats["failed"] += 1
            else:
                stats["succeeded"] += 1

        logger.info(
            f"Retried {stats['retried']} failed events: "
            f"{stats['succeeded']} succeeded, {stats['failed']} failed"
        )
        return stats

    async def get_event_stats(self) -> dict[str, Any]:
        async with self.session_maker() as session:
            result = await session.execute(
                select(IngestedEvent.status, func.count()).group_by(IngestedEvent.status)
            )
            by_status = {status.value: 0 for status in EventStatus}
            for status, count in result.all():
                by_status[status] = count
        return {"total": sum(by_status.values()), "by_status": by_status}

    async def prune_events(self, older_than_days: int) -> int:
        """Delete settled audit rows (complete or duplicate) older than the window."""
        cutoff = utcnow() - timedelta(days=older_than_days)
        async with self.session_maker() as session:
            result = await session.execute(
                delete(IngestedEvent).where(
                    IngestedEvent.status.in_([EventStatus.COMPLETE.value, EventStatus.DUPLICATE.value]),
                    IngestedEvent.created_at < cutoff,
                )
            )
            await session.commit()
        logger.info(f"Pruned {result.rowcount} ingested events older than {older_than_days} days")
        return result.rowcount
