"""Normalisation of Slack Events API payloads."""

from knowledge_pipeline.ingestion.models import EventKind, NormalizedEvent


def slack_message_id(channel: str, ts: str) -> str:
    """Slack identifies a message by channel plus timestamp."""
    return f"{channel}:{ts}"


def message_payload(channel: str, message: dict) -> dict | None:
    """CREATE payload for a plain user message, or None for bot, system and empty messages.

    Accepts both an event's `event` object and an item of conversations.history
    or conversations.replies, which carry the same message fields.
    """
    if message.get("subtype") is not None or message.get("bot_id"):
        return None
    if not message.get("user") or not message.get("text"):
        return None

    ts = message.get("ts", "")
    thread_ts = message.get("thread_ts")
    return {
        "message_id": slack_message_id(channel, ts),
        "text": message["text"],
        "author": message["user"],
        "channel": channel,
        "timestamp": ts,
        "parent_id": slack_message_id(channel, thread_ts) if thread_ts and thread_ts != ts else None,
    }


def normalize_slack_event(body: dict) -> NormalizedEvent | None:
    """Map an `event_callback` body onto an ingestion event.

    Returns None for anything that is not an event callback. Slack redelivers
    with the same `event_id`, which makes it the idempotency key.
    """
    if body.get("type") != "event_callback":
        return None

    event = body.get("event") or {}
    channel = event.get("channel")
    event_ts = event.get("event_ts") or event.get("ts") or ""
    external_id = body.get("event_id") or f"{channel}:{event_ts}:{event.get('subtype', '')}"

    if event.get("type") != "message":
        return NormalizedEvent(external_id, EventKind.OTHER, {"event": event}, channel)

    subtype = event.get("subtype")

    if subtype == "message_deleted":
        return NormalizedEvent(
            external_id,
            EventKind.DELETE,
            {"message_id": slack_message_id(channel, event.get("deleted_ts", ""))},
            channel,
        )

    if subtype == "message_changed":
        edited = event.get("message") or {}
        return NormalizedEvent(
            external_id,
            EventKind.EDIT,
            {
                "message_id": slack_message_id(channel, edited.get("ts", "")),
                "text": edited.get("text", ""),
            },
            channel,
        )

    payload = message_payload(channel, event)
    if payload is not None:
        return NormalizedEvent(external_id, EventKind.CREATE, payload, channel)

    return NormalizedEvent(external_id, EventKind.OTHER, {"event": event}, channel)
