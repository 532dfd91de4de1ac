"""Tests for the Slack channel history pull."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from slack_sdk.errors import SlackApiError
from slack_sdk.web.async_slack_response import AsyncSlackResponse
from sqlalchemy import select

from knowledge_pipeline.db.models import Message
from knowledge_pipeline.exceptions import PermanentFailure, TransientError, ValidationError
from knowledge_pipeline.ingestion import (
    ChannelPuller,
    ChannelPullOptions,
    EventIngestionGuard,
    EventKind,
)
from knowledge_pipeline.ingestion.channel_pull import slack_ts

CHANNEL = "C0SUPPORT"


def page(messages, cursor=None):
    return {
        "ok": True,
        "messages": messages,
        "has_more": cursor is not None,
        "response_metadata": {"next_cursor": cursor or ""},
    }


def slack_message(ts, text, user="U1", **extra):
    return {"type": "message", "ts": ts, "text": text, "user": user, **extra}


def api_error(error, status_code=200, headers=None):
    response = AsyncSlackResponse(
        client=None,
        http_verb="POST",
        api_url="https://slack.com/api/conversations.history",
        req_args={},
        data={"ok": False, "error": error},
        headers=headers or {},
        status_code=status_code,
    )
    return SlackApiError(f"The request to the Slack API failed: {error}", response)


def fake_slack(history, replies=None, channel=None):
    """A Slack client returning the given history pages and thread replies by parent ts."""
    client = MagicMock()
    client.conversations_info = AsyncMock(
        return_value={"ok": True, "channel": channel or {"id": CHANNEL, "is_private": False}}
    )
    client.conversations_history = AsyncMock(side_effect=list(history))
    replies = replies or {}
    client.conversations_replies = AsyncMock(
        side_effect=lambda channel, ts, **kwargs: page(replies.get(ts, []))
    )
    return client


@pytest.fixture
def guard(session_maker):
    return EventIngestionGuard(session_maker)


@pytest.fixture
def make_puller(guard):
    def _make(client, **kwargs) -> ChannelPuller:
        return ChannelPuller(guard, client=client, page_size=2, page_delay=0, **kwargs)

    return _make


def history_with_thread():
    """Two pages, newest first, with one thread and one bot message."""
    return [
        page(
            [
                slack_message("1700000300.000100", "Thanks, that fixed it", user="U2"),
                {"type": "message", "ts": "1700000200.000100", "text": "Build passed", "bot_id": "B1"},
            ],
            cursor="page-2",
        ),
        page(
            [
                slack_message(
                    "1700000100.000100",
                    "How do I reset my password?",
                    reply_count=2,
                    thread_ts="1700000100.000100",
                ),
            ]
        ),
    ]


THREAD_REPLIES = {
    "1700000100.000100": [
        slack_message("1700000100.000100", "How do I reset my password?", thread_ts="1700000100.000100"),
        slack_message("1700000150.000100", "Settings, then reset", user="U3", thread_ts="1700000100.000100"),
        slack_message("1700000160.000100", "Worked, thanks", thread_ts="1700000100.000100"),
    ]
}


class TestChannelPuller:
    """Tests for ChannelPuller."""

    @pytest.mark.asyncio
    async def test_pull_ingests_history_and_threads(self, make_puller, session_maker):
        client = fake_slack(history_with_thread(), THREAD_REPLIES)

        result = await make_puller(client).pull(ChannelPullOptions(channel_id=CHANNEL))

        assert result.pages == 2
        assert result.messages_fetched == 3
        assert result.new_messages == 4
        assert result.skipped_messages == 1
        assert result.threads_fetched == 1
        assert result.thread_replies_fetched == 2
        assert result.failed_messages == 0

        second_call = client.conversations_history.await_args_list[1]
        assert second_call.kwargs["cursor"] == "page-2"
        assert second_call.kwargs["limit"] == 2

        async with session_maker() as session:
            messages = {m.external_id: m for m in await session.scalars(select(Message))}
        parent_id = f"{CHANNEL}:1700000100.000100"
        assert set(messages) == {
            parent_id,
            f"{CHANNEL}:1700000150.000100",
            f"{CHANNEL}:1700000160.000100",
            f"{CHANNEL}:1700000300.000100",
        }
        assert messages[f"{CHANNEL}:1700000150.000100"].parent_external_id == parent_id
        assert messages[parent_id].parent_external_id is None

    @pytest.mark.asyncio
    async def test_pulling_twice_creates_nothing_new(self, make_puller):
        await make_puller(fake_slack(history_with_thread(), THREAD_REPLIES)).pull(
            ChannelPullOptions(channel_id=CHANNEL)
        )

        again = await make_puller(fake_slack(history_with_thread(), THREAD_REPLIES)).pull(
            ChannelPullOptions(channel_id=CHANNEL)
        )

        assert again.new_messages == 0
        assert again.duplicate_messages == 4

    @pytest.mark.asyncio
    async def test_message_received_live_is_a_duplicate(self, make_puller, guard):
        await guard.ingest(
            "Ev0001",
            EventKind.CREATE,
            {
                "message_id": f"{CHANNEL}:1700000300.000100",
                "text": "Thanks, that fixed it",
                "author": "U2",
                "channel": CHANNEL,
                "timestamp": "1700000300.000100",
            },
            CHANNEL,
        )

        result = await make_puller(fake_slack(history_with_thread(), THREAD_REPLIES)).pull(
            ChannelPullOptions(channel_id=CHANNEL)
        )

        assert result.new_messages == 3
        assert result.duplicate_messages == 1

    @pytest.mark.asyncio
    async def test_threads_can_be_skipped(self, make_puller):
        client = fake_slack(history_with_thread(), THREAD_REPLIES)

        result = await make_puller(client).pull(ChannelPullOptions(channel_id=CHANNEL, include_threads=False))

        client.conversations_replies.assert_not_awaited()
        assert result.new_messages == 2
        assert result.threads_fetched == 0

    @pytest.mark.asyncio
    async def test_progress_and_checkpoints(self, make_puller):
        reported = []
        checkpoint = AsyncMock()

        async def progress(value):
            reported.append(value)

        await make_puller(fake_slack(history_with_thread(), THREAD_REPLIES)).pull(
            ChannelPullOptions(channel_id=CHANNEL), checkpoint=checkpoint, progress=progress
        )

        assert reported == sorted(reported)
        assert reported[-1] == 100
        assert 20 in reported and 70 in reported
        # One per history page and one per thread
        assert checkpoint.await_count == 3

    @pytest.mark.asyncio
    async def test_window_is_sent_as_slack_timestamps(self, make_puller):
        client = fake_slack([page([])])

        await make_puller(client).pull(
            ChannelPullOptions(channel_id=CHANNEL, oldest="2024-03-04T09:00:00Z", latest="1709629200")
        )

        kwargs = client.conversations_history.await_args.kwargs
        assert kwargs["oldest"] == "1709542800.000000"
        assert kwargs["latest"] == "1709629200.000000"

    @pytest.mark.asyncio
    async def test_window_must_be_ordered(self, make_puller):
        client = fake_slack([page([])])

        with pytest.raises(ValidationError, match="oldest"):
            await make_puller(client).pull(
                ChannelPullOptions(channel_id=CHANNEL, oldest="1709629200", latest="1709542800")
            )
        client.conversations_info.assert_not_awaited()

    @pytest.mark.parametrize("channel_id", ["", "general", "c0support", "X0SUPPORT"])
    @pytest.mark.asyncio
    async def test_invalid_channel_id(self, make_puller, channel_id):
        client = fake_slack([page([])])

        with pytest.raises(ValidationError, match="channel id"):
            await make_puller(client).pull(ChannelPullOptions(channel_id=channel_id))

    @pytest.mark.asyncio
    async def test_private_channel_needs_membership(self, make_puller):
        client = fake_slack(
            [page([])], channel={"id": "G0PRIVATE", "is_private": True, "is_member": False}
        )

        with pytest.raises(ValidationError, match="Access denied"):
            await make_puller(client).pull(ChannelPullOptions(channel_id="G0PRIVATE"))
        client.conversations_history.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_is_transient(self, make_puller):
        client = fake_slack([api_error("ratelimited", status_code=429, headers={"Retry-After": "30"})])

        with pytest.raises(TransientError) as exc_info:
            await make_puller(client).pull(ChannelPullOptions(channel_id=CHANNEL))
        assert exc_info.value.retry_after == 30.0

    @pytest.mark.parametrize(
        "error, expected",
        [
            (api_error("not_in_channel"), ValidationError),
            (api_error("internal_error", status_code=503), TransientError),
            (api_error("something_odd"), PermanentFailure),
        ],
    )
    @pytest.mark.asyncio
    async def test_api_errors_are_classified(self, make_puller, error, expected):
        client = fake_slack([error])

        with pytest.raises(expected):
            await make_puller(client).pull(ChannelPullOptions(channel_id=CHANNEL))

    @pytest.mark.asyncio
    async def test_missing_token(self, guard, monkeypatch):
        monkeypatch.setattr("knowledge_pipeline.ingestion.channel_pull.settings.SLACK_BOT_TOKEN", "")

        with pytest.raises(ValidationError, match="SLACK_BOT_TOKEN"):
            await ChannelPuller(guard).pull(ChannelPullOptions(channel_id=CHANNEL))


def test_slack_ts_accepts_slack_timestamps():
    assert slack_ts("1700000100.000100") == "1700000100.000100"
