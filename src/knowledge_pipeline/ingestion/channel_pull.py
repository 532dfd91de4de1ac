"""Backfill of Slack channel history through the ingestion guard.

Pulled messages go through EventIngestionGuard exactly like live events, keyed
by their `channel:ts` message id, so pulling the same window twice or pulling
messages that already arrived through the Events API creates nothing new.
"""

import asyncio
import logging
import re
from datetime import timezone
from typing import Any, Awaitable, Callable

import aiohttp
from slack_sdk.errors import SlackApiError
from slack_sdk.http_retry.builtin_async_handlers import AsyncRateLimitErrorRetryHandler
from slack_sdk.web.async_client import AsyncWebClient

from knowledge_pipeline.config import settings
from knowledge_pipeline.exceptions import PermanentFailure, TransientError, ValidationError
from knowledge_pipeline.ingestion.guard import EventIngestionGuard, parse_timestamp
from knowledge_pipeline.ingestion.models import (
    ChannelPullOptions,
    ChannelPullResult,
    EventKind,
    EventStatus,
)
from knowledge_pipeline.ingestion.slack_events import message_payload

logger = logging.getLogger(__name__)

Checkpoint = Callable[[], Awaitable[None]]
ProgressCallback = Callable[[int], Awaitable[None]]

CHANNEL_ID_PATTERN = re.compile(r"^[CDG][A-Z0-9]+$")

# Slack errors that no retry will fix
ACCESS_ERRORS = {
    "channel_not_found",
    "not_in_channel",
    "missing_scope",
    "invalid_auth",
    "not_authed",
    "account_inactive",
    "token_revoked",
}

PROGRESS_EVERY = 25


def slack_ts(value: Any) -> str:
    """Slack `oldest`/`latest` value for an epoch, ISO text or Slack timestamp."""
    moment = parse_timestamp(value).replace(tzinfo=timezone.utc)
    return f"{moment.timestamp():.6f}"


def _api_error(method: str, error: SlackApiError) -> Exception:
    response = error.response
    code = response.get("error") if response is not None else None
    status = getattr(response, "status_code", None)
    if status == 429:
        headers = getattr(response, "headers", None) or {}
        retry_after = headers.get("Retry-After") or headers.get("retry-after")
        return TransientError(
            f"Slack rate limit on {method}",
            retry_after=float(retry_after) if retry_after else None,
        )
    if code in ACCESS_ERRORS:
        return ValidationError(f"Slack rejected {method}: {code}")
    if status is not None and status >= 500:
        return TransientError(f"Slack server error {status} on {method}")
    return PermanentFailure(f"Slack {method} failed: {code or error}")


class ChannelPuller:
    """Pages a channel's history, and optionally its threads, into the guard.

    Rate limited calls are retried by the Slack client itself; a rate limit that
    outlasts those retries surfaces as TransientError so the job is retried
    later. Access problems (unknown channel, missing membership or scope) are
    ValidationErrors.
    """

    def __init__(
        self,
        guard: EventIngestionGuard,
        client: AsyncWebClient | None = None,
        page_size: int | None = None,
        page_delay: float | None = None,
    ):
        self.guard = guard
        self._client = client
        self.page_size = page_size or settings.CHANNEL_PULL_PAGE_SIZE
        self.page_delay = settings.CHANNEL_PULL_PAGE_DELAY_SECONDS if page_delay is None else page_delay

    @property
    def client(self) -> AsyncWebClient:
        if self._client is None:
            if not settings.SLACK_BOT_TOKEN:
                raise ValidationError("SLACK_BOT_TOKEN is not configured, channel history cannot be pulled")
            self._client = AsyncWebClient(token=settings.SLACK_BOT_TOKEN)
            self._client.retry_handlers.append(AsyncRateLimitErrorRetryHandler(max_retry_count=3))
        return self._client

    async def _call(self, method: str, **kwargs: Any) -> Any:
        try:
            return await getattr(self.client, method)(**kwargs)
        except SlackApiError as e:
            raise _api_error(method, e) from e
        except aiohttp.ClientError as e:
            raise TransientError(f"Slack {method} unreachable: {e}") from e

    async def check_access(self, channel_id: str) -> dict:
        """Return the channel info, failing when the bot cannot read the channel."""
        response = await self._call("conversations_info", channel=channel_id)
        channel = response.get("channel") or {}
        if channel.get("is_private") and not channel.get("is_member"):
            raise ValidationError(
                f"Access denied to private channel {channel_id}: the bot is not a member"
            )
        return channel

    async def _pages(self, method: str, **kwargs: Any):
        """Yield the messages of each page of a cursor-paginated history call."""
        cursor = None
        while True:
            response = await self._call(method, limit=self.page_size, cursor=cursor, **kwargs)
            yield response.get("messages") or []
            cursor = (response.get("response_metadata") or {}).get("next_cursor")
            if not response.get("has_more") or not cursor:
                return
            if self.page_delay:
                await asyncio.sleep(self.page_delay)

    async def pull(
        self,
        options: ChannelPullOptions,
        checkpoint: Checkpoint | None = None,
        progress: ProgressCallback | None = None,
    ) -> ChannelPullResult:
        """Ingest a channel's history.

        Progress runs 0-20 while history pages are fetched, 20-70 while top
        level messages are ingested and 70-100 while thread replies are pulled.
        """
        channel_id = (options.channel_id or "").strip()
        if not CHANNEL_ID_PATTERN.match(channel_id):
            raise ValidationError(f"Invalid Slack channel id: {options.channel_id!r}")

        window: dict[str, str] = {}
        if options.oldest:
            window["oldest"] = slack_ts(options.oldest)
        if options.latest:
            window["latest"] = slack_ts(options.latest)
        if "oldest" in window and "latest" in window and float(window["oldest"]) > float(window["latest"]):
            raise ValidationError("oldest must not be after latest")
        include_threads = (
            settings.CHANNEL_PULL_INCLUDE_THREADS
            if options.include_threads is None
            else options.include_threads
        )

        async def report(value: int) -> None:
            if progress:
                await progress(value)

        await self.check_access(channel_id)
        result = ChannelPullResult(channel_id=channel_id)
        logger.info(f"Pulling history of {channel_id} {window or '(all time)'}")

        messages: list[dict] = []
        async for page in self._pages("conversations_history", channel=channel_id, **window):
            messages.extend(page)
            result.pages += 1
            if checkpoint:
                await checkpoint()
            await report(min(19, 2 * result.pages))
        result.messages_fetched = len(messages)
        await report(20)

        # History arrives newest first
        messages.sort(key=lambda m: float(m.get("ts") or 0))
        for i, message in enumerate(messages, 1):
            await self._ingest(channel_id, message, result)
            if i % PROGRESS_EVERY == 0:
                if checkpoint:
                    await checkpoint()
                await report(20 + 50 * i // len(messages))
        await report(70)

        threads = [m for m in messages if include_threads and (m.get("reply_count") or 0) > 0]
        for i, parent in enumerate(threads, 1):
            if checkpoint:
                await checkpoint()
            await self._pull_thread(channel_id, parent["ts"], result)
            await report(70 + 30 * i // len(threads))
        await report(100)

        logger.info(
            f"Pulled {channel_id}: {result.new_messages} new, {result.duplicate_messages} duplicate, "
            f"{result.failed_messages} failed, {result.thread_replies_fetched} thread replies"
        )
        return result

    async def _pull_thread(self, channel_id: str, thread_ts: str, result: ChannelPullResult) -> None:
        result.threads_fetched += 1
        async for page in self._pages("conversations_replies", channel=channel_id, ts=thread_ts):
            for reply in page:
                # The parent comes back as the first item of every thread
                if reply.get("ts") == thread_ts:
                    continue
                result.thread_replies_fetched += 1
                await self._ingest(channel_id, reply, result)

    async def _ingest(self, channel_id: str, message: dict, result: ChannelPullResult) -> None:
        payload = message_payload(channel_id, message)
        if payload is None:
            result.skipped_messages += 1
            return
        outcome = await self.guard.ingest(
            f"pull:{payload['message_id']}", EventKind.CREATE, payload, channel_id
        )
        if outcome.status == EventStatus.COMPLETE:
            result.new_messages += 1
        elif outcome.status == EventStatus.DUPLICATE:
            result.duplicate_messages += 1
        else:
            result.failed_messages += 1
            logger.warning(f"Pulled message {payload['message_id']} failed: {outcome.message}")
