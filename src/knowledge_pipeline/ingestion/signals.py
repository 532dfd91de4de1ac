"""Message change notifications."""

import logging
from typing import Awaitable, Callable

from knowledge_pipeline.ingestion.models import MessageChange

logger = logging.getLogger(__name__)

Listener = Callable[[MessageChange], Awaitable[None]]


class MessageChangeNotifier:
    """Fans a message change out to async listeners.

    A failing listener is logged and skipped; it never fails the ingestion.
    """

    def __init__(self):
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def notify(self, change: MessageChange) -> None:
        for listener in list(self._listeners):
            try:
                await listener(change)
            except Exception as e:
                logger.error(
                    f"Message change listener {getattr(listener, '__name__', listener)!r} "
                    f"failed for {change.kind.value} {change.message_external_id}: {e}"
                )
