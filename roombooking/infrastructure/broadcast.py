from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from ..domain.events import BroadcastEvent

logger = logging.getLogger(__name__)

Message = dict[str, Any]


def to_message(channel: str, event: BroadcastEvent) -> Message:
    return {"event": event.name, "channel": channel, "data": event.to_payload()}


class ChannelBroadcaster:
    """
    In-process fan-out of events to per-channel subscriber queues.

    publish() never blocks: a subscriber whose queue is full misses the
    message rather than slowing down the booking path.
    """

    def __init__(self, *, max_queue_size: int = 100) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue[Message]]] = defaultdict(set)

    def publish(self, channel: str, event: BroadcastEvent) -> None:
        queues = self._subscribers.get(channel)
        if not queues:
            return
        message = to_message(channel, event)
        for queue in list(queues):
            try:
                queue.put_nowait(message)
            except asyncio.QueueFull:
                logger.warning("subscriber queue full on %s, dropping %s", channel, event.name)

    def subscriber_count(self, channel: str) -> int:
        return len(self._subscribers.get(channel, ()))

    @asynccontextmanager
    async def subscribe(self, channel: str) -> AsyncIterator[asyncio.Queue[Message]]:
        queue: asyncio.Queue[Message] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[channel].add(queue)
        try:
            yield queue
        finally:
            queues = self._subscribers.get(channel)
            if queues is not None:
                queues.discard(queue)
                if not queues:
                    del self._subscribers[channel]


class LoggingBroadcastSink:
    """Sink for processes without live subscribers, such as the sweep command."""

    def publish(self, channel: str, event: BroadcastEvent) -> None:
        logger.info("event %s on %s: %s", event.name, channel, event.to_payload())
