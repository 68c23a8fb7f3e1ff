"""Delivery channels for fan-out notifications.

A channel takes one JSON-ready event for one recipient. Delivery is
best-effort: the fan-out logs failures and moves on.

    - InMemoryNotificationChannel: per-recipient asyncio queues (development,
      tests, single-process deployments).
    - RedisNotificationChannel: PUBLISH on ``notifications:<recipient_id>`` so any
      number of push gateways can subscribe.
"""

from __future__ import annotations

import asyncio
import json
from collections import defaultdict, deque
from typing import TYPE_CHECKING, Any, Protocol

from service_clearinghouse.logging_config import get_logger

if TYPE_CHECKING:
    import redis.asyncio as aioredis

    from service_clearinghouse.config import Settings

logger = get_logger(__name__)


class NotificationChannel(Protocol):
    name: str

    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None: ...


class InMemoryNotificationChannel:
    """Feeds live subscriber queues and keeps the most recent events.

    ``delivered`` holds at most ``history_size`` events, oldest dropped first.
    """

    name = "memory"

    def __init__(self, max_queue_size: int = 100, history_size: int = 1000) -> None:
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, set[asyncio.Queue]] = defaultdict(set)
        self.delivered: deque[tuple[str, dict[str, Any]]] = deque(maxlen=history_size)

    def subscribe(self, recipient_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[recipient_id].add(queue)
        return queue

    def unsubscribe(self, recipient_id: str, queue: asyncio.Queue) -> None:
        self._subscribers[recipient_id].discard(queue)
        if not self._subscribers[recipient_id]:
            del self._subscribers[recipient_id]

    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None:
        self.delivered.append((recipient_id, payload))
        for queue in self._subscribers.get(recipient_id, ()):
            try:
                queue.put_nowait(payload)
            except asyncio.QueueFull:
                logger.warning("notification.subscriber_queue_full", recipient=recipient_id)

    def for_recipient(self, recipient_id: str) -> list[dict[str, Any]]:
        return [payload for rid, payload in self.delivered if rid == recipient_id]

    def clear(self) -> None:
        self.delivered.clear()


class RedisNotificationChannel:
    """Publishes events to Redis pub/sub."""

    name = "redis"

    def __init__(self, client: aioredis.Redis | None = None) -> None:
        self._client = client

    async def deliver(self, recipient_id: str, payload: dict[str, Any]) -> None:
        from service_clearinghouse.infrastructure.redis_client import get_redis

        client = self._client or get_redis()
        await client.publish(
            f"notifications:{recipient_id}",
            json.dumps(payload, default=str),
        )


_channel: NotificationChannel | None = None


def build_notification_channel(settings: Settings) -> NotificationChannel:
    if settings.notification_channel == "redis":
        return RedisNotificationChannel()
    return InMemoryNotificationChannel()


def get_notification_channel() -> NotificationChannel:
    """Return the process-wide channel selected by settings (lazy singleton)."""
    global _channel
    if _channel is None:
        from service_clearinghouse.config import get_settings

        _channel = build_notification_channel(get_settings())
        logger.info("notification.channel_ready", channel=_channel.name)
    return _channel
