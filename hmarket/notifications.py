"""
Best-effort notifications. The dispatcher schedules each send as its own task
and never lets a notifier failure reach the transition that triggered it.
"""
import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Iterable, Protocol

import redis.asyncio as redis
from pydantic import BaseModel, Field

from hmarket.metrics import notifications_failed_total, notifications_pending, notifications_sent_total
from hmarket.models import utcnow
from hmarket.redis_client import notification_channel
from hmarket.sqs_client import send_message

logger = logging.getLogger(__name__)


class Notification(BaseModel):
    type: str
    title: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


class Notifier(Protocol):
    async def send(self, user_id: str, notification: Notification) -> None: ...


class LoggingNotifier:
    """Default sink when no fan-out backend is configured."""

    async def send(self, user_id: str, notification: Notification) -> None:
        logger.info("Notification for user=%s type=%s: %s", user_id, notification.type, notification.title)


class InMemoryNotifier:
    """
    Per-user queues for single-instance deployments. Each live connection
    subscribes its own queue; a user with no subscriber simply misses the push
    (tracking history still has the event). Nothing is kept once pushed, and a
    subscriber that stops reading loses its oldest notifications first.
    """

    def __init__(self, queue_size: int = 100) -> None:
        self._queue_size = queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = defaultdict(list)

    def subscribe(self, user_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._queue_size)
        self._subscribers[user_id].append(queue)
        return queue

    def unsubscribe(self, user_id: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(user_id, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(user_id, None)

    async def send(self, user_id: str, notification: Notification) -> None:
        for queue in self._subscribers.get(user_id, []):
            if queue.full():
                queue.get_nowait()
                logger.warning("Notification queue full for user=%s, dropped oldest", user_id)
            queue.put_nowait(notification)


class RedisNotifier:
    """Publishes on notifications:<user_id> so every instance can push to its own connections."""

    def __init__(self, client: redis.Redis):
        self._redis = client

    async def send(self, user_id: str, notification: Notification) -> None:
        await self._redis.publish(notification_channel(user_id), notification.model_dump_json())


class SqsNotifier:
    """Hands notifications to a downstream push service through SQS."""

    def __init__(self, queue_url: str):
        self._queue_url = queue_url

    async def send(self, user_id: str, notification: Notification) -> None:
        await send_message({"user_id": user_id, **notification.model_dump()}, queue_url=self._queue_url)


class NotificationDispatcher:
    def __init__(self, notifier: Notifier):
        self._notifier = notifier
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(self, recipients: Iterable[str | None], notification: Notification) -> None:
        """Schedule one send per distinct recipient. Returns immediately."""
        for user_id in dict.fromkeys(r for r in recipients if r):
            self.spawn(self._deliver(user_id, notification), f"notify user={user_id}")

    def spawn(self, coro: Awaitable[None], description: str) -> None:
        """Run coro in the background; failures are logged and counted, never raised."""
        t = asyncio.create_task(self._guard(coro, description))
        self._tasks.add(t)
        notifications_pending.set(len(self._tasks))
        t.add_done_callback(self._done)

    def _done(self, t: asyncio.Task) -> None:
        self._tasks.discard(t)
        notifications_pending.set(len(self._tasks))

    async def _deliver(self, user_id: str, notification: Notification) -> None:
        await self._notifier.send(user_id, notification)
        notifications_sent_total.inc()
        logger.debug("Notified user=%s type=%s", user_id, notification.type)

    async def _guard(self, coro: Awaitable[None], description: str) -> None:
        try:
            await coro
        except Exception as e:
            notifications_failed_total.inc()
            logger.warning("Notification task failed (%s): %s", description, e)

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for in-flight notifications (graceful shutdown). Cancels what is left after timeout."""
        if not self._tasks:
            return
        logger.info("Waiting for %d in-flight notification(s) ...", len(self._tasks))
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        # Tasks may schedule further sends (driver broadcasts), so loop until empty.
        while self._tasks:
            remaining = None if deadline is None else max(deadline - loop.time(), 0)
            _, pending = await asyncio.wait(set(self._tasks), timeout=remaining, return_when=asyncio.ALL_COMPLETED)
            if pending and deadline is not None and loop.time() >= deadline:
                for t in pending:
                    t.cancel()
                await asyncio.gather(*pending, return_exceptions=True)
                return
