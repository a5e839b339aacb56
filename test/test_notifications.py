"""Tests for the notification dispatcher and in-memory notifier."""

import asyncio

from _helper import RecordingNotifier
from hmarket.notifications import InMemoryNotifier, Notification, NotificationDispatcher


def _note(kind="order_update"):
    return Notification(type=kind, title="Update", message="Your order moved")


class _SlowNotifier:
    def __init__(self, delay):
        self.delay = delay
        self.sent = []

    async def send(self, user_id, notification):
        await asyncio.sleep(self.delay)
        self.sent.append(user_id)


class _FlakyNotifier:
    def __init__(self, broken_user):
        self.broken_user = broken_user
        self.sent = []

    async def send(self, user_id, notification):
        if user_id == self.broken_user:
            raise ConnectionError("socket closed")
        self.sent.append(user_id)


class TestDispatcher:
    async def test_recipients_deduplicated_and_blank_skipped(self):
        notifier = RecordingNotifier()
        dispatcher = NotificationDispatcher(notifier)
        dispatcher.dispatch(["u1", None, "u2", "u1", ""], _note())
        await dispatcher.drain()
        assert sorted(u for u, _ in notifier.sent) == ["u1", "u2"]

    async def test_failure_is_contained(self):
        notifier = _FlakyNotifier("u2")
        dispatcher = NotificationDispatcher(notifier)
        dispatcher.dispatch(["u1", "u2", "u3"], _note())
        await dispatcher.drain()
        assert sorted(notifier.sent) == ["u1", "u3"]
        assert dispatcher.pending == 0

    async def test_dispatch_returns_before_delivery(self):
        notifier = _SlowNotifier(0.05)
        dispatcher = NotificationDispatcher(notifier)
        dispatcher.dispatch(["u1"], _note())
        assert notifier.sent == []
        assert dispatcher.pending == 1
        await dispatcher.drain()
        assert notifier.sent == ["u1"]

    async def test_drain_timeout_cancels_stragglers(self):
        notifier = _SlowNotifier(10)
        dispatcher = NotificationDispatcher(notifier)
        dispatcher.dispatch(["u1"], _note())
        await dispatcher.drain(timeout=0.05)
        assert dispatcher.pending == 0
        assert notifier.sent == []

    async def test_drain_with_nothing_pending(self):
        await NotificationDispatcher(InMemoryNotifier()).drain(timeout=1)


class TestInMemoryNotifier:
    async def test_subscriber_receives_push(self):
        notifier = InMemoryNotifier()
        queue = notifier.subscribe("u1")
        await notifier.send("u1", _note("order_delivered"))
        assert queue.get_nowait().type == "order_delivered"

    async def test_unsubscribed_user_misses_push(self):
        notifier = InMemoryNotifier()
        queue = notifier.subscribe("u1")
        notifier.unsubscribe("u1", queue)
        await notifier.send("u1", _note())
        assert queue.empty()

    async def test_slow_subscriber_loses_oldest(self):
        notifier = InMemoryNotifier(queue_size=2)
        queue = notifier.subscribe("u1")
        for kind in ("order_confirmed", "order_assigned", "order_delivered"):
            await notifier.send("u1", _note(kind))
        assert queue.qsize() == 2
        assert [queue.get_nowait().type for _ in range(2)] == ["order_assigned", "order_delivered"]

    async def test_every_connection_gets_a_copy(self):
        notifier = InMemoryNotifier()
        phone, laptop = notifier.subscribe("u1"), notifier.subscribe("u1")
        await notifier.send("u1", _note())
        await notifier.send("u2", _note())
        assert phone.qsize() == laptop.qsize() == 1
