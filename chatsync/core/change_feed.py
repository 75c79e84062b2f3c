from __future__ import annotations

import asyncio
import inspect
import itertools
import json
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional

from redis import asyncio as aioredis

from .config import Settings, settings as default_settings
from .events import ALL_EVENTS, ChangeEvent
from .metrics import FEED_DELIVERIES

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[ChangeEvent], Any]

_ids = itertools.count(1)


class Subscription:
    """Handle returned by ``subscribe``; pass it back to ``unsubscribe``."""

    def __init__(
        self,
        topic: str,
        callback: ChangeCallback,
        match: Optional[Dict[str, Any]] = None,
        events: Optional[Iterable[str]] = None,
    ):
        self.id = next(_ids)
        self.topic = topic
        self.callback = callback
        self.match = dict(match or {})
        self.events = frozenset(e.upper() for e in (events or ALL_EVENTS))
        self.active = True

    def accepts(self, event: ChangeEvent) -> bool:
        return (
            self.active
            and event.table == self.topic
            and event.type in self.events
            and event.matches(self.match)
        )

    def __repr__(self) -> str:
        return f"<Subscription {self.id} {self.topic} {sorted(self.events)} {self.match}>"


def _log_callback_failure(task: "asyncio.Future") -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Change feed callback failed: %s", exc, exc_info=exc)


def dispatch(subscription: Subscription, event: ChangeEvent) -> None:
    if not subscription.accepts(event):
        return
    FEED_DELIVERIES.labels(table=event.table).inc()
    try:
        result = subscription.callback(event)
    except Exception:
        logger.exception("Change feed callback failed for %r", subscription)
        return
    if inspect.isawaitable(result):
        task = asyncio.ensure_future(result)
        task.add_done_callback(_log_callback_failure)


class InMemoryChangeFeed:
    """Single-process feed; delivery happens on a later loop iteration, like a
    real replication stream echoing a committed write."""

    def __init__(self) -> None:
        self._subs: Dict[str, List[Subscription]] = {}

    def subscribe(
        self,
        topic: str,
        callback: ChangeCallback,
        match: Optional[Dict[str, Any]] = None,
        events: Optional[Iterable[str]] = None,
    ) -> Subscription:
        sub = Subscription(topic, callback, match, events)
        self._subs.setdefault(topic, []).append(sub)
        logger.debug("subscribed %r", sub)
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        lst = self._subs.get(subscription.topic)
        if not lst:
            return
        if subscription in lst:
            lst.remove(subscription)
        if not lst:
            self._subs.pop(subscription.topic, None)

    def subscription_count(self, topic: Optional[str] = None) -> int:
        if topic is not None:
            return len(self._subs.get(topic, []))
        return sum(len(v) for v in self._subs.values())

    async def publish(self, event: ChangeEvent) -> None:
        lst = list(self._subs.get(event.table, []))
        if not lst:
            return
        loop = asyncio.get_running_loop()
        for sub in lst:
            loop.call_soon(dispatch, sub, event)

    async def close(self) -> None:
        for lst in self._subs.values():
            for sub in lst:
                sub.active = False
        self._subs.clear()


class RedisChangeFeed:
    """Feed shared across processes through redis pub/sub, one channel per table."""

    def __init__(self, url: str, prefix: str = "chatsync:changes:"):
        self._url = url
        self._prefix = prefix
        self._pub = aioredis.from_url(url)
        self._sub = aioredis.from_url(url)
        self._tasks: Dict[int, asyncio.Task] = {}
        self._subs: Dict[int, Subscription] = {}

    def _channel(self, topic: str) -> str:
        return f"{self._prefix}{topic}"

    def subscribe(
        self,
        topic: str,
        callback: ChangeCallback,
        match: Optional[Dict[str, Any]] = None,
        events: Optional[Iterable[str]] = None,
    ) -> Subscription:
        sub = Subscription(topic, callback, match, events)
        channel = self._channel(topic)

        async def reader():
            pubsub = self._sub.pubsub()
            await pubsub.subscribe(channel)
            try:
                while sub.active:
                    message = await pubsub.get_message(
                        ignore_subscribe_messages=True, timeout=1.0
                    )
                    if message is None:
                        await asyncio.sleep(0.05)
                        continue
                    data = message.get("data")
                    try:
                        if isinstance(data, (bytes, bytearray)):
                            data = data.decode("utf-8")
                        event = ChangeEvent.from_dict(json.loads(data))
                    except (ValueError, KeyError, TypeError) as e:
                        logger.warning("Dropping malformed change event on %s: %s", channel, e)
                        continue
                    dispatch(sub, event)
            finally:
                await pubsub.unsubscribe(channel)
                await pubsub.close()

        self._subs[sub.id] = sub
        self._tasks[sub.id] = asyncio.get_running_loop().create_task(reader())
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        self._subs.pop(subscription.id, None)
        task = self._tasks.pop(subscription.id, None)
        if task:
            task.cancel()

    async def publish(self, event: ChangeEvent) -> None:
        payload = json.dumps(event.to_dict(), default=str)
        await self._pub.publish(self._channel(event.table), payload)

    async def close(self) -> None:
        for sub in list(self._subs.values()):
            self.unsubscribe(sub)
        await self._pub.aclose()
        await self._sub.aclose()


ChangeFeed = InMemoryChangeFeed | RedisChangeFeed


def create_change_feed(config: Settings | None = None) -> ChangeFeed:
    config = config or default_settings
    if config.REDIS_URL:
        logger.info("Using redis change feed at %s", config.REDIS_URL)
        return RedisChangeFeed(config.REDIS_URL, prefix=config.CHANGE_FEED_PREFIX)
    return InMemoryChangeFeed()
