"""Realtime fan-out: change-feed subscriptions that re-run loaders.

Callbacks carry no diffing logic. Each one pokes a :class:`ReloadTrigger`,
which collapses every event arriving in the same loop tick (or within the
configured window) into a single reload.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, List, Optional, Set

from ..core.change_feed import ChangeFeed, Subscription
from ..core.events import INSERT, ChangeEvent

logger = logging.getLogger(__name__)


class ReloadTrigger:
    def __init__(self, reload: Callable[[], Any], window: float = 0.0, name: str = "reload"):
        self.reload = reload
        self.window = window
        self.name = name
        self.runs = 0
        self._handle: Optional[asyncio.Handle] = None
        self._tasks: Set[asyncio.Future] = set()
        self._closed = False

    def __call__(self, event: Optional[ChangeEvent] = None) -> None:
        if self._closed or self._handle is not None:
            return
        loop = asyncio.get_running_loop()
        if self.window > 0:
            self._handle = loop.call_later(self.window, self._run)
        else:
            self._handle = loop.call_soon(self._run)

    def _run(self) -> None:
        self._handle = None
        if self._closed:
            return
        self.runs += 1
        result = self.reload()
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._done)

    def _done(self, task: asyncio.Future) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("%s failed: %s", self.name, task.exception())

    def close(self) -> None:
        self._closed = True
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None


class Binding:
    """Subscriptions made for one mounted view; ``close`` releases them."""

    def __init__(self, feed: ChangeFeed, name: str):
        self.feed = feed
        self.name = name
        self.subscriptions: List[Subscription] = []
        self.triggers: List[ReloadTrigger] = []
        self.closed = False

    def subscribe(self, topic: str, callback, match=None, events=None) -> Subscription:
        sub = self.feed.subscribe(topic, callback, match=match, events=events)
        self.subscriptions.append(sub)
        return sub

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        for trigger in self.triggers:
            trigger.close()
        for sub in self.subscriptions:
            self.feed.unsubscribe(sub)
        self.subscriptions.clear()
        logger.debug("closed binding %s", self.name)


class RealtimeBridge:
    def __init__(self, feed: ChangeFeed, coalesce_window: float = 0.0):
        self.feed = feed
        self.coalesce_window = coalesce_window
        self._bindings: List[Binding] = []

    def _binding(self, name: str, reload: Callable[[], Any]):
        binding = Binding(self.feed, name)
        trigger = ReloadTrigger(reload, self.coalesce_window, name=name)
        binding.triggers.append(trigger)
        self._bindings = [b for b in self._bindings if not b.closed]
        self._bindings.append(binding)
        return binding, trigger

    def watch_conversations(self, user_id: str, reload: Callable[[], Any]) -> Binding:
        binding, trigger = self._binding(f"conversations:{user_id}", reload)
        binding.subscribe("conversations", trigger)
        binding.subscribe("conversation_members", trigger, match={"user_id": user_id})
        binding.subscribe("messages", trigger, events=[INSERT])
        return binding

    def watch_thread(
        self,
        conversation_id: str,
        reload: Callable[[], Any],
        on_insert: Optional[Callable[[ChangeEvent], Any]] = None,
    ) -> Binding:
        binding, trigger = self._binding(f"thread:{conversation_id}", reload)

        def on_message(event: ChangeEvent) -> Any:
            if on_insert is not None and event.type == INSERT:
                return on_insert(event)
            trigger(event)
            return None

        binding.subscribe("messages", on_message, match={"conversation_id": conversation_id})
        binding.subscribe("message_reactions", trigger)
        binding.subscribe("message_attachments", trigger)
        binding.subscribe("message_read_receipts", trigger)
        return binding

    def watch_typing(self, conversation_id: str, reload: Callable[[], Any]) -> Binding:
        binding, trigger = self._binding(f"typing:{conversation_id}", reload)
        binding.subscribe("typing_indicators", trigger, match={"conversation_id": conversation_id})
        return binding

    def dispose(self) -> None:
        for binding in self._bindings:
            binding.close()
        self._bindings.clear()
