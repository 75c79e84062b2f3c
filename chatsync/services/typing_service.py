from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from ..core.errors import ChatEngineError
from ..core.events import utcnow
from ..core.store import RelationalStore
from ..models.chat import TypingUser
from .profiles import ProfileDirectory

logger = logging.getLogger(__name__)


def describe_typing(users: List[TypingUser]) -> str:
    if not users:
        return ""
    names = ", ".join(u.display_name or u.handle or "User" for u in users)
    verb = "is typing" if len(users) == 1 else "are typing"
    return f"{names} {verb}..."


class TypingTracker:
    """Typing indicators: one row per (conversation, user), removed by the
    typing client itself after ``ttl`` seconds without a keystroke."""

    def __init__(
        self,
        store: RelationalStore,
        profiles: ProfileDirectory,
        ttl: float = 3.0,
        stale_after: float = 5.0,
    ):
        self.store = store
        self.profiles = profiles
        self.ttl = ttl
        self.stale_after = stale_after
        self._timers: Dict[Tuple[str, str], asyncio.TimerHandle] = {}

    def is_typing(self, conversation_id: str, user_id: str) -> bool:
        return (conversation_id, user_id) in self._timers

    async def start_typing(self, conversation_id: str, user_id: str) -> None:
        key = (conversation_id, user_id)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(self.ttl, self._expire, conversation_id, user_id)
        await self.store.upsert(
            "typing_indicators",
            {"conversation_id": conversation_id, "user_id": user_id, "started_at": utcnow()},
            on_conflict=("conversation_id", "user_id"),
        )

    def _expire(self, conversation_id: str, user_id: str) -> None:
        self._timers.pop((conversation_id, user_id), None)
        task = asyncio.ensure_future(self.stop_typing(conversation_id, user_id))
        task.add_done_callback(_log_expire_failure)

    async def stop_typing(self, conversation_id: str, user_id: str) -> None:
        timer = self._timers.pop((conversation_id, user_id), None)
        if timer is not None:
            timer.cancel()
        await (
            self.store.delete("typing_indicators")
            .eq("conversation_id", conversation_id)
            .eq("user_id", user_id)
            .execute()
        )

    async def list_typing(
        self, conversation_id: str, excluding_user_id: Optional[str] = None
    ) -> List[TypingUser]:
        rows = await self.store.table("typing_indicators").eq("conversation_id", conversation_id).fetch()
        cutoff = utcnow() - timedelta(seconds=self.stale_after)
        stale = [r for r in rows if r["started_at"] is not None and r["started_at"] < cutoff]
        if stale:
            try:
                await (
                    self.store.delete("typing_indicators")
                    .in_("id", [r["id"] for r in stale])
                    .execute()
                )
            except ChatEngineError as e:
                logger.warning("Failed to prune stale typing rows: %s", e)
        fresh = [
            r
            for r in rows
            if r not in stale and r["user_id"] != excluding_user_id
        ]
        profiles = await self.profiles.fetch(r["user_id"] for r in fresh)
        users = []
        for r in sorted(fresh, key=lambda r: r["started_at"]):
            profile = ProfileDirectory.resolve(profiles, r["user_id"])
            users.append(
                TypingUser(
                    user_id=r["user_id"],
                    display_name=profile.display_name,
                    handle=profile.handle,
                    started_at=r["started_at"],
                )
            )
        return users

    async def dispose(self) -> None:
        keys = list(self._timers)
        for key in keys:
            self._timers.pop(key).cancel()
        for conversation_id, user_id in keys:
            try:
                await self.stop_typing(conversation_id, user_id)
            except ChatEngineError as e:
                logger.warning("Failed to clear typing for %s in %s: %s", user_id, conversation_id, e)


def _log_expire_failure(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Typing expiry failed: %s", task.exception())
