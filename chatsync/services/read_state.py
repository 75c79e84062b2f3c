from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, List, Optional

from ..core.debounce import DebouncedCoalescer
from ..core.errors import ChatEngineError, InvalidRequest, NotFound, Superseded
from ..core.events import utcnow
from ..core.store import RelationalStore

logger = logging.getLogger(__name__)


class MembershipStore:
    """Membership rows and the only writer of ``last_read_at``."""

    def __init__(self, store: RelationalStore):
        self.store = store

    async def list_memberships(self, user_id: str) -> List[dict]:
        return await (
            self.store.table("conversation_members")
            .select("conversation_id, last_read_at, is_pinned, is_muted, role")
            .eq("user_id", user_id)
            .fetch()
        )

    async def list_all_members(self, conversation_ids: Iterable[str]) -> List[dict]:
        ids = list(conversation_ids)
        if not ids:
            return []
        return await self.store.table("conversation_members").in_("conversation_id", ids).fetch()

    async def get_membership(self, conversation_id: str, user_id: str) -> Optional[dict]:
        return await (
            self.store.table("conversation_members")
            .eq("conversation_id", conversation_id)
            .eq("user_id", user_id)
            .first()
        )

    async def is_member(self, conversation_id: str, user_id: str) -> bool:
        return await self.get_membership(conversation_id, user_id) is not None

    async def set_last_read(
        self, conversation_id: str, user_id: str, timestamp: Optional[datetime] = None
    ) -> None:
        rows = await (
            self.store.update("conversation_members", {"last_read_at": timestamp or utcnow()})
            .eq("conversation_id", conversation_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not rows:
            raise NotFound(f"{user_id} is not a member of {conversation_id}")

    async def reset_last_read(self, conversation_id: str) -> None:
        await (
            self.store.update("conversation_members", {"last_read_at": None})
            .eq("conversation_id", conversation_id)
            .execute()
        )

    async def join(self, conversation_id: str, user_id: str, role: str = "member") -> dict:
        return await self.store.upsert(
            "conversation_members",
            {"conversation_id": conversation_id, "user_id": user_id, "role": role},
            on_conflict=("conversation_id", "user_id"),
        )

    async def leave(self, conversation_id: str, user_id: str) -> bool:
        rows = await (
            self.store.delete("conversation_members")
            .eq("conversation_id", conversation_id)
            .eq("user_id", user_id)
            .execute()
        )
        return bool(rows)

    async def set_flags(
        self,
        conversation_id: str,
        user_id: str,
        muted: Optional[bool] = None,
        pinned: Optional[bool] = None,
    ) -> dict:
        patch = {}
        if muted is not None:
            patch["is_muted"] = muted
        if pinned is not None:
            patch["is_pinned"] = pinned
        if not patch:
            raise InvalidRequest("nothing to update")
        rows = await (
            self.store.update("conversation_members", patch)
            .eq("conversation_id", conversation_id)
            .eq("user_id", user_id)
            .execute()
        )
        if not rows:
            raise NotFound(f"{user_id} is not a member of {conversation_id}")
        return rows[0]


class ReadMarker:
    def __init__(self, memberships: MembershipStore, coalescer: DebouncedCoalescer):
        self.memberships = memberships
        self.coalescer = coalescer

    async def mark_conversation_read(self, conversation_id: str, user_id: str) -> bool:
        """Debounced; returns True only for the call that actually wrote."""
        if not conversation_id or not user_id:
            return False
        future = self.coalescer.schedule(
            (conversation_id, user_id),
            lambda: self.memberships.set_last_read(conversation_id, user_id, utcnow()),
        )
        try:
            await future
        except Superseded:
            return False
        except ChatEngineError as e:
            logger.error("Failed to mark %s read for %s: %s", conversation_id, user_id, e)
            return False
        return True
