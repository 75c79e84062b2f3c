from __future__ import annotations

from typing import List

from ..core.errors import Forbidden, NotFound
from ..core.events import utcnow
from ..core.store import RelationalStore
from ..models.chat import ReadReceiptView
from .read_state import MembershipStore


class ReceiptService:
    """Per-message delivery/read receipts."""

    def __init__(self, store: RelationalStore, memberships: MembershipStore):
        self.store = store
        self.memberships = memberships

    async def _message_for(self, message_id: str, user_id: str) -> dict:
        message = await (
            self.store.table("messages")
            .select("id, conversation_id, sender_id")
            .eq("id", message_id)
            .first()
        )
        if message is None:
            raise NotFound(f"message {message_id} not found")
        if not await self.memberships.is_member(message["conversation_id"], user_id):
            raise Forbidden("not a conversation member")
        return message

    async def _existing(self, message_id: str, user_id: str):
        return await (
            self.store.table("message_read_receipts")
            .eq("message_id", message_id)
            .eq("user_id", user_id)
            .first()
        )

    async def mark_delivered(self, message_id: str, user_id: str) -> bool:
        """No-op for the sender's own message or an existing receipt."""
        message = await self._message_for(message_id, user_id)
        if message["sender_id"] == user_id:
            return False
        if await self._existing(message_id, user_id) is not None:
            return False
        await self.store.upsert(
            "message_read_receipts",
            {"message_id": message_id, "user_id": user_id, "delivered_at": utcnow()},
            on_conflict=("message_id", "user_id"),
        )
        return True

    async def mark_message_read(self, message_id: str, user_id: str) -> dict:
        await self._message_for(message_id, user_id)
        now = utcnow()
        existing = await self._existing(message_id, user_id)
        if existing is not None:
            # 读必然已达
            rows = await (
                self.store.update(
                    "message_read_receipts",
                    {"read_at": now, "delivered_at": existing["delivered_at"] or now},
                )
                .eq("id", existing["id"])
                .execute()
            )
            return rows[0]
        return await self.store.upsert(
            "message_read_receipts",
            {"message_id": message_id, "user_id": user_id, "delivered_at": now, "read_at": now},
            on_conflict=("message_id", "user_id"),
        )

    async def mark_all_read(self, conversation_id: str, user_id: str) -> int:
        """Read receipts for every unread message of others, then the membership mark."""
        if not await self.memberships.is_member(conversation_id, user_id):
            raise Forbidden("not a conversation member")
        messages = await (
            self.store.table("messages")
            .select("id, sender_id")
            .eq("conversation_id", conversation_id)
            .eq("is_deleted", False)
            .neq("sender_id", user_id)
            .fetch()
        )
        ids = [m["id"] for m in messages]
        done = set()
        if ids:
            read = await (
                self.store.table("message_read_receipts")
                .select("message_id, read_at")
                .in_("message_id", ids)
                .eq("user_id", user_id)
                .fetch()
            )
            done = {r["message_id"] for r in read if r["read_at"] is not None}
        now = utcnow()
        marked = 0
        for message_id in ids:
            if message_id in done:
                continue
            await self.store.upsert(
                "message_read_receipts",
                {"message_id": message_id, "user_id": user_id, "read_at": now},
                on_conflict=("message_id", "user_id"),
            )
            marked += 1
        await self.memberships.set_last_read(conversation_id, user_id, now)
        return marked

    async def list_receipts(self, message_id: str, user_id: str) -> List[ReadReceiptView]:
        await self._message_for(message_id, user_id)
        rows = await (
            self.store.table("message_read_receipts")
            .eq("message_id", message_id)
            .order("delivered_at")
            .fetch()
        )
        return [ReadReceiptView(**r) for r in rows]
