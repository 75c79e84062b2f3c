from __future__ import annotations

import logging
from typing import List, Optional

from ..core.batch import batch_attach
from ..core.errors import ChatEngineError, InvalidRequest, NotFound
from ..core.metrics import observe_loader
from ..core.notify import Notifier
from ..core.store import RelationalStore
from ..models.chat import (
    AttachmentView,
    MessageView,
    ReactionView,
    ReadReceiptView,
)
from .profiles import ProfileDirectory

logger = logging.getLogger(__name__)


def _sort_key(row: dict):
    return (row["created_at"], row["id"])


class MessageThreadLoader:
    """Loads one page of a conversation's messages with everything a thread
    renders: sender, reactions with their users, attachments and receipts."""

    def __init__(
        self,
        store: RelationalStore,
        profiles: ProfileDirectory,
        notifier: Notifier,
        page_size: int = 50,
    ):
        self.store = store
        self.profiles = profiles
        self.notifier = notifier
        self.page_size = page_size

    async def _page(self, conversation_id: str, limit: int, before_id: Optional[str]) -> List[dict]:
        query = (
            self.store.table("messages")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=True)
            .order("id", desc=True)
            .limit(limit)
        )
        if before_id is None:
            return await query.fetch()

        anchor = await (
            self.store.table("messages")
            .select("id, created_at")
            .eq("id", before_id)
            .eq("conversation_id", conversation_id)
            .first()
        )
        if anchor is None:
            raise NotFound(f"message {before_id} not found")
        older = await query.lt("created_at", anchor["created_at"]).fetch()
        # 同一时间戳按 id 排序
        ties = await (
            self.store.table("messages")
            .eq("conversation_id", conversation_id)
            .eq("created_at", anchor["created_at"])
            .lt("id", anchor["id"])
            .fetch()
        )
        return sorted(older + ties, key=_sort_key, reverse=True)[:limit]

    async def enrich(self, rows: List[dict]) -> List[MessageView]:
        if not rows:
            return []
        reactions = await batch_attach(self.store, rows, "message_reactions", "message_id", "reactions")
        await batch_attach(self.store, rows, "message_attachments", "message_id", "attachments")
        await batch_attach(self.store, rows, "message_read_receipts", "message_id", "read_receipts")
        profiles = await self.profiles.fetch(
            [r["sender_id"] for r in rows] + [r["user_id"] for r in reactions]
        )

        views = []
        for row in rows:
            views.append(
                MessageView(
                    **{k: v for k, v in row.items() if k not in ("reactions", "attachments", "read_receipts")},
                    sender=ProfileDirectory.resolve(profiles, row["sender_id"]),
                    reactions=[
                        ReactionView(**r, user=ProfileDirectory.resolve(profiles, r["user_id"]))
                        for r in row["reactions"]
                    ],
                    attachments=[AttachmentView(**a) for a in row["attachments"]],
                    read_receipts=[ReadReceiptView(**r) for r in row["read_receipts"]],
                )
            )
        return views

    async def build_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[MessageView]:
        if not conversation_id:
            raise InvalidRequest("conversation id is required")
        limit = limit or self.page_size
        if limit < 1:
            raise InvalidRequest("limit must be positive")
        rows = await self._page(conversation_id, limit, before_id)
        rows.sort(key=_sort_key)
        return await self.enrich(rows)

    async def get_message(self, message_id: str) -> MessageView:
        row = await self.store.table("messages").eq("id", message_id).first()
        if row is None:
            raise NotFound(f"message {message_id} not found")
        return (await self.enrich([row]))[0]

    async def load_messages(
        self,
        conversation_id: str,
        limit: Optional[int] = None,
        before_id: Optional[str] = None,
    ) -> List[MessageView]:
        try:
            with observe_loader("messages"):
                return await self.build_messages(conversation_id, limit, before_id)
        except InvalidRequest as e:
            logger.debug("Skipping message load: %s", e)
            return []
        except ChatEngineError as e:
            logger.error("Failed to load messages for %s: %s", conversation_id, e)
            self.notifier.error("Failed to load messages")
            return []
