from __future__ import annotations

import logging
from typing import Dict, List

from ..core.batch import group_by, index_by
from ..core.errors import ChatEngineError
from ..core.metrics import observe_loader
from ..core.notify import Notifier
from ..core.store import RelationalStore
from ..models.chat import ConversationView, LastMessage, MemberView
from .profiles import ProfileDirectory
from .read_state import MembershipStore

logger = logging.getLogger(__name__)


def count_unread(messages: List[dict], last_read_at, user_id: str, include_own: bool = False) -> int:
    count = 0
    for m in messages:
        if m.get("is_deleted"):
            continue
        if not include_own and m.get("sender_id") == user_id:
            continue
        if last_read_at is None or m["created_at"] > last_read_at:
            count += 1
    return count


class ConversationAggregator:
    """Builds the enriched conversation list of one user."""

    def __init__(
        self,
        store: RelationalStore,
        memberships: MembershipStore,
        profiles: ProfileDirectory,
        notifier: Notifier,
        include_own: bool = False,
    ):
        self.store = store
        self.memberships = memberships
        self.profiles = profiles
        self.notifier = notifier
        self.include_own = include_own

    async def build_conversations(self, user_id: str) -> List[ConversationView]:
        own = await self.memberships.list_memberships(user_id)
        if not own:
            return []
        own_by_conv = index_by(own, "conversation_id")
        ids = list(own_by_conv)

        conversations = await (
            self.store.table("conversations")
            .in_("id", ids)
            .order("last_message_at", desc=True, nulls_last=True)
            .fetch()
        )
        members = await self.memberships.list_all_members(ids)
        profiles = await self.profiles.fetch(m["user_id"] for m in members)

        recent = await (
            self.store.table("messages")
            .select("id, conversation_id, content, sender_id, created_at, message_type")
            .in_("conversation_id", ids)
            .eq("is_deleted", False)
            .order("created_at", desc=True)
            .order("id", desc=True)
            .fetch()
        )
        last_by_conv: Dict[str, dict] = {}
        for m in recent:
            last_by_conv.setdefault(m["conversation_id"], m)

        # 只取最早已读时间之后的消息，null 表示全部
        read_marks = [m.get("last_read_at") for m in own]
        eligible = (
            self.store.table("messages")
            .select("conversation_id, sender_id, created_at, is_deleted")
            .in_("conversation_id", ids)
            .eq("is_deleted", False)
        )
        if all(read_marks):
            eligible = eligible.gt("created_at", min(read_marks))
        unread_by_conv = group_by(await eligible.fetch(), "conversation_id")

        members_by_conv = group_by(members, "conversation_id")
        views: List[ConversationView] = []
        for conv in conversations:
            cid = conv["id"]
            mine = own_by_conv[cid]
            member_views = []
            for m in members_by_conv.get(cid, []):
                profile = ProfileDirectory.resolve(profiles, m["user_id"])
                member_views.append(
                    MemberView(**m, display_name=profile.display_name, handle=profile.handle)
                )
            other_user = None
            if conv["type"] == "direct":
                other = next((m for m in member_views if m.user_id != user_id), None)
                if other is not None:
                    other_user = ProfileDirectory.resolve(profiles, other.user_id)
            last = last_by_conv.get(cid)
            views.append(
                ConversationView(
                    **conv,
                    members=member_views,
                    last_message=LastMessage(
                        content=last["content"],
                        sender_id=last["sender_id"],
                        created_at=last["created_at"],
                        message_type=last["message_type"],
                    )
                    if last
                    else None,
                    unread_count=count_unread(
                        unread_by_conv.get(cid, []),
                        mine.get("last_read_at"),
                        user_id,
                        self.include_own,
                    ),
                    is_pinned=bool(mine.get("is_pinned")),
                    is_muted=bool(mine.get("is_muted")),
                    other_user=other_user,
                )
            )
        return views

    async def load_conversations(self, user_id: str) -> List[ConversationView]:
        """Never raises; failures are logged, notified and yield an empty list."""
        try:
            with observe_loader("conversations"):
                return await self.build_conversations(user_id)
        except ChatEngineError as e:
            logger.error("Failed to load conversations for %s: %s", user_id, e)
            self.notifier.error("Failed to load conversations")
            return []
