from __future__ import annotations

import logging
from typing import List, Optional

from ..core.batch import distinct
from ..core.errors import Forbidden, InvalidRequest, NotFound, StoreError
from ..core.store import RelationalStore
from .read_state import MembershipStore

logger = logging.getLogger(__name__)


def direct_key(user_id: str, other_user_id: str) -> str:
    return "|".join(sorted((user_id, other_user_id)))


class ConversationService:
    """Conversation lifecycle: open/create, rename, archive, leave."""

    def __init__(self, store: RelationalStore, memberships: MembershipStore):
        self.store = store
        self.memberships = memberships

    async def get_conversation(self, conversation_id: str) -> dict:
        row = await self.store.table("conversations").eq("id", conversation_id).first()
        if row is None:
            raise NotFound(f"conversation {conversation_id} not found")
        return row

    async def require_member(self, conversation_id: str, user_id: str) -> dict:
        membership = await self.memberships.get_membership(conversation_id, user_id)
        if membership is None:
            raise Forbidden("not a conversation member")
        return membership

    async def find_direct(self, user_id: str, other_user_id: str) -> Optional[str]:
        row = await (
            self.store.table("conversations")
            .select("id")
            .eq("direct_key", direct_key(user_id, other_user_id))
            .first()
        )
        return row["id"] if row else None

    async def open_or_create_direct(self, user_id: str, other_user_id: str) -> str:
        if not other_user_id or other_user_id == user_id:
            raise InvalidRequest("a direct conversation needs another user")
        existing = await self.find_direct(user_id, other_user_id)
        if existing:
            return existing
        try:
            conv = (
                await self.store.insert(
                    "conversations",
                    {
                        "type": "direct",
                        "created_by": user_id,
                        "direct_key": direct_key(user_id, other_user_id),
                    },
                )
            )[0]
        except StoreError:
            # 并发创建时唯一键冲突，返回先写入的会话
            existing = await self.find_direct(user_id, other_user_id)
            if existing:
                return existing
            raise
        try:
            await self.store.insert(
                "conversation_members",
                [
                    {"conversation_id": conv["id"], "user_id": user_id, "role": "member"},
                    {"conversation_id": conv["id"], "user_id": other_user_id, "role": "member"},
                ],
            )
        except StoreError:
            await self._discard(conv["id"])
            raise
        logger.info("Created direct conversation %s for %s and %s", conv["id"], user_id, other_user_id)
        return conv["id"]

    async def _discard(self, conversation_id: str) -> None:
        try:
            await self.store.delete("conversations").eq("id", conversation_id).execute()
        except StoreError as e:
            logger.error("Failed to remove memberless conversation %s: %s", conversation_id, e)

    async def create_group(
        self,
        creator_id: str,
        name: str,
        member_ids: List[str],
        description: Optional[str] = None,
    ) -> str:
        name = (name or "").strip()
        if not name:
            raise InvalidRequest("group name is required")
        others = [u for u in distinct(member_ids) if u != creator_id]
        conv = (
            await self.store.insert(
                "conversations",
                {
                    "type": "group",
                    "name": name,
                    "description": description,
                    "created_by": creator_id,
                },
            )
        )[0]
        rows = [{"conversation_id": conv["id"], "user_id": creator_id, "role": "admin"}]
        rows += [{"conversation_id": conv["id"], "user_id": u, "role": "member"} for u in others]
        await self.store.insert("conversation_members", rows)
        logger.info("Created group %s with %d members", conv["id"], len(rows))
        return conv["id"]

    async def update_conversation(
        self,
        conversation_id: str,
        user_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> dict:
        await self.require_member(conversation_id, user_id)
        patch = {
            k: v
            for k, v in (("name", name), ("description", description), ("avatar_url", avatar_url))
            if v is not None
        }
        if not patch:
            raise InvalidRequest("nothing to update")
        rows = await (
            self.store.update("conversations", patch).eq("id", conversation_id).execute()
        )
        if not rows:
            raise NotFound(f"conversation {conversation_id} not found")
        return rows[0]

    async def archive(self, conversation_id: str, user_id: str, archived: bool = True) -> dict:
        await self.require_member(conversation_id, user_id)
        rows = await (
            self.store.update("conversations", {"is_archived": archived})
            .eq("id", conversation_id)
            .execute()
        )
        if not rows:
            raise NotFound(f"conversation {conversation_id} not found")
        return rows[0]

    async def leave(self, conversation_id: str, user_id: str) -> None:
        conv = await self.get_conversation(conversation_id)
        membership = await self.require_member(conversation_id, user_id)
        if conv["type"] == "direct":
            raise InvalidRequest("direct conversations cannot be left, archive them instead")
        members = await self.memberships.list_all_members([conversation_id])
        remaining = [m for m in members if m["user_id"] != user_id]
        if not remaining:
            raise InvalidRequest("the last member cannot leave a group")
        await self.memberships.leave(conversation_id, user_id)
        if membership["role"] == "admin" and not any(m["role"] == "admin" for m in remaining):
            # 管理员离开时提升最早加入的成员
            successor = min(remaining, key=lambda m: (m["joined_at"], m["id"]))
            await self.memberships.join(conversation_id, successor["user_id"], "admin")
