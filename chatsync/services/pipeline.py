from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Dict, Optional

from ..core.blob_store import guess_content_type, message_type_for_mime
from ..core.config import Settings, settings as default_settings
from ..core.errors import BlobStoreError, ChatEngineError, Forbidden, InvalidRequest, NotFound
from ..core.events import utcnow
from ..core.metrics import BEST_EFFORT_FAILURES, MESSAGES_SENT
from ..core.store import RelationalStore
from ..models.chat import MESSAGE_TYPES
from .typing_service import TypingTracker

logger = logging.getLogger(__name__)


class MessagePipeline:
    """Writes for messages.

    A send is not transactional: the message insert must succeed, the
    trailing steps (conversation activity, own read receipt, typing row)
    only log on failure. ``reconcile`` repairs what they left behind.
    """

    def __init__(
        self,
        store: RelationalStore,
        typing: Optional[TypingTracker] = None,
        blob=None,
        config: Settings | None = None,
    ):
        self.store = store
        self.typing = typing
        self.blob = blob
        self.config = config or default_settings

    async def _best_effort(self, step: str, work: Awaitable[Any]) -> None:
        try:
            await work
        except ChatEngineError as e:
            BEST_EFFORT_FAILURES.labels(step=step).inc()
            logger.warning("Best-effort step %s failed: %s", step, e)

    async def _upsert_self_receipt(self, message_id: str, user_id: str) -> None:
        now = utcnow()
        await self.store.upsert(
            "message_read_receipts",
            {"message_id": message_id, "user_id": user_id, "delivered_at": now, "read_at": now},
            on_conflict=("message_id", "user_id"),
        )

    async def _touch_conversation(self, conversation_id: str, at) -> None:
        await (
            self.store.update("conversations", {"last_message_at": at})
            .eq("id", conversation_id)
            .execute()
        )

    async def send_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: Optional[str],
        message_type: str = "text",
        reply_to_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        if not conversation_id or not sender_id:
            raise InvalidRequest("conversation and sender are required")
        if message_type not in MESSAGE_TYPES:
            raise InvalidRequest(f"unknown message type {message_type!r}")
        if content is not None:
            content = content.strip()
        if message_type == "text" and not content:
            raise InvalidRequest("message content is empty")

        message = (
            await self.store.insert(
                "messages",
                {
                    "conversation_id": conversation_id,
                    "sender_id": sender_id,
                    "content": content or None,
                    "message_type": message_type,
                    "metadata": metadata,
                    "reply_to_id": reply_to_id,
                },
            )
        )[0]
        MESSAGES_SENT.labels(type=message_type).inc()

        await self._best_effort(
            "touch_conversation",
            self._touch_conversation(conversation_id, message["created_at"]),
        )
        await self._best_effort("self_receipt", self._upsert_self_receipt(message["id"], sender_id))
        if self.typing is not None:
            await self._best_effort("stop_typing", self.typing.stop_typing(conversation_id, sender_id))
        return message["id"]

    async def _own_message(self, message_id: str, user_id: Optional[str]) -> dict:
        row = await self.store.table("messages").eq("id", message_id).first()
        if row is None:
            raise NotFound(f"message {message_id} not found")
        if user_id is not None and row["sender_id"] != user_id:
            raise Forbidden("only the sender can change a message")
        return row

    async def edit_message(self, message_id: str, new_content: str, user_id: Optional[str] = None) -> dict:
        content = (new_content or "").strip()
        if not content:
            raise InvalidRequest("message content is empty")
        row = await self._own_message(message_id, user_id)
        if row["is_deleted"]:
            raise InvalidRequest("deleted messages cannot be edited")
        rows = await (
            self.store.update(
                "messages",
                {"content": content, "is_edited": True, "edited_at": utcnow()},
            )
            .eq("id", message_id)
            .execute()
        )
        if not rows:
            raise NotFound(f"message {message_id} not found")
        return rows[0]

    async def delete_message(self, message_id: str, user_id: Optional[str] = None) -> dict:
        """Soft delete; attachments and reactions stay."""
        await self._own_message(message_id, user_id)
        rows = await (
            self.store.update(
                "messages",
                {"is_deleted": True, "deleted_at": utcnow(), "content": None},
            )
            .eq("id", message_id)
            .execute()
        )
        if not rows:
            raise NotFound(f"message {message_id} not found")
        return rows[0]

    async def clear_history(self, conversation_id: str) -> int:
        if not conversation_id:
            raise InvalidRequest("conversation id is required")
        messages = await (
            self.store.table("messages").select("id").eq("conversation_id", conversation_id).fetch()
        )
        ids = [m["id"] for m in messages]
        if not ids:
            return 0
        await self.store.delete("message_attachments").in_("message_id", ids).execute()
        cleared = await (
            self.store.update(
                "messages",
                {"is_deleted": True, "deleted_at": utcnow(), "content": None},
            )
            .eq("conversation_id", conversation_id)
            .eq("is_deleted", False)
            .execute()
        )
        await self._best_effort(
            "touch_conversation", self._touch_conversation(conversation_id, None)
        )
        logger.info("Cleared %d messages in %s", len(cleared), conversation_id)
        return len(cleared)

    async def upload_and_send(
        self,
        conversation_id: str,
        sender_id: str,
        data: bytes,
        file_name: str,
        content_type: Optional[str] = None,
    ) -> str:
        if not conversation_id or not sender_id:
            raise InvalidRequest("conversation and sender are required")
        if not data:
            raise InvalidRequest("file is empty")
        if len(data) > self.config.MAX_UPLOAD_BYTES:
            raise InvalidRequest(
                f"File size {len(data)} exceeds limit {self.config.MAX_UPLOAD_BYTES}"
            )
        if self.blob is None:
            raise BlobStoreError("Media storage is not available")

        file_type = guess_content_type(file_name, content_type, data)
        ext = file_name.rsplit(".", 1)[-1] if "." in file_name else "bin"
        path = f"{sender_id}/{int(time.time() * 1000)}.{ext}"
        bucket = self.config.STORAGE_BUCKET

        stored = await self.blob.upload(bucket, path, data, file_type)
        url = await self.blob.get_url(bucket, stored)

        metadata = {"fileName": file_name, "fileSize": len(data), "fileType": file_type}
        message_id = await self.send_message(
            conversation_id,
            sender_id,
            url,
            message_type=message_type_for_mime(file_type),
            metadata=metadata,
        )
        # 消息已提交；附件行缺失由 reconcile 补写
        await self._best_effort(
            "attachment", self._insert_attachment(message_id, url, metadata)
        )
        return message_id

    async def _insert_attachment(self, message_id: str, url: str, metadata: Dict[str, Any]) -> None:
        await self.store.insert(
            "message_attachments",
            {
                "message_id": message_id,
                "file_url": url,
                "file_name": metadata.get("fileName") or "upload",
                "file_type": metadata.get("fileType") or "application/octet-stream",
                "file_size": metadata.get("fileSize"),
            },
        )

    async def add_reaction(self, message_id: str, user_id: str, emoji: str) -> dict:
        if not emoji:
            raise InvalidRequest("emoji is required")
        return await self.store.upsert(
            "message_reactions",
            {"message_id": message_id, "user_id": user_id, "emoji": emoji},
            on_conflict=("message_id", "user_id", "emoji"),
        )

    async def remove_reaction(self, message_id: str, user_id: str, emoji: str) -> bool:
        rows = await (
            self.store.delete("message_reactions")
            .eq("message_id", message_id)
            .eq("user_id", user_id)
            .eq("emoji", emoji)
            .execute()
        )
        return bool(rows)

    async def reconcile(self, conversation_id: str) -> Dict[str, int]:
        """Re-apply the trailing send steps for a conversation. Idempotent."""
        messages = await (
            self.store.table("messages")
            .select("id, sender_id, content, metadata, created_at, is_deleted")
            .eq("conversation_id", conversation_id)
            .order("created_at", desc=True)
            .order("id", desc=True)
            .fetch()
        )
        ids = [m["id"] for m in messages]
        receipts = []
        if ids:
            receipts = await (
                self.store.table("message_read_receipts")
                .select("message_id, user_id")
                .in_("message_id", ids)
                .fetch()
            )
        have = {(r["message_id"], r["user_id"]) for r in receipts}
        repaired = 0
        for m in messages:
            if (m["id"], m["sender_id"]) not in have:
                await self._upsert_self_receipt(m["id"], m["sender_id"])
                repaired += 1

        uploads = [
            m
            for m in messages
            if not m["is_deleted"] and m["content"] and (m["metadata"] or {}).get("fileName")
        ]
        attached = set()
        if uploads:
            rows = await (
                self.store.table("message_attachments")
                .select("message_id")
                .in_("message_id", [m["id"] for m in uploads])
                .fetch()
            )
            attached = {r["message_id"] for r in rows}
        restored = 0
        for m in uploads:
            if m["id"] not in attached:
                await self._insert_attachment(m["id"], m["content"], m["metadata"])
                restored += 1

        latest = next((m for m in messages if not m["is_deleted"]), None)
        expected = latest["created_at"] if latest else None
        conv = await (
            self.store.table("conversations").select("id, last_message_at").eq("id", conversation_id).first()
        )
        touched = 0
        if conv is not None and conv["last_message_at"] != expected:
            await self._touch_conversation(conversation_id, expected)
            touched = 1
        if repaired or restored or touched:
            logger.info(
                "Reconciled %s: %d receipts, %d attachments, activity %s",
                conversation_id,
                repaired,
                restored,
                "fixed" if touched else "ok",
            )
        return {"receipts": repaired, "attachments": restored, "last_message_at": touched}
