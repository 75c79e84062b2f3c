"""Per-view session objects.

A session is created for one mounted view, ``attach``-ed to start loading
and listening, and ``dispose``-d when the view goes away. Loads are tagged
with a generation number; a result arriving after a newer load started, or
after dispose, is dropped.
"""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, List, Optional

from ..core.errors import ChatEngineError
from ..core.events import ChangeEvent
from ..core.metrics import observe_loader
from ..models.chat import ConversationView, MessageView, TypingUser
from .realtime import Binding
from .typing_service import describe_typing
from .visibility import VisibilityTracker

if TYPE_CHECKING:
    from .engine import ChatEngine

logger = logging.getLogger(__name__)


class _Session:
    load_error_message = "Failed to load"

    def __init__(self, engine: "ChatEngine", user_id: str):
        self.engine = engine
        self.user_id = user_id
        self.error: Optional[str] = None
        self.loading = False
        self.disposed = False
        self._generation = 0
        self._bindings: List[Binding] = []

    def _begin(self) -> int:
        self._generation += 1
        self.loading = True
        return self._generation

    def _is_current(self, generation: int) -> bool:
        return not self.disposed and generation == self._generation

    def _fail(self, generation: int, exc: ChatEngineError) -> None:
        logger.error("%s: %s", self.load_error_message, exc)
        if self._is_current(generation):
            self.error = self.load_error_message
            self.loading = False
            self.engine.notifier.error(self.load_error_message)

    def dismiss_error(self) -> None:
        self.error = None

    def _close_bindings(self) -> None:
        for binding in self._bindings:
            binding.close()
        self._bindings.clear()


class ConversationListSession(_Session):
    load_error_message = "Failed to load conversations"

    def __init__(self, engine: "ChatEngine", user_id: str):
        super().__init__(engine, user_id)
        self.conversations: List[ConversationView] = []

    @property
    def total_unread(self) -> int:
        return sum(c.unread_count for c in self.conversations)

    def get(self, conversation_id: str) -> Optional[ConversationView]:
        return next((c for c in self.conversations if c.id == conversation_id), None)

    async def attach(self) -> None:
        self._close_bindings()
        self._bindings.append(
            self.engine.bridge.watch_conversations(self.user_id, self.refresh)
        )
        await self.refresh()

    async def refresh(self) -> None:
        if self.disposed:
            return
        generation = self._begin()
        try:
            with observe_loader("conversations"):
                views = await self.engine.aggregator.build_conversations(self.user_id)
        except ChatEngineError as e:
            self._fail(generation, e)
            if self._is_current(generation):
                self.conversations = []
            return
        if not self._is_current(generation):
            return
        self.conversations = views
        self.error = None
        self.loading = False

    async def retry(self) -> None:
        self.error = None
        await self.refresh()

    async def mark_read(self, conversation_id: str) -> bool:
        """Zero the local count at once, then write through the coalescer."""
        self.conversations = [
            c.model_copy(update={"unread_count": 0}) if c.id == conversation_id else c
            for c in self.conversations
        ]
        return await self.engine.read_marker.mark_conversation_read(conversation_id, self.user_id)

    def dispose(self) -> None:
        self.disposed = True
        self._close_bindings()


class ThreadSession(_Session):
    load_error_message = "Failed to load messages"

    def __init__(self, engine: "ChatEngine", conversation_id: str, user_id: str):
        super().__init__(engine, user_id)
        self.conversation_id = conversation_id
        self.messages: List[MessageView] = []
        self.typing_users: List[TypingUser] = []
        self.draft = ""
        self.sending = False
        self.visibility = VisibilityTracker(
            dwell=engine.config.READ_DWELL_SECONDS,
            threshold=engine.config.READ_VISIBILITY_THRESHOLD,
        )

    @property
    def typing_text(self) -> str:
        return describe_typing(self.typing_users)

    @property
    def last_message(self) -> Optional[MessageView]:
        return self.messages[-1] if self.messages else None

    async def attach(self) -> None:
        self._close_bindings()
        bridge = self.engine.bridge
        self._bindings.append(
            bridge.watch_thread(self.conversation_id, self.refresh, on_insert=self._on_insert)
        )
        self._bindings.append(bridge.watch_typing(self.conversation_id, self.refresh_typing))
        await self.refresh()
        await self.refresh_typing()

    async def refresh(self) -> None:
        if self.disposed:
            return
        generation = self._begin()
        try:
            with observe_loader("messages"):
                messages = await self.engine.loader.build_messages(self.conversation_id)
        except ChatEngineError as e:
            self._fail(generation, e)
            if self._is_current(generation):
                self.messages = []
            return
        if not self._is_current(generation):
            return
        self.messages = messages
        self.error = None
        self.loading = False

    async def retry(self) -> None:
        self.error = None
        await self.refresh()

    async def _on_insert(self, event: ChangeEvent) -> None:
        message_id = event.record.get("id")
        if self.disposed or not message_id:
            return
        if any(m.id == message_id for m in self.messages):
            return
        generation = self._generation
        try:
            message = await self.engine.loader.get_message(message_id)
        except ChatEngineError as e:
            logger.warning("Live append of %s failed, reloading: %s", message_id, e)
            await self.refresh()
            return
        if not self._is_current(generation) or any(m.id == message_id for m in self.messages):
            return
        self.messages = sorted(self.messages + [message], key=lambda m: (m.created_at, m.id))

    async def refresh_typing(self) -> None:
        if self.disposed:
            return
        try:
            users = await self.engine.typing.list_typing(self.conversation_id, self.user_id)
        except ChatEngineError as e:
            logger.warning("Failed to load typing users for %s: %s", self.conversation_id, e)
            return
        if not self.disposed:
            self.typing_users = users

    async def input_changed(self, text: str) -> None:
        self.draft = text
        try:
            if text.strip():
                await self.engine.typing.start_typing(self.conversation_id, self.user_id)
            elif self.engine.typing.is_typing(self.conversation_id, self.user_id):
                await self.engine.typing.stop_typing(self.conversation_id, self.user_id)
        except ChatEngineError as e:
            logger.warning("Typing update failed: %s", e)

    async def send(self, content: Optional[str] = None) -> Optional[str]:
        """Send ``content`` (or the draft). On failure the draft is restored."""
        text = self.draft if content is None else content
        if not text.strip() or self.sending:
            return None
        self.draft = ""
        self.sending = True
        try:
            return await self.engine.pipeline.send_message(
                self.conversation_id, self.user_id, text
            )
        except ChatEngineError as e:
            logger.error("Failed to send message: %s", e)
            self.draft = text
            self.engine.notifier.error("Failed to send message")
            return None
        finally:
            self.sending = False

    async def upload(self, data: bytes, file_name: str, content_type: Optional[str] = None) -> Optional[str]:
        self.sending = True
        try:
            message_id = await self.engine.pipeline.upload_and_send(
                self.conversation_id, self.user_id, data, file_name, content_type
            )
        except ChatEngineError as e:
            logger.error("Failed to upload %s: %s", file_name, e)
            self.engine.notifier.error(f"Failed to send {file_name}")
            return None
        finally:
            self.sending = False
        self.engine.notifier.success(f"{file_name} sent!")
        return message_id

    async def edit(self, message_id: str, content: str) -> bool:
        try:
            await self.engine.pipeline.edit_message(message_id, content, self.user_id)
        except ChatEngineError as e:
            logger.error("Failed to edit %s: %s", message_id, e)
            self.engine.notifier.error("Failed to edit message")
            return False
        await self.refresh()
        return True

    async def delete(self, message_id: str) -> bool:
        try:
            await self.engine.pipeline.delete_message(message_id, self.user_id)
        except ChatEngineError as e:
            logger.error("Failed to delete %s: %s", message_id, e)
            self.engine.notifier.error("Failed to delete message")
            return False
        await self.refresh()
        return True

    def attach_last_message(self, element: Any) -> None:
        """Track the element rendering the newest message for read marking."""
        self.visibility.attach(self.conversation_id, element, self._became_read)

    def observe(self, element: Any, intersection_ratio: float) -> None:
        self.visibility.observe(element, intersection_ratio)

    def _became_read(self):
        return self.engine.read_marker.mark_conversation_read(self.conversation_id, self.user_id)

    async def dispose(self) -> None:
        self.disposed = True
        self._close_bindings()
        self.visibility.dispose()
        if self.engine.typing.is_typing(self.conversation_id, self.user_id):
            try:
                await self.engine.typing.stop_typing(self.conversation_id, self.user_id)
            except ChatEngineError as e:
                logger.warning("Failed to clear typing on dispose: %s", e)
