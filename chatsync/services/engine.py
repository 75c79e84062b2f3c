from __future__ import annotations

import logging
from typing import Optional

from ..core.blob_store import MinioBlobStore
from ..core.change_feed import ChangeFeed, create_change_feed
from ..core.config import Settings, settings as default_settings
from ..core.database import create_tables, make_engine, make_session_factory
from ..core.debounce import DebouncedCoalescer
from ..core.notify import LoggingNotifier, Notifier
from ..core.store import RelationalStore
from .aggregator import ConversationAggregator
from .conversation_service import ConversationService
from .message_service import MessageThreadLoader
from .pipeline import MessagePipeline
from .profiles import ProfileDirectory
from .read_state import MembershipStore, ReadMarker
from .realtime import RealtimeBridge
from .receipts_service import ReceiptService
from .sessions import ConversationListSession, ThreadSession
from .typing_service import TypingTracker

logger = logging.getLogger(__name__)


class ChatEngine:
    """Wires the collaborators to every component."""

    def __init__(
        self,
        store: RelationalStore,
        feed: ChangeFeed,
        blob=None,
        notifier: Optional[Notifier] = None,
        config: Settings | None = None,
        session_factory=None,
    ):
        self.config = config or default_settings
        self.store = store
        self.feed = feed
        self.blob = blob
        self.notifier = notifier or LoggingNotifier()
        self.session_factory = session_factory

        self.profiles = ProfileDirectory(store)
        self.memberships = MembershipStore(store)
        self.coalescer = DebouncedCoalescer(self.config.READ_DEBOUNCE_SECONDS, name="mark_read")
        self.read_marker = ReadMarker(self.memberships, self.coalescer)
        self.aggregator = ConversationAggregator(
            store,
            self.memberships,
            self.profiles,
            self.notifier,
            include_own=self.config.UNREAD_INCLUDES_OWN_MESSAGES,
        )
        self.loader = MessageThreadLoader(
            store, self.profiles, self.notifier, page_size=self.config.MESSAGE_PAGE_SIZE
        )
        self.typing = TypingTracker(
            store,
            self.profiles,
            ttl=self.config.TYPING_TTL_SECONDS,
            stale_after=self.config.TYPING_STALE_SECONDS,
        )
        self.pipeline = MessagePipeline(store, typing=self.typing, blob=blob, config=self.config)
        self.receipts = ReceiptService(store, self.memberships)
        self.conversations = ConversationService(store, self.memberships)
        self.bridge = RealtimeBridge(feed, coalesce_window=self.config.FEED_COALESCE_SECONDS)

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "ChatEngine":
        config = config or default_settings
        bind = make_engine(config.DATABASE_URL)
        if config.DEV_AUTO_CREATE_TABLES:
            create_tables(bind)
        session_factory = make_session_factory(bind)
        feed = create_change_feed(config)
        store = RelationalStore(session_factory, feed)
        return cls(
            store,
            feed,
            blob=MinioBlobStore(config),
            config=config,
            session_factory=session_factory,
        )

    def conversation_list(self, user_id: str) -> ConversationListSession:
        return ConversationListSession(self, user_id)

    def thread(self, conversation_id: str, user_id: str) -> ThreadSession:
        return ThreadSession(self, conversation_id, user_id)

    async def close(self) -> None:
        self.coalescer.cancel_all()
        await self.typing.dispose()
        self.bridge.dispose()
        await self.feed.close()
        logger.info("Chat engine closed")
