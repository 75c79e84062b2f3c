import uuid
from datetime import datetime
from typing import Optional, List, Any, Dict

from sqlalchemy import (
    Column,
    String,
    Text,
    DateTime,
    ForeignKey,
    Enum,
    Boolean,
    BigInteger,
    Integer,
    Index,
    JSON,
    UniqueConstraint,
)
from pydantic import BaseModel, Field

from .base import Base
from ..core.events import utcnow

CONVERSATION_TYPES = ("direct", "group")
MEMBER_ROLES = ("admin", "member")
MESSAGE_TYPES = ("text", "image", "video", "voice", "file")


def _uuid() -> str:
    return str(uuid.uuid4())


class Profile(Base):
    __tablename__ = "profiles"
    id = Column(String, primary_key=True, default=_uuid)
    display_name = Column(String, nullable=True)
    handle = Column(String, nullable=True, index=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class Conversation(Base):
    __tablename__ = "conversations"
    id = Column(String, primary_key=True, default=_uuid)
    type = Column(
        Enum(*CONVERSATION_TYPES, name="conversation_type"),
        nullable=False,
        default="direct",
    )
    name = Column(String, nullable=True)
    description = Column(Text, nullable=True)
    avatar_url = Column(String, nullable=True)
    created_by = Column(String, nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
    last_message_at = Column(DateTime, nullable=True, index=True)
    is_archived = Column(Boolean, nullable=False, default=False)
    # 单聊去重键：排序后的两个 user_id，群聊为 null
    direct_key = Column(String, nullable=True, unique=True)


class ConversationMember(Base):
    __tablename__ = "conversation_members"
    id = Column(String, primary_key=True, default=_uuid)
    conversation_id = Column(
        String, ForeignKey("conversations.id"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False, index=True)
    role = Column(
        Enum(*MEMBER_ROLES, name="conversation_member_role"),
        nullable=False,
        default="member",
    )
    joined_at = Column(DateTime, default=utcnow)
    # null 表示从未读过
    last_read_at = Column(DateTime, nullable=True)
    is_muted = Column(Boolean, nullable=False, default=False)
    is_pinned = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_member_conv_user"),
    )


class Message(Base):
    __tablename__ = "messages"
    id = Column(String, primary_key=True, default=_uuid)
    conversation_id = Column(
        String, ForeignKey("conversations.id"), nullable=False, index=True
    )
    sender_id = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=True)
    message_type = Column(
        Enum(*MESSAGE_TYPES, name="message_type"),
        nullable=False,
        default="text",
    )
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    reply_to_id = Column(String, ForeignKey("messages.id"), nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


Index("idx_messages_conv_created", Message.conversation_id, Message.created_at)


class MessageAttachment(Base):
    __tablename__ = "message_attachments"
    id = Column(String, primary_key=True, default=_uuid)
    message_id = Column(String, ForeignKey("messages.id"), nullable=False, index=True)
    file_url = Column(String, nullable=False)
    file_name = Column(String, nullable=False)
    file_type = Column(String, nullable=False)
    file_size = Column(BigInteger, nullable=True)
    thumbnail_url = Column(String, nullable=True)
    duration = Column(Integer, nullable=True)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=utcnow)


class MessageReaction(Base):
    __tablename__ = "message_reactions"
    id = Column(String, primary_key=True, default=_uuid)
    message_id = Column(String, ForeignKey("messages.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    emoji = Column(String, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", "emoji", name="uq_reaction_triple"),
    )


class MessageReadReceipt(Base):
    __tablename__ = "message_read_receipts"
    id = Column(String, primary_key=True, default=_uuid)
    message_id = Column(String, ForeignKey("messages.id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    delivered_at = Column(DateTime, default=utcnow)
    read_at = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("message_id", "user_id", name="uq_receipt_msg_user"),
    )


class TypingIndicator(Base):
    __tablename__ = "typing_indicators"
    id = Column(String, primary_key=True, default=_uuid)
    conversation_id = Column(
        String, ForeignKey("conversations.id"), nullable=False, index=True
    )
    user_id = Column(String, nullable=False)
    started_at = Column(DateTime, default=utcnow)

    __table_args__ = (
        UniqueConstraint("conversation_id", "user_id", name="uq_typing_conv_user"),
    )


# ---------------------------------------------------------------------------
# Views returned by the engine
# ---------------------------------------------------------------------------


class ProfileSummary(BaseModel):
    id: str
    display_name: str
    handle: str


class MemberView(BaseModel):
    id: str
    conversation_id: str
    user_id: str
    role: str
    joined_at: Optional[datetime] = None
    last_read_at: Optional[datetime] = None
    is_muted: bool = False
    is_pinned: bool = False
    display_name: str = ""
    handle: Optional[str] = None


class LastMessage(BaseModel):
    content: Optional[str]
    sender_id: str
    created_at: datetime
    message_type: str


class ConversationView(BaseModel):
    id: str
    type: str
    name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None
    created_by: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    last_message_at: Optional[datetime] = None
    is_archived: bool = False
    members: List[MemberView] = Field(default_factory=list)
    last_message: Optional[LastMessage] = None
    unread_count: int = 0
    is_pinned: bool = False
    is_muted: bool = False
    other_user: Optional[ProfileSummary] = None

    @property
    def title(self) -> str:
        if self.other_user is not None:
            return self.other_user.display_name
        return self.name or "Unknown"

    @property
    def preview(self) -> str:
        if self.last_message is None:
            return "No messages"
        return self.last_message.content or ""


class ReactionView(BaseModel):
    id: str
    message_id: str
    user_id: str
    emoji: str
    created_at: Optional[datetime] = None
    user: Optional[ProfileSummary] = None


class AttachmentView(BaseModel):
    id: str
    message_id: str
    file_url: str
    file_name: str
    file_type: str
    file_size: Optional[int] = None
    thumbnail_url: Optional[str] = None
    duration: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    created_at: Optional[datetime] = None


class ReadReceiptView(BaseModel):
    id: str
    message_id: str
    user_id: str
    delivered_at: Optional[datetime] = None
    read_at: Optional[datetime] = None


class MessageView(BaseModel):
    id: str
    conversation_id: str
    sender_id: str
    content: Optional[str] = None
    message_type: str = "text"
    metadata: Optional[Dict[str, Any]] = None
    is_edited: bool = False
    edited_at: Optional[datetime] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
    reply_to_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None
    sender: Optional[ProfileSummary] = None
    reactions: List[ReactionView] = Field(default_factory=list)
    attachments: List[AttachmentView] = Field(default_factory=list)
    read_receipts: List[ReadReceiptView] = Field(default_factory=list)


class TypingUser(BaseModel):
    user_id: str
    display_name: str
    handle: str
    started_at: datetime


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class DirectConversationRequest(BaseModel):
    other_user_id: str = Field(..., min_length=1)


class GroupConversationRequest(BaseModel):
    name: str = Field(..., min_length=1)
    member_ids: List[str] = Field(default_factory=list)
    description: Optional[str] = None


class ConversationUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    avatar_url: Optional[str] = None


class MessageCreateRequest(BaseModel):
    content: Optional[str] = None
    message_type: str = Field("text", pattern="^(text|image|video|voice|file)$")
    reply_to_id: Optional[str] = None


class MessageEditRequest(BaseModel):
    content: str


class ReactionRequest(BaseModel):
    emoji: str = Field(..., min_length=1)


class MessageCreateResponse(BaseModel):
    message_id: str


class ConversationListResponse(BaseModel):
    conversations: List[ConversationView]
    total_unread: int = 0


class MessageListResponse(BaseModel):
    conversation_id: str
    messages: List[MessageView]
