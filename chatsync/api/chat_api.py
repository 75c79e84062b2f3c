from typing import Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status

from chatsync.core.auth import get_current_user_id_from_request
from chatsync.core.errors import NotFound
from chatsync.models import chat as chat_model
from chatsync.services.engine import ChatEngine
from chatsync.services.typing_service import describe_typing


router = APIRouter()


def get_engine(request: Request) -> ChatEngine:
    return request.app.state.engine


def require_user(request: Request) -> str:
    user_id = get_current_user_id_from_request(request)
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid token")
    return user_id


async def _message_in_member_conversation(engine: ChatEngine, message_id: str, user_id: str) -> dict:
    message = await (
        engine.store.table("messages")
        .select("id, conversation_id, sender_id")
        .eq("id", message_id)
        .first()
    )
    if message is None:
        raise NotFound(f"message {message_id} not found")
    await engine.conversations.require_member(message["conversation_id"], user_id)
    return message


# ---------------------------------------------------------------------------
# 会话
# ---------------------------------------------------------------------------


@router.get("/conversations", response_model=chat_model.ConversationListResponse)
async def list_conversations(
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    items = await engine.aggregator.build_conversations(user_id)
    return {"conversations": items, "total_unread": sum(c.unread_count for c in items)}


@router.post("/conversations/direct")
async def open_direct_conversation(
    req: chat_model.DirectConversationRequest,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    conversation_id = await engine.conversations.open_or_create_direct(user_id, req.other_user_id)
    return {"conversation_id": conversation_id}


@router.post("/conversations/group")
async def create_group_conversation(
    req: chat_model.GroupConversationRequest,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    conversation_id = await engine.conversations.create_group(
        user_id, req.name, req.member_ids, req.description
    )
    return {"conversation_id": conversation_id}


@router.patch("/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    req: chat_model.ConversationUpdateRequest,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    return await engine.conversations.update_conversation(
        conversation_id, user_id, req.name, req.description, req.avatar_url
    )


@router.post("/conversations/{conversation_id}/archive")
async def archive_conversation(
    conversation_id: str,
    archived: bool = True,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    row = await engine.conversations.archive(conversation_id, user_id, archived)
    return {"conversation_id": conversation_id, "is_archived": row["is_archived"]}


@router.post("/conversations/{conversation_id}/leave")
async def leave_conversation(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.leave(conversation_id, user_id)
    return {"ok": True}


@router.put("/conversations/{conversation_id}/flags")
async def set_conversation_flags(
    conversation_id: str,
    muted: Optional[bool] = None,
    pinned: Optional[bool] = None,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    row = await engine.memberships.set_flags(conversation_id, user_id, muted=muted, pinned=pinned)
    return {"is_muted": row["is_muted"], "is_pinned": row["is_pinned"]}


@router.post("/conversations/{conversation_id}/read")
async def mark_conversation_read(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    # 防抖：同一会话短时间内多次请求只写一次
    marked = await engine.read_marker.mark_conversation_read(conversation_id, user_id)
    return {"marked": marked}


@router.post("/conversations/{conversation_id}/read-all")
async def mark_all_read(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    count = await engine.receipts.mark_all_read(conversation_id, user_id)
    return {"marked": count}


@router.post("/conversations/{conversation_id}/reconcile")
async def reconcile_conversation(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.require_member(conversation_id, user_id)
    return await engine.pipeline.reconcile(conversation_id)


# ---------------------------------------------------------------------------
# 消息
# ---------------------------------------------------------------------------


@router.get("/conversations/{conversation_id}/messages", response_model=chat_model.MessageListResponse)
async def list_messages(
    conversation_id: str,
    limit: Optional[int] = Query(None, ge=1, le=200),
    before_id: Optional[str] = None,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.require_member(conversation_id, user_id)
    messages = await engine.loader.build_messages(conversation_id, limit, before_id)
    return {"conversation_id": conversation_id, "messages": messages}


@router.post("/conversations/{conversation_id}/messages", response_model=chat_model.MessageCreateResponse)
async def send_message(
    conversation_id: str,
    req: chat_model.MessageCreateRequest,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.require_member(conversation_id, user_id)
    message_id = await engine.pipeline.send_message(
        conversation_id, user_id, req.content, req.message_type, req.reply_to_id
    )
    return {"message_id": message_id}


@router.post("/conversations/{conversation_id}/uploads", response_model=chat_model.MessageCreateResponse)
async def upload_attachment(
    conversation_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.require_member(conversation_id, user_id)
    data = await file.read()
    message_id = await engine.pipeline.upload_and_send(
        conversation_id, user_id, data, file.filename or "upload", file.content_type
    )
    return {"message_id": message_id}


@router.delete("/conversations/{conversation_id}/messages")
async def clear_history(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.require_member(conversation_id, user_id)
    cleared = await engine.pipeline.clear_history(conversation_id)
    return {"cleared": cleared}


@router.patch("/messages/{message_id}")
async def edit_message(
    message_id: str,
    req: chat_model.MessageEditRequest,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    row = await engine.pipeline.edit_message(message_id, req.content, user_id)
    return {"message_id": row["id"], "is_edited": row["is_edited"]}


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    row = await engine.pipeline.delete_message(message_id, user_id)
    return {"message_id": row["id"], "is_deleted": row["is_deleted"]}


@router.post("/messages/{message_id}/reactions")
async def add_reaction(
    message_id: str,
    req: chat_model.ReactionRequest,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await _message_in_member_conversation(engine, message_id, user_id)
    row = await engine.pipeline.add_reaction(message_id, user_id, req.emoji)
    return {"reaction_id": row["id"]}


@router.delete("/messages/{message_id}/reactions/{emoji}")
async def remove_reaction(
    message_id: str,
    emoji: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await _message_in_member_conversation(engine, message_id, user_id)
    removed = await engine.pipeline.remove_reaction(message_id, user_id, emoji)
    return {"removed": removed}


# ---------------------------------------------------------------------------
# 回执 / 输入状态
# ---------------------------------------------------------------------------


@router.post("/messages/{message_id}/delivered")
async def mark_delivered(
    message_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    return {"marked": await engine.receipts.mark_delivered(message_id, user_id)}


@router.post("/messages/{message_id}/read", response_model=chat_model.ReadReceiptView)
async def mark_message_read(
    message_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    return await engine.receipts.mark_message_read(message_id, user_id)


@router.get("/messages/{message_id}/receipts")
async def list_receipts(
    message_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    return {"receipts": await engine.receipts.list_receipts(message_id, user_id)}


@router.get("/conversations/{conversation_id}/typing")
async def list_typing(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.require_member(conversation_id, user_id)
    users = await engine.typing.list_typing(conversation_id, user_id)
    return {"users": users, "text": describe_typing(users)}


@router.post("/conversations/{conversation_id}/typing")
async def start_typing(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.conversations.require_member(conversation_id, user_id)
    await engine.typing.start_typing(conversation_id, user_id)
    return {"ok": True}


@router.delete("/conversations/{conversation_id}/typing")
async def stop_typing(
    conversation_id: str,
    user_id: str = Depends(require_user),
    engine: ChatEngine = Depends(get_engine),
):
    await engine.typing.stop_typing(conversation_id, user_id)
    return {"ok": True}

