from __future__ import annotations

import asyncio
import json
import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from chatsync.core.auth import get_user_id_from_websocket
from chatsync.core.errors import ChatEngineError
from chatsync.services.engine import ChatEngine
from chatsync.services.realtime import Binding


router = APIRouter()
logger = logging.getLogger(__name__)

PING_INTERVAL = 20


def _changed(outbox: asyncio.Queue, scope: str, conversation_id: Optional[str] = None):
    def notify() -> None:
        outbox.put_nowait(
            {"type": "changed", "scope": scope, "conversation_id": conversation_id}
        )

    return notify


@router.websocket("/ws")
async def chat_gateway(websocket: WebSocket):
    """Pushes payload-free "changed" notices; clients re-fetch over REST."""
    # 最小鉴权：token -> user_id
    user_id = get_user_id_from_websocket(websocket)
    if not user_id:
        await websocket.close(code=4401)
        return
    engine: ChatEngine = websocket.app.state.engine
    await websocket.accept()

    outbox: asyncio.Queue = asyncio.Queue()
    bridge = engine.bridge
    list_binding = bridge.watch_conversations(user_id, _changed(outbox, "conversations"))
    threads: Dict[str, List[Binding]] = {}
    background: set = set()

    async def sender():
        while True:
            payload = await outbox.get()
            await websocket.send_text(json.dumps(payload, default=str))

    sender_task = asyncio.create_task(sender())
    last_pong = asyncio.get_running_loop().time()
    try:
        while True:
            try:
                raw = await asyncio.wait_for(websocket.receive_text(), timeout=PING_INTERVAL)
            except asyncio.TimeoutError:
                now = asyncio.get_running_loop().time()
                if now - last_pong > PING_INTERVAL:
                    outbox.put_nowait({"type": "ping"})
                continue
            try:
                data = json.loads(raw)
            except ValueError:
                outbox.put_nowait({"type": "error", "message": "invalid json"})
                continue
            if not isinstance(data, dict):
                outbox.put_nowait({"type": "error", "message": "invalid payload"})
                continue

            t = data.get("type")
            conv_id = data.get("conversation_id")
            if t == "subscribe":
                if not conv_id or conv_id in threads:
                    continue
                if not await engine.memberships.is_member(conv_id, user_id):
                    outbox.put_nowait({"type": "error", "message": "forbidden"})
                    continue
                threads[conv_id] = [
                    bridge.watch_thread(conv_id, _changed(outbox, "messages", conv_id)),
                    bridge.watch_typing(conv_id, _changed(outbox, "typing", conv_id)),
                ]
                outbox.put_nowait({"type": "subscribed", "conversation_id": conv_id})

            elif t == "unsubscribe":
                for binding in threads.pop(conv_id, []):
                    binding.close()
                outbox.put_nowait({"type": "unsubscribed", "conversation_id": conv_id})

            elif t == "typing":
                if conv_id not in threads:
                    outbox.put_nowait({"type": "error", "message": "not subscribed"})
                    continue
                try:
                    if data.get("is_typing", True):
                        await engine.typing.start_typing(conv_id, user_id)
                    else:
                        await engine.typing.stop_typing(conv_id, user_id)
                except ChatEngineError as e:
                    logger.warning("Typing update from %s failed: %s", user_id, e)

            elif t == "read":
                if conv_id not in threads:
                    continue
                # 防抖写入不阻塞接收循环
                task = asyncio.create_task(
                    engine.read_marker.mark_conversation_read(conv_id, user_id)
                )
                background.add(task)
                task.add_done_callback(background.discard)

            elif t == "ping":
                outbox.put_nowait({"type": "pong"})

            elif t == "pong":
                last_pong = asyncio.get_running_loop().time()

            else:
                outbox.put_nowait({"type": "error", "message": f"unknown type {t!r}"})
    except WebSocketDisconnect:
        logger.debug("WebSocket closed for %s", user_id)
    finally:
        list_binding.close()
        for bindings in threads.values():
            for binding in bindings:
                binding.close()
        sender_task.cancel()
        for conv_id in threads:
            if engine.typing.is_typing(conv_id, user_id):
                try:
                    await engine.typing.stop_typing(conv_id, user_id)
                except ChatEngineError as e:
                    logger.warning("Failed to clear typing for %s: %s", user_id, e)
