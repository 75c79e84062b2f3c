import asyncio
from datetime import timedelta

import pytest

from chatsync.core.events import utcnow
from chatsync.models.chat import TypingUser
from chatsync.services.typing_service import describe_typing


@pytest.mark.asyncio
async def test_typing_is_visible_to_others_only(engine, users):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")

    await engine.typing.start_typing(cid, "alice")

    [who] = await engine.typing.list_typing(cid, excluding_user_id="bob")
    assert who.user_id == "alice"
    assert who.display_name == "Alice"
    assert await engine.typing.list_typing(cid, excluding_user_id="alice") == []


@pytest.mark.asyncio
async def test_typing_expires_without_keystrokes(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")

    await engine.typing.start_typing(cid, "alice")
    await asyncio.sleep(0.25)

    assert await store.table("typing_indicators").count() == 0
    assert not engine.typing.is_typing(cid, "alice")


@pytest.mark.asyncio
async def test_keystrokes_rearm_the_timer(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")

    for _ in range(3):
        await engine.typing.start_typing(cid, "alice")
        await asyncio.sleep(0.06)

    assert await store.table("typing_indicators").count() == 1
    await asyncio.sleep(0.15)
    assert await store.table("typing_indicators").count() == 0


@pytest.mark.asyncio
async def test_stale_rows_are_ignored_and_pruned(engine, users, store):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    await store.insert(
        "typing_indicators",
        {"conversation_id": cid, "user_id": "alice", "started_at": utcnow() - timedelta(seconds=30)},
    )

    assert await engine.typing.list_typing(cid, excluding_user_id="bob") == []
    assert await store.table("typing_indicators").count() == 0


def test_describe_typing_phrasing():
    now = utcnow()
    alice = TypingUser(user_id="alice", display_name="Alice", handle="alice", started_at=now)
    bob = TypingUser(user_id="bob", display_name="Bob", handle="bob", started_at=now)

    assert describe_typing([]) == ""
    assert describe_typing([alice]) == "Alice is typing..."
    assert describe_typing([alice, bob]) == "Alice, Bob are typing..."
