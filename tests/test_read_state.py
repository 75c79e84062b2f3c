import asyncio

import pytest

from chatsync.core.errors import InvalidRequest, NotFound
from chatsync.core.events import UPDATE

from helpers import Recorder, at, drain


@pytest.mark.asyncio
async def test_burst_of_read_marks_writes_once(engine, users, feed):
    cid = await engine.conversations.open_or_create_direct("alice", "bob")
    writes = Recorder()
    feed.subscribe("conversation_members", writes, match={"user_id": "bob"}, events=[UPDATE])

    results = await asyncio.gather(
        *[engine.read_marker.mark_conversation_read(cid, "bob") for _ in range(4)]
    )
    await drain()

    assert results == [False, False, False, True]
    assert writes.count == 1
    member = await engine.memberships.get_membership(cid, "bob")
    assert member["last_read_at"] is not None


@pytest.mark.asyncio
async def test_failed_read_mark_is_not_raised(engine, users):
    assert await engine.read_marker.mark_conversation_read("missing", "bob") is False


@pytest.mark.asyncio
async def test_set_last_read_requires_membership(engine):
    with pytest.raises(NotFound):
        await engine.memberships.set_last_read("missing", "bob", at(0))


@pytest.mark.asyncio
async def test_join_is_idempotent_and_updates_role(engine, users):
    cid = await engine.conversations.create_group("alice", "team", ["bob"])

    await engine.memberships.join(cid, "carol")
    await engine.memberships.join(cid, "carol", role="admin")

    members = await engine.memberships.list_all_members([cid])
    carol = [m for m in members if m["user_id"] == "carol"]
    assert len(carol) == 1
    assert carol[0]["role"] == "admin"


@pytest.mark.asyncio
async def test_flags_and_leave(engine, users):
    cid = await engine.conversations.create_group("alice", "team", ["bob"])

    row = await engine.memberships.set_flags(cid, "bob", muted=True, pinned=True)
    assert row["is_muted"] and row["is_pinned"]
    with pytest.raises(InvalidRequest):
        await engine.memberships.set_flags(cid, "bob")

    assert await engine.memberships.leave(cid, "bob") is True
    assert await engine.memberships.is_member(cid, "bob") is False
    assert await engine.memberships.list_all_members([]) == []
