import asyncio

import pytest

from chatsync.core.change_feed import InMemoryChangeFeed
from chatsync.core.events import DELETE, INSERT, UPDATE, ChangeEvent
from chatsync.services.realtime import RealtimeBridge, ReloadTrigger

from helpers import Recorder, drain


def _msg(conversation_id="c1", type_=INSERT):
    return ChangeEvent("messages", type_, new={"id": "m", "conversation_id": conversation_id})


@pytest.mark.asyncio
async def test_burst_within_a_tick_reloads_once():
    feed = InMemoryChangeFeed()
    bridge = RealtimeBridge(feed)
    reload = Recorder()
    bridge.watch_conversations("bob", reload)

    await feed.publish(_msg())
    await feed.publish(_msg("c2"))
    await feed.publish(ChangeEvent("conversations", UPDATE, new={"id": "c1"}))
    await drain()

    assert reload.count == 1


@pytest.mark.asyncio
async def test_conversation_list_subscriptions():
    feed = InMemoryChangeFeed()
    bridge = RealtimeBridge(feed)
    reload = Recorder()
    bridge.watch_conversations("bob", reload)

    await feed.publish(ChangeEvent("conversation_members", UPDATE, new={"user_id": "alice"}))
    await feed.publish(_msg(type_=UPDATE))
    await drain()
    assert reload.count == 0

    await feed.publish(ChangeEvent("conversation_members", DELETE, old={"user_id": "bob"}))
    await drain()
    assert reload.count == 1


@pytest.mark.asyncio
async def test_thread_subscriptions_and_insert_fast_path():
    feed = InMemoryChangeFeed()
    bridge = RealtimeBridge(feed)
    reload = Recorder()
    inserted = Recorder()
    bridge.watch_thread("c1", reload, on_insert=inserted)

    await feed.publish(_msg("c2"))
    await drain()
    assert (reload.count, inserted.count) == (0, 0)

    await feed.publish(_msg("c1"))
    await drain()
    assert (reload.count, inserted.count) == (0, 1)

    await feed.publish(_msg("c1", UPDATE))
    await drain()
    await feed.publish(ChangeEvent("message_reactions", INSERT, new={"message_id": "m"}))
    await drain()
    assert reload.count == 2


@pytest.mark.asyncio
async def test_typing_is_filtered_to_the_conversation():
    feed = InMemoryChangeFeed()
    bridge = RealtimeBridge(feed)
    reload = Recorder()
    bridge.watch_typing("c1", reload)

    await feed.publish(ChangeEvent("typing_indicators", INSERT, new={"conversation_id": "c2"}))
    await feed.publish(ChangeEvent("typing_indicators", DELETE, old={"conversation_id": "c1"}))
    await drain()

    assert reload.count == 1


@pytest.mark.asyncio
async def test_closed_bindings_do_not_leak():
    feed = InMemoryChangeFeed()
    bridge = RealtimeBridge(feed)
    reload = Recorder()
    binding = bridge.watch_thread("c1", reload)
    bridge.watch_conversations("bob", reload)
    assert feed.subscription_count() == 7

    binding.close()
    assert feed.subscription_count() == 3
    bridge.dispose()
    assert feed.subscription_count() == 0

    await feed.publish(_msg("c1"))
    await drain()
    assert reload.count == 0


@pytest.mark.asyncio
async def test_trigger_window_and_async_reload():
    runs = []

    async def reload():
        runs.append(1)

    trigger = ReloadTrigger(reload, window=0.02)
    trigger()
    trigger()
    await asyncio.sleep(0.01)
    trigger()
    await asyncio.sleep(0.05)

    assert runs == [1]
    assert trigger.runs == 1

    trigger.close()
    trigger()
    await asyncio.sleep(0.03)
    assert runs == [1]
