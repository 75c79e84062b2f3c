import asyncio

import pytest

from chatsync.services.visibility import VisibilityTracker


class Counter:
    def __init__(self):
        self.calls = 0

    def __call__(self):
        self.calls += 1


@pytest.mark.asyncio
async def test_fires_once_after_dwell():
    tracker = VisibilityTracker(dwell=0.02, threshold=0.5)
    fired = Counter()
    el = object()
    tracker.attach("c1", el, fired)

    tracker.observe(el, 0.6)
    await asyncio.sleep(0.05)
    tracker.observe(el, 0.0)
    tracker.observe(el, 1.0)
    await asyncio.sleep(0.05)

    assert fired.calls == 1
    assert tracker.has_fired


@pytest.mark.asyncio
async def test_leaving_viewport_cancels_the_timer():
    tracker = VisibilityTracker(dwell=0.03, threshold=0.5)
    fired = Counter()
    el = object()
    tracker.attach("c1", el, fired)

    tracker.observe(el, 0.9)
    await asyncio.sleep(0.01)
    tracker.observe(el, 0.2)
    await asyncio.sleep(0.05)

    assert fired.calls == 0


@pytest.mark.asyncio
async def test_below_threshold_never_fires():
    tracker = VisibilityTracker(dwell=0.01, threshold=0.5)
    fired = Counter()
    el = object()
    tracker.attach("c1", el, fired)

    tracker.observe(el, 0.49)
    await asyncio.sleep(0.03)

    assert fired.calls == 0


@pytest.mark.asyncio
async def test_reattach_same_conversation_keeps_guard_new_conversation_resets():
    tracker = VisibilityTracker(dwell=0.01, threshold=0.5)
    fired = Counter()
    first, second, third = object(), object(), object()

    tracker.attach("c1", first, fired)
    tracker.observe(first, 1.0)
    await asyncio.sleep(0.03)
    tracker.attach("c1", second, fired)
    tracker.observe(second, 1.0)
    await asyncio.sleep(0.03)
    assert fired.calls == 1

    tracker.attach("c2", third, fired)
    tracker.observe(third, 1.0)
    await asyncio.sleep(0.03)
    assert fired.calls == 2


@pytest.mark.asyncio
async def test_stale_element_and_dispose_are_ignored():
    tracker = VisibilityTracker(dwell=0.01, threshold=0.5)
    fired = Counter()
    old, new = object(), object()
    tracker.attach("c1", old, fired)
    tracker.attach("c1", new, fired)

    tracker.observe(old, 1.0)
    await asyncio.sleep(0.03)
    assert fired.calls == 0

    tracker.observe(new, 1.0)
    tracker.dispose()
    await asyncio.sleep(0.03)
    assert fired.calls == 0
