import asyncio

import pytest

from chatsync.core.debounce import DebouncedCoalescer
from chatsync.core.errors import StoreError, Superseded


@pytest.mark.asyncio
async def test_burst_runs_only_the_last_call():
    coalescer = DebouncedCoalescer(window=0.02)
    calls = []

    def op(n):
        async def run():
            calls.append(n)
            return n

        return run

    futures = [coalescer.schedule("k", op(n)) for n in range(3)]
    results = await asyncio.gather(*futures, return_exceptions=True)

    assert isinstance(results[0], Superseded)
    assert isinstance(results[1], Superseded)
    assert results[2] == 2
    assert calls == [2]
    assert not coalescer.pending("k")


@pytest.mark.asyncio
async def test_keys_are_independent():
    coalescer = DebouncedCoalescer(window=0.01)

    async def ok():
        return "done"

    a = coalescer.schedule("a", ok)
    b = coalescer.schedule("b", ok)

    assert await a == "done"
    assert await b == "done"


@pytest.mark.asyncio
async def test_survivor_error_reaches_its_caller():
    coalescer = DebouncedCoalescer(window=0.01)

    async def failing():
        raise StoreError("down")

    with pytest.raises(StoreError):
        await coalescer.schedule("k", failing)


@pytest.mark.asyncio
async def test_cancel_all_rejects_pending_calls():
    coalescer = DebouncedCoalescer(window=10)
    calls = []

    async def op():
        calls.append(1)

    future = coalescer.schedule("k", op)
    coalescer.cancel_all()

    with pytest.raises(Superseded):
        await future
    assert calls == []
