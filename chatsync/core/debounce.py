from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Hashable, Set, Tuple

from .errors import Superseded
from .metrics import COALESCER_SUPERSEDED

logger = logging.getLogger(__name__)


class DebouncedCoalescer:
    """Collapse bursts of calls sharing a key into the last one.

    ``schedule`` returns a future. A newer call with the same key inside the
    window rejects the older future with :class:`Superseded`; the surviving
    call runs ``operation()`` once the window elapses and its future settles
    with that result or error.
    """

    def __init__(self, window: float = 0.3, name: str = "default"):
        self.window = window
        self.name = name
        self._pending: Dict[Hashable, Tuple[asyncio.TimerHandle, asyncio.Future]] = {}
        self._running: Set[asyncio.Future] = set()

    def pending(self, key: Hashable) -> bool:
        return key in self._pending

    def schedule(
        self, key: Hashable, operation: Callable[[], Awaitable[Any]]
    ) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        self._supersede(key)
        future = loop.create_future()
        handle = loop.call_later(self.window, self._fire, key, future, operation)
        self._pending[key] = (handle, future)
        return future

    def _supersede(self, key: Hashable) -> None:
        entry = self._pending.pop(key, None)
        if entry is None:
            return
        handle, future = entry
        handle.cancel()
        if not future.done():
            future.set_exception(Superseded(key))
            COALESCER_SUPERSEDED.labels(name=self.name).inc()

    def _fire(self, key, future: asyncio.Future, operation) -> None:
        entry = self._pending.get(key)
        if entry is not None and entry[1] is future:
            del self._pending[key]
        if future.done():
            return
        task = asyncio.ensure_future(operation())
        self._running.add(task)

        def settle(t: asyncio.Future) -> None:
            self._running.discard(t)
            if t.cancelled():
                if not future.done():
                    future.cancel()
                return
            exc = t.exception()
            if future.done():
                if exc is not None:
                    logger.debug("coalesced %s call for %r failed after its caller left: %s", self.name, key, exc)
                return
            if exc is not None:
                future.set_exception(exc)
            else:
                future.set_result(t.result())

        task.add_done_callback(settle)

    def cancel_all(self) -> None:
        for key in list(self._pending):
            self._supersede(key)
