from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class VisibilityTracker:
    """Fires ``on_became_read`` once per conversation after the last message
    element has stayed in the viewport for the dwell time."""

    def __init__(self, dwell: float = 0.5, threshold: float = 0.5):
        self.dwell = dwell
        self.threshold = threshold
        self.conversation_id: Optional[str] = None
        self._element: Any = None
        self._callback: Optional[Callable[[], Any]] = None
        self._timer: Optional[asyncio.TimerHandle] = None
        self._intersecting = False
        self._fired = False
        self._disposed = False

    @property
    def has_fired(self) -> bool:
        return self._fired

    def attach(self, conversation_id: str, element: Any, on_became_read: Callable[[], Any]) -> None:
        if self._disposed:
            return
        self._cancel_timer()
        if conversation_id != self.conversation_id:
            self._fired = False
        self.conversation_id = conversation_id
        self._element = element
        self._callback = on_became_read
        self._intersecting = False

    def observe(self, element: Any, intersection_ratio: float) -> None:
        if self._disposed or element is not self._element or self._element is None:
            return
        intersecting = intersection_ratio >= self.threshold
        self._intersecting = intersecting
        if not intersecting:
            self._cancel_timer()
            return
        if self._fired or self._timer is not None:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self.dwell, self._fire)

    def _fire(self) -> None:
        self._timer = None
        if self._fired or not self._intersecting or self._callback is None:
            return
        self._fired = True
        result = self._callback()
        if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
            task = asyncio.ensure_future(result)
            task.add_done_callback(_log_failure)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def detach(self) -> None:
        self._cancel_timer()
        self._element = None
        self._intersecting = False

    def dispose(self) -> None:
        self.detach()
        self._callback = None
        self._disposed = True


def _log_failure(task: asyncio.Future) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error("mark-as-read callback failed: %s", task.exception())
