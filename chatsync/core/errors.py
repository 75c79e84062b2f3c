"""Engine exception hierarchy.

Every failure the engine surfaces derives from :class:`ChatEngineError`, except
:class:`Superseded`, which only tells a coalesced caller that a newer call took
its place.
"""
from __future__ import annotations

from typing import Any


class ChatEngineError(Exception):
    """Base class for engine failures"""

    status_code = 500
    user_message = "Something went wrong"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.user_message)
        self.message = message or self.user_message


class StoreError(ChatEngineError):
    """The relational store rejected or failed a query"""

    status_code = 503
    user_message = "The message store is unavailable"


class InvalidRequest(ChatEngineError):
    """Rejected before any store call"""

    status_code = 400
    user_message = "Invalid request"


class NotFound(ChatEngineError):
    status_code = 404
    user_message = "Not found"


class Forbidden(ChatEngineError):
    status_code = 403
    user_message = "forbidden"


class BlobStoreError(ChatEngineError):
    """媒体存储相关异常"""

    status_code = 502
    user_message = "File upload failed"


class Superseded(Exception):
    """A debounced call was replaced by a newer call with the same key."""

    def __init__(self, key: Any):
        super().__init__(f"superseded: {key!r}")
        self.key = key
