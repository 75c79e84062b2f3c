from __future__ import annotations

import logging

logger = logging.getLogger("chatsync.notify")


class Notifier:
    """Toast-style notifications shown to the user."""

    def success(self, message: str) -> None:
        raise NotImplementedError

    def error(self, message: str) -> None:
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def success(self, message: str) -> None:
        logger.info("notify: %s", message)

    def error(self, message: str) -> None:
        logger.warning("notify: %s", message)
