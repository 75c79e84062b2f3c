import asyncio
import base64
from datetime import datetime, timedelta


async def drain(ticks: int = 20, step: float = 0.005):
    """Let queued change-feed deliveries and reloads (store calls included) run."""
    for _ in range(ticks):
        await asyncio.sleep(step)


def at(seconds: int) -> datetime:
    return datetime(2024, 1, 1, 12, 0, 0) + timedelta(seconds=seconds)


class Recorder:
    def __init__(self):
        self.events = []

    def __call__(self, event=None):
        self.events.append(event)

    @property
    def count(self):
        return len(self.events)


# 1x1 transparent PNG
PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
