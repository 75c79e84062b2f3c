from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"
ALL_EVENTS = (INSERT, UPDATE, DELETE)


def utcnow() -> datetime:
    """Naive UTC timestamp, the form stored in every DateTime column."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


@dataclass
class ChangeEvent:
    """A row-level change as delivered by the change feed."""

    table: str
    type: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    committed_at: datetime = field(default_factory=utcnow)

    @property
    def record(self) -> Dict[str, Any]:
        return self.new if self.new is not None else (self.old or {})

    def matches(self, match: Optional[Dict[str, Any]]) -> bool:
        if not match:
            return True
        for row in (self.new, self.old):
            if row and all(row.get(k) == v for k, v in match.items()):
                return True
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table": self.table,
            "type": self.type,
            "new": self.new,
            "old": self.old,
            "committed_at": self.committed_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChangeEvent":
        return cls(
            table=data["table"],
            type=data["type"],
            new=data.get("new"),
            old=data.get("old"),
            committed_at=parse_timestamp(data.get("committed_at")) or utcnow(),
        )
