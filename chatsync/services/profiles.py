from __future__ import annotations

from typing import Dict, Iterable, Optional

from ..core.batch import batch_fetch
from ..core.store import RelationalStore
from ..models.chat import ProfileSummary

UNKNOWN_USER = "Unknown"


def summarize(row: Optional[dict], user_id: str) -> ProfileSummary:
    """Display fallback: display_name, then handle, then "Unknown"."""
    if not row:
        return ProfileSummary(id=user_id, display_name=UNKNOWN_USER, handle="")
    handle = row.get("handle") or ""
    return ProfileSummary(
        id=row["id"],
        display_name=row.get("display_name") or handle or UNKNOWN_USER,
        handle=handle,
    )


class ProfileDirectory:
    def __init__(self, store: RelationalStore):
        self.store = store

    async def fetch(self, ids: Iterable[str]) -> Dict[str, ProfileSummary]:
        rows = await batch_fetch(self.store, "profiles", "id", ids, "id, display_name, handle")
        return {r["id"]: summarize(r, r["id"]) for r in rows}

    @staticmethod
    def resolve(profiles: Dict[str, ProfileSummary], user_id: str) -> ProfileSummary:
        return profiles.get(user_id) or summarize(None, user_id)
