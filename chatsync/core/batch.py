"""Fetch flat, join in memory.

Child rows are always loaded with one ``IN`` query per table and merged into
their parents here, never with per-row lookups.
"""
from __future__ import annotations

from typing import Any, Callable, Dict, Hashable, Iterable, List, Union

Row = Dict[str, Any]
KeyFn = Union[str, Callable[[Row], Hashable]]


def _key_fn(key: KeyFn) -> Callable[[Row], Hashable]:
    if callable(key):
        return key
    return lambda row: row.get(key)


def distinct(values: Iterable[Any]) -> List[Any]:
    """Order-preserving de-duplication; ``None`` is dropped."""
    seen = set()
    out = []
    for v in values:
        if v is None or v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


def group_by(rows: Iterable[Row], key: KeyFn) -> Dict[Hashable, List[Row]]:
    fn = _key_fn(key)
    groups: Dict[Hashable, List[Row]] = {}
    for row in rows:
        groups.setdefault(fn(row), []).append(row)
    return groups


def index_by(rows: Iterable[Row], key: KeyFn) -> Dict[Hashable, Row]:
    fn = _key_fn(key)
    return {fn(row): row for row in rows}


async def batch_fetch(store, table: str, column: str, ids: Iterable[Any], columns: str = "*") -> List[Row]:
    keys = distinct(ids)
    if not keys:
        return []
    return await store.table(table).select(columns).in_(column, keys).fetch()


async def batch_attach(
    store,
    parents: List[Row],
    table: str,
    foreign_key: str,
    attr: str,
    parent_key: str = "id",
    columns: str = "*",
) -> List[Row]:
    """Set ``parent[attr]`` to the list of ``table`` rows pointing at it.

    Returns the fetched children so callers can enrich them further.
    """
    children = await batch_fetch(
        store, table, foreign_key, (p.get(parent_key) for p in parents), columns
    )
    groups = group_by(children, foreign_key)
    for parent in parents:
        parent[attr] = groups.get(parent.get(parent_key), [])
    return children
