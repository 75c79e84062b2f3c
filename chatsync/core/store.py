"""Relational store over SQLAlchemy Core.

Reads are composed the way the hosted backend's query builder composes them::

    rows = await store.table("messages").select("id, created_at") \\
        .eq("conversation_id", cid).order("created_at", desc=True).limit(20).fetch()

Sessions run on worker threads so the event loop keeps serving timers and
sockets while a query is in flight. Every committed write is echoed to the change feed as a :class:`ChangeEvent`,
which is what keeps other sessions in sync.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from sqlalchemy import MetaData, Table, delete, func, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from .errors import StoreError
from .events import DELETE, INSERT, UPDATE, ChangeEvent
from ..models.base import Base

logger = logging.getLogger(__name__)

Row = Dict[str, Any]


def _as_rows(result) -> List[Row]:
    return [dict(m) for m in result.mappings()]


class _Filtered:
    def __init__(self, store: "RelationalStore", table_name: str):
        self._store = store
        self._table: Table = store.get_table(table_name)
        self._clauses: list = []

    def _col(self, name: str):
        try:
            return self._table.c[name]
        except KeyError:
            raise StoreError(f"unknown column {self._table.name}.{name}") from None

    def eq(self, column: str, value: Any):
        c = self._col(column)
        self._clauses.append(c.is_(None) if value is None else c == value)
        return self

    def neq(self, column: str, value: Any):
        c = self._col(column)
        self._clauses.append(c.is_not(None) if value is None else c != value)
        return self

    def in_(self, column: str, values: Iterable[Any]):
        self._clauses.append(self._col(column).in_(list(values)))
        return self

    def gt(self, column: str, value: Any):
        self._clauses.append(self._col(column) > value)
        return self

    def gte(self, column: str, value: Any):
        self._clauses.append(self._col(column) >= value)
        return self

    def lt(self, column: str, value: Any):
        self._clauses.append(self._col(column) < value)
        return self

    def lte(self, column: str, value: Any):
        self._clauses.append(self._col(column) <= value)
        return self


class Query(_Filtered):
    def __init__(self, store: "RelationalStore", table_name: str):
        super().__init__(store, table_name)
        self._columns: Optional[list] = None
        self._order: list = []
        self._limit: Optional[int] = None

    def select(self, *columns: str) -> "Query":
        names: List[str] = []
        for spec in columns:
            names.extend(p.strip() for p in spec.split(",") if p.strip())
        if not names or names == ["*"]:
            self._columns = None
        else:
            self._columns = [self._col(n) for n in names]
        return self

    def order(self, column: str, desc: bool = False, nulls_last: bool = False) -> "Query":
        c = self._col(column)
        clause = c.desc() if desc else c.asc()
        if nulls_last:
            clause = clause.nulls_last()
        self._order.append(clause)
        return self

    def limit(self, n: int) -> "Query":
        self._limit = int(n)
        return self

    def _statement(self):
        stmt = select(*self._columns) if self._columns else select(self._table)
        if self._clauses:
            stmt = stmt.where(*self._clauses)
        if self._order:
            stmt = stmt.order_by(*self._order)
        if self._limit is not None:
            stmt = stmt.limit(self._limit)
        return stmt

    async def fetch(self) -> List[Row]:
        stmt = self._statement()
        return await self._store.run(lambda s: _as_rows(s.execute(stmt)))

    async def first(self) -> Optional[Row]:
        self._limit = 1
        rows = await self.fetch()
        return rows[0] if rows else None

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self._table)
        if self._clauses:
            stmt = stmt.where(*self._clauses)
        return int(await self._store.run(lambda s: s.execute(stmt).scalar_one()))


class Mutation(_Filtered):
    """Filtered UPDATE or DELETE; ``execute`` returns the affected rows."""

    def __init__(self, store: "RelationalStore", table_name: str, patch: Optional[Row] = None):
        super().__init__(store, table_name)
        self._patch = patch
        if patch is not None:
            for key in patch:
                self._col(key)

    async def execute(self) -> List[Row]:
        if not self._clauses:
            # 禁止无条件批量写
            raise StoreError(f"refusing unfiltered write on {self._table.name}")
        table = self._table
        pk = self._store.primary_key(table)
        clauses = list(self._clauses)
        patch = self._patch

        def work(session: Session) -> Tuple[List[Row], List[Row]]:
            before = _as_rows(session.execute(select(table).where(*clauses)))
            if not before:
                return [], []
            ids = [r[pk.name] for r in before]
            if patch is None:
                session.execute(delete(table).where(pk.in_(ids)))
                return before, []
            session.execute(update(table).where(pk.in_(ids)).values(**patch))
            after = _as_rows(session.execute(select(table).where(pk.in_(ids))))
            order = {i: n for n, i in enumerate(ids)}
            after.sort(key=lambda r: order[r[pk.name]])
            return before, after

        before, after = await self._store.run(work)
        if patch is None:
            await self._store.emit([ChangeEvent(table.name, DELETE, old=r) for r in before])
            return before
        await self._store.emit(
            [ChangeEvent(table.name, UPDATE, new=n, old=o) for o, n in zip(before, after)]
        )
        return after


class RelationalStore:
    def __init__(
        self,
        session_factory: Callable[[], Session] | sessionmaker,
        feed=None,
        metadata: MetaData | None = None,
    ):
        self._session_factory = session_factory
        self._feed = feed
        self._metadata = metadata if metadata is not None else Base.metadata

    # -- plumbing ---------------------------------------------------------

    def get_table(self, name: str) -> Table:
        try:
            return self._metadata.tables[name]
        except KeyError:
            raise StoreError(f"unknown table {name}") from None

    @staticmethod
    def primary_key(table: Table):
        return list(table.primary_key.columns)[0]

    async def run(self, work: Callable[[Session], Any]) -> Any:
        """Run ``work`` in its own session on a worker thread and commit."""
        return await asyncio.to_thread(self._run_sync, work)

    def _run_sync(self, work: Callable[[Session], Any]) -> Any:
        session = self._session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Store operation failed: %s", e)
            raise StoreError(str(e)) from e
        finally:
            session.close()

    async def emit(self, events: List[ChangeEvent]) -> None:
        if self._feed is None:
            return
        for event in events:
            try:
                await self._feed.publish(event)
            except Exception as e:
                # 写入已提交；推送失败只记录
                logger.warning("Failed to publish %s on %s: %s", event.type, event.table, e)

    # -- public API -------------------------------------------------------

    def table(self, name: str) -> Query:
        return Query(self, name)

    def update(self, table: str, patch: Row) -> Mutation:
        return Mutation(self, table, dict(patch))

    def delete(self, table: str) -> Mutation:
        return Mutation(self, table)

    async def insert(self, table_name: str, rows: Union[Row, Sequence[Row]]) -> List[Row]:
        table = self.get_table(table_name)
        pk = self.primary_key(table)
        batch = [dict(rows)] if isinstance(rows, dict) else [dict(r) for r in rows]
        if not batch:
            return []
        for row in batch:
            row.setdefault(pk.name, str(uuid.uuid4()))

        def work(session: Session) -> List[Row]:
            for row in batch:
                session.execute(insert(table).values(**row))
            ids = [r[pk.name] for r in batch]
            inserted = _as_rows(session.execute(select(table).where(pk.in_(ids))))
            order = {i: n for n, i in enumerate(ids)}
            inserted.sort(key=lambda r: order[r[pk.name]])
            return inserted

        inserted = await self.run(work)
        await self.emit([ChangeEvent(table.name, INSERT, new=r) for r in inserted])
        return inserted

    async def upsert(self, table_name: str, row: Row, on_conflict: Sequence[str]) -> Row:
        """Insert ``row`` or overwrite the row sharing the ``on_conflict`` columns."""
        table = self.get_table(table_name)
        pk = self.primary_key(table)
        values = dict(row)
        conflict = list(on_conflict)
        missing = [c for c in conflict if c not in values]
        if missing:
            raise StoreError(f"upsert on {table_name} needs values for {missing}")
        key_clauses = [table.c[c] == values[c] for c in conflict]
        values.setdefault(pk.name, str(uuid.uuid4()))
        set_cols = [k for k in values if k not in conflict and k != pk.name]

        def work(session: Session) -> Tuple[Optional[Row], Row]:
            existing = _as_rows(session.execute(select(table).where(*key_clauses)))
            existing_row = existing[0] if existing else None
            dialect = session.get_bind().dialect.name
            if dialect in ("sqlite", "postgresql"):
                builder = sqlite_insert if dialect == "sqlite" else pg_insert
                stmt = builder(table).values(**values)
                if set_cols:
                    stmt = stmt.on_conflict_do_update(
                        index_elements=conflict,
                        set_={k: stmt.excluded[k] for k in set_cols},
                    )
                else:
                    stmt = stmt.on_conflict_do_nothing(index_elements=conflict)
                session.execute(stmt)
            elif existing_row is None:
                session.execute(insert(table).values(**values))
            elif set_cols:
                session.execute(
                    update(table)
                    .where(*key_clauses)
                    .values(**{k: values[k] for k in set_cols})
                )
            current = _as_rows(session.execute(select(table).where(*key_clauses)))[0]
            return existing_row, current

        existing_row, current = await self.run(work)
        if existing_row is None:
            await self.emit([ChangeEvent(table.name, INSERT, new=current)])
        elif set_cols:
            await self.emit([ChangeEvent(table.name, UPDATE, new=current, old=existing_row)])
        return current
