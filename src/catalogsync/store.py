from __future__ import annotations

import asyncio
import copy
import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Protocol

from .change_feed import DELETE, INSERT, UPDATE, ChangeEvent, ChangeFeed
from .errors import StoreError
from .models import FILES, TABLES, Row, utc_now

logger = logging.getLogger(__name__)

OP_EQ = "eq"
OP_IS_NULL = "is_null"
OP_CONTAINS = "contains"
OP_IN = "in"


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any = None

    def matches(self, row: Mapping[str, Any]) -> bool:
        current = row.get(self.field)
        if self.op == OP_EQ:
            return current == self.value
        if self.op == OP_IS_NULL:
            return current is None
        if self.op == OP_CONTAINS:
            return current is not None and self.value in current
        if self.op == OP_IN:
            return current in self.value
        raise ValueError(f"unsupported filter op: {self.op}")


def eq(field: str, value: Any) -> Filter:
    if value is None:
        return is_null(field)
    return Filter(field, OP_EQ, value)


def is_null(field: str) -> Filter:
    return Filter(field, OP_IS_NULL)


def contains(field: str, value: Any) -> Filter:
    return Filter(field, OP_CONTAINS, value)


def in_(field: str, values: Iterable[Any]) -> Filter:
    return Filter(field, OP_IN, tuple(values))


class RecordStore(Protocol):
    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Row]: ...

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int: ...

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]: ...

    async def update(self, table: str, row_id: str, fields: Mapping[str, Any]) -> Row: ...

    async def update_where(
        self, table: str, filters: Sequence[Filter], fields: Mapping[str, Any]
    ) -> int: ...

    async def delete(self, table: str, row_id: str) -> None: ...

    def atomic(self) -> AbstractAsyncContextManager[None]: ...


def new_row_id() -> str:
    return uuid.uuid4().hex


def prepare_insert(row: Mapping[str, Any]) -> Row:
    prepared = dict(row)
    if not prepared.get("id"):
        prepared["id"] = new_row_id()
    if not prepared.get("created_at"):
        prepared["created_at"] = utc_now()
    if not prepared.get("updated_at"):
        prepared["updated_at"] = prepared["created_at"]
    return prepared


def change_events(
    table: str,
    kind: str,
    row_id: str,
    workspace_ids: Iterable[str | None],
) -> list[ChangeEvent]:
    seen: list[str | None] = []
    for workspace_id in workspace_ids:
        if workspace_id not in seen:
            seen.append(workspace_id)
    return [ChangeEvent(table, kind, row_id, workspace_id) for workspace_id in seen]


def _sort_key(value: Any) -> tuple[bool, Any]:
    return (value is None, "" if value is None else value)


_transaction_owner: ContextVar[object | None] = ContextVar(
    "catalogsync_transaction_owner", default=None
)


class TransactionGate:
    """Serializes store calls against open `atomic()` sections.

    The task that opens a section owns it until the section ends. Calls made
    from that task pass straight through; calls from any other task wait.
    """

    _gate: asyncio.Lock | None = None
    _gate_loop: asyncio.AbstractEventLoop | None = None

    def _gate_lock(self) -> asyncio.Lock:
        loop = asyncio.get_running_loop()
        if self._gate is None or self._gate_loop is not loop:
            self._gate = asyncio.Lock()
            self._gate_loop = loop
        return self._gate

    def in_transaction(self) -> bool:
        return _transaction_owner.get() is self

    @asynccontextmanager
    async def exclusive(self) -> AsyncIterator[None]:
        if self.in_transaction():
            yield
            return
        async with self._gate_lock():
            yield

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[bool]:
        """Yields True for the outermost section, False for a nested one."""
        if self.in_transaction():
            yield False
            return
        async with self._gate_lock():
            token = _transaction_owner.set(self)
            try:
                yield True
            finally:
                _transaction_owner.reset(token)


class MemoryStore(TransactionGate):
    """Dict-backed record store.

    Every call yields to the event loop once, like a network round trip would.
    A failed `atomic()` section puts back only the rows it touched.
    """

    def __init__(self, feed: ChangeFeed | None = None) -> None:
        self.tables: dict[str, dict[str, Row]] = {name: {} for name in TABLES}
        self.feed = feed
        self._journal: dict[tuple[str, str], Row | None] | None = None

    def _table(self, table: str) -> dict[str, Row]:
        try:
            return self.tables[table]
        except KeyError:
            raise StoreError(f"unknown table: {table}") from None

    def _publish(self, events: Iterable[ChangeEvent]) -> None:
        if self.feed is None:
            return
        for event in events:
            self.feed.publish(event)

    def _remember(self, table: str, row_id: str) -> None:
        if self._journal is None or not self.in_transaction():
            return
        key = (table, row_id)
        if key not in self._journal:
            row = self._table(table).get(row_id)
            self._journal[key] = None if row is None else copy.deepcopy(row)

    def _undo(self, journal: Mapping[tuple[str, str], Row | None]) -> None:
        for (table, row_id), row in journal.items():
            if row is None:
                self.tables[table].pop(row_id, None)
            else:
                self.tables[table][row_id] = row

    async def query(
        self,
        table: str,
        filters: Sequence[Filter] = (),
        *,
        order_by: str | None = None,
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[Row]:
        async with self.exclusive():
            await asyncio.sleep(0)
            rows = [
                copy.deepcopy(row)
                for row in self._table(table).values()
                if all(item.matches(row) for item in filters)
            ]
        if order_by is not None:
            rows.sort(key=lambda row: _sort_key(row.get(order_by)), reverse=descending)
        end = None if limit is None else offset + limit
        return rows[offset:end]

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        async with self.exclusive():
            await asyncio.sleep(0)
            return sum(
                1
                for row in self._table(table).values()
                if all(item.matches(row) for item in filters)
            )

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        async with self.exclusive():
            await asyncio.sleep(0)
            target = self._table(table)
            prepared = [prepare_insert(row) for row in rows]
            for row in prepared:
                if row["id"] in target:
                    raise StoreError(f"duplicate id in {table}: {row['id']}")
            events: list[ChangeEvent] = []
            for row in prepared:
                self._remember(table, row["id"])
                target[row["id"]] = copy.deepcopy(row)
                events.extend(
                    change_events(table, INSERT, row["id"], [row.get("workspace_id")])
                )
        self._publish(events)
        return [copy.deepcopy(row) for row in prepared]

    async def update(self, table: str, row_id: str, fields: Mapping[str, Any]) -> Row:
        async with self.exclusive():
            await asyncio.sleep(0)
            row = self._table(table).get(row_id)
            if row is None:
                raise StoreError(f"{table} row not found: {row_id}")
            self._remember(table, row_id)
            previous_workspace = row.get("workspace_id")
            row.update(copy.deepcopy(dict(fields)))
            row["updated_at"] = utc_now()
            updated = copy.deepcopy(row)
        self._publish(
            change_events(
                table, UPDATE, row_id, [previous_workspace, updated.get("workspace_id")]
            )
        )
        return updated

    async def update_where(
        self, table: str, filters: Sequence[Filter], fields: Mapping[str, Any]
    ) -> int:
        async with self.exclusive():
            await asyncio.sleep(0)
            matched = [
                row
                for row in self._table(table).values()
                if all(item.matches(row) for item in filters)
            ]
            events: list[ChangeEvent] = []
            now = utc_now()
            for row in matched:
                self._remember(table, row["id"])
                previous_workspace = row.get("workspace_id")
                row.update(copy.deepcopy(dict(fields)))
                row["updated_at"] = now
                events.extend(
                    change_events(
                        table,
                        UPDATE,
                        row["id"],
                        [previous_workspace, row.get("workspace_id")],
                    )
                )
        self._publish(events)
        return len(matched)

    async def delete(self, table: str, row_id: str) -> None:
        async with self.exclusive():
            await asyncio.sleep(0)
            self._remember(table, row_id)
            row = self._table(table).pop(row_id, None)
            if row is None:
                raise StoreError(f"{table} row not found: {row_id}")
        self._publish(change_events(table, DELETE, row_id, [row.get("workspace_id")]))

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        async with self._transaction() as outermost:
            if not outermost:
                yield
                return
            journal: dict[tuple[str, str], Row | None] = {}
            self._journal = journal
            try:
                yield
            except BaseException:
                self._undo(journal)
                logger.warning(
                    "Atomic section failed, %d in-memory rows restored", len(journal)
                )
                raise
            finally:
                self._journal = None

    def file_rows(self) -> list[Row]:
        return [copy.deepcopy(row) for row in self.tables[FILES].values()]
