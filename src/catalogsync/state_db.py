from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
import tomllib
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from functools import lru_cache
from importlib import metadata
from pathlib import Path
from typing import Any, TypeVar

from .change_feed import DELETE, INSERT, UPDATE, ChangeEvent, ChangeFeed
from .errors import StoreError
from .models import FILES, FOLDERS, PROJECTS, WORKSPACES, Row, utc_now
from .store import (
    OP_CONTAINS,
    OP_EQ,
    OP_IN,
    OP_IS_NULL,
    Filter,
    TransactionGate,
    change_events,
    prepare_insert,
)
from .text_utils import normalize_text

T = TypeVar("T")

COLUMNS: dict[str, tuple[str, ...]] = {
    WORKSPACES: ("id", "name", "color", "description", "created_at", "updated_at"),
    PROJECTS: (
        "id",
        "workspace_id",
        "name",
        "color",
        "description",
        "created_at",
        "updated_at",
    ),
    FOLDERS: (
        "id",
        "project_id",
        "parent_id",
        "name",
        "path",
        "created_at",
        "updated_at",
    ),
    FILES: (
        "id",
        "workspace_id",
        "project_id",
        "folder_id",
        "name",
        "original_name",
        "file_size",
        "file_type",
        "file_category",
        "file_path",
        "file_url",
        "is_favorite",
        "tags",
        "deleted_at",
        "created_at",
        "updated_at",
    ),
}

SCHEMA_VERSION = 1

_TEXT_COLUMNS = {"name", "original_name", "description", "path", "file_path"}


def _connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
    conn.row_factory = sqlite3.Row
    return conn


@lru_cache(maxsize=1)
def _project_version() -> str:
    pyproject = Path(__file__).resolve().parents[2] / "pyproject.toml"
    if pyproject.exists():
        data = tomllib.loads(pyproject.read_text(encoding="utf-8"))
        version = str(data["project"]["version"]).strip()
    else:
        version = metadata.version("catalogsync")
    if not version:
        raise RuntimeError("project.version in pyproject.toml is empty")
    return version


def _meta_value(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM catalogsync WHERE key = ?", (key,)).fetchone()
    return None if row is None else str(row["value"])


def _has_catalog_tables(conn: sqlite3.Connection) -> bool:
    names = {
        str(row["name"])
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    }
    return bool(names & set(COLUMNS))


def _ensure_versioned_db(conn: sqlite3.Connection) -> None:
    """Stamp a fresh catalog with its schema version, or check an existing one.

    Records are never dropped here: a catalog written with another schema
    version refuses to open. The package version is only informational.
    """
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS catalogsync (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL
        )
        """
    )
    stored = _meta_value(conn, "schema_version")
    if stored is None and _has_catalog_tables(conn):
        raise StoreError("Catalog holds records but carries no schema version")
    if stored is not None and stored != str(SCHEMA_VERSION):
        raise StoreError(
            f"Catalog schema version {stored} is not supported (expected {SCHEMA_VERSION})"
        )
    conn.execute(
        "INSERT OR IGNORE INTO catalogsync(key, value) VALUES ('schema_version', ?)",
        (str(SCHEMA_VERSION),),
    )
    conn.execute(
        "INSERT OR REPLACE INTO catalogsync(key, value) VALUES ('version', ?)",
        (_project_version(),),
    )


def _init_schema(conn: sqlite3.Connection) -> None:
    conn.execute("PRAGMA journal_mode=WAL")
    _ensure_versioned_db(conn)
    conn.execute("PRAGMA foreign_keys=ON")

    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS workspaces (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT '',
            description TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS projects (
            id TEXT PRIMARY KEY,
            workspace_id TEXT NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT '',
            description TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS folders (
            id TEXT PRIMARY KEY,
            project_id TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
            parent_id TEXT REFERENCES folders(id) ON DELETE SET NULL,
            name TEXT NOT NULL,
            path TEXT NOT NULL DEFAULT '',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS files (
            id TEXT PRIMARY KEY,
            workspace_id TEXT NOT NULL REFERENCES workspaces(id) ON DELETE CASCADE,
            project_id TEXT REFERENCES projects(id) ON DELETE SET NULL,
            folder_id TEXT REFERENCES folders(id) ON DELETE SET NULL,
            name TEXT NOT NULL,
            original_name TEXT NOT NULL,
            file_size INTEGER NOT NULL DEFAULT 0,
            file_type TEXT NOT NULL DEFAULT '',
            file_category TEXT NOT NULL DEFAULT 'other',
            file_path TEXT NOT NULL DEFAULT '',
            file_url TEXT,
            is_favorite INTEGER NOT NULL DEFAULT 0,
            tags_json TEXT NOT NULL DEFAULT '[]',
            deleted_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_files_workspace_created
        ON files(workspace_id, created_at)
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_files_folder ON files(folder_id)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_folders_project ON folders(project_id)")


def _column(table: str, field: str) -> str:
    if field not in COLUMNS[table]:
        raise ValueError(f"unknown column for {table}: {field}")
    return "tags_json" if field == "tags" else field


def _encode_value(field: str, value: Any) -> Any:
    if value is None:
        return None
    if field == "tags":
        return json.dumps([normalize_text(str(tag)) for tag in value], ensure_ascii=True)
    if field == "is_favorite":
        return 1 if value else 0
    if field in _TEXT_COLUMNS:
        return normalize_text(str(value))
    return value


def _decode_row(table: str, row: sqlite3.Row) -> Row:
    decoded: Row = {}
    for field in COLUMNS[table]:
        if field == "tags":
            decoded["tags"] = json.loads(row["tags_json"] or "[]")
        elif field == "is_favorite":
            decoded["is_favorite"] = bool(row["is_favorite"])
        else:
            decoded[field] = row[field]
    return decoded


def _where(table: str, filters: Sequence[Filter]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for item in filters:
        column = _column(table, item.field)
        if item.op == OP_EQ:
            clauses.append(f"{column} = ?")
            params.append(_encode_value(item.field, item.value))
        elif item.op == OP_IS_NULL:
            clauses.append(f"{column} IS NULL")
        elif item.op == OP_CONTAINS:
            if item.field != "tags":
                raise ValueError(f"contains filter only supports tags, got {item.field}")
            clauses.append(
                f"EXISTS (SELECT 1 FROM json_each({table}.tags_json) WHERE json_each.value = ?)"
            )
            params.append(normalize_text(str(item.value)))
        elif item.op == OP_IN:
            values = list(item.value)
            if not values:
                clauses.append("0")
                continue
            clauses.append(f"{column} IN ({', '.join('?' for _ in values)})")
            params.extend(_encode_value(item.field, value) for value in values)
        else:
            raise ValueError(f"unsupported filter op: {item.op}")
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


def _assignments(table: str, fields: Mapping[str, Any]) -> tuple[str, list[Any]]:
    updates = dict(fields)
    updates["updated_at"] = utc_now()
    parts = [f"{_column(table, field)} = ?" for field in updates]
    params = [_encode_value(field, value) for field, value in updates.items()]
    return ", ".join(parts), params


class SqliteStore(TransactionGate):
    """Record store persisted in a local SQLite file.

    Calls run in a worker thread behind a lock; the connection is in
    autocommit mode except inside `atomic()`. While a section is open, calls
    from other tasks wait for it instead of joining its transaction.
    """

    def __init__(self, db_path: Path, feed: ChangeFeed | None = None) -> None:
        self.db_path = db_path.expanduser()
        self.feed = feed
        self._lock = threading.Lock()
        self._conn = _connect(self.db_path)
        try:
            _init_schema(self._conn)
        except sqlite3.Error as exc:
            self._conn.close()
            raise StoreError(f"Cannot open catalog {self.db_path}: {exc}") from exc
        except StoreError:
            self._conn.close()
            raise

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _locked(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        with self._lock:
            try:
                return fn(self._conn)
            except sqlite3.Error as exc:
                raise StoreError(str(exc)) from exc

    async def _call(self, fn: Callable[[sqlite3.Connection], T]) -> T:
        async with self.exclusive():
            return await asyncio.to_thread(self._locked, fn)

    def _publish(self, events: list[ChangeEvent]) -> None:
        if self.feed is None:
            return
        for event in events:
            self.feed.publish(event)

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
        where, params = _where(table, filters)
        sql = f"SELECT * FROM {table}{where}"
        if order_by is not None:
            direction = "DESC" if descending else "ASC"
            sql += f" ORDER BY {_column(table, order_by)} {direction}, rowid {direction}"
        if limit is not None or offset:
            sql += " LIMIT ? OFFSET ?"
            params.extend([-1 if limit is None else limit, offset])

        def _run(conn: sqlite3.Connection) -> list[Row]:
            return [_decode_row(table, row) for row in conn.execute(sql, params)]

        return await self._call(_run)

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        where, params = _where(table, filters)
        sql = f"SELECT COUNT(*) AS n FROM {table}{where}"

        def _run(conn: sqlite3.Connection) -> int:
            return int(conn.execute(sql, params).fetchone()["n"])

        return await self._call(_run)

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        prepared = [prepare_insert(row) for row in rows]
        columns = COLUMNS[table]
        nested = self.in_transaction()
        sql = (
            f"INSERT INTO {table} ({', '.join(_column(table, c) for c in columns)}) "
            f"VALUES ({', '.join('?' for _ in columns)})"
        )

        def _run(conn: sqlite3.Connection) -> None:
            values = [
                tuple(
                    _encode_value(column, _default(table, column, row))
                    for column in columns
                )
                for row in prepared
            ]
            if nested:
                conn.executemany(sql, values)
                return
            conn.execute("BEGIN")
            try:
                conn.executemany(sql, values)
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

        await self._call(_run)
        self._publish(
            [
                event
                for row in prepared
                for event in change_events(
                    table, INSERT, row["id"], [row.get("workspace_id")]
                )
            ]
        )
        return [await self._get(table, row["id"]) for row in prepared]

    async def _get(self, table: str, row_id: str) -> Row:
        rows = await self.query(table, [Filter("id", OP_EQ, row_id)])
        if not rows:
            raise StoreError(f"{table} row not found: {row_id}")
        return rows[0]

    async def update(self, table: str, row_id: str, fields: Mapping[str, Any]) -> Row:
        assignments, params = _assignments(table, fields)
        has_workspace = "workspace_id" in COLUMNS[table]

        def _run(conn: sqlite3.Connection) -> str | None:
            previous = conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (row_id,)
            ).fetchone()
            if previous is None:
                raise StoreError(f"{table} row not found: {row_id}")
            conn.execute(
                f"UPDATE {table} SET {assignments} WHERE id = ?", [*params, row_id]
            )
            return previous["workspace_id"] if has_workspace else None

        previous_workspace = await self._call(_run)
        row = await self._get(table, row_id)
        self._publish(
            change_events(
                table, UPDATE, row_id, [previous_workspace, row.get("workspace_id")]
            )
        )
        return row

    async def update_where(
        self, table: str, filters: Sequence[Filter], fields: Mapping[str, Any]
    ) -> int:
        where, where_params = _where(table, filters)
        assignments, params = _assignments(table, fields)
        has_workspace = "workspace_id" in COLUMNS[table]
        select_columns = "id, workspace_id" if has_workspace else "id"

        def _run(conn: sqlite3.Connection) -> list[tuple[str, str | None]]:
            matched = [
                (str(row["id"]), row["workspace_id"] if has_workspace else None)
                for row in conn.execute(
                    f"SELECT {select_columns} FROM {table}{where}", where_params
                )
            ]
            conn.execute(
                f"UPDATE {table} SET {assignments}{where}", [*params, *where_params]
            )
            return matched

        matched = await self._call(_run)
        new_workspace = fields.get("workspace_id")
        self._publish(
            [
                event
                for row_id, workspace_id in matched
                for event in change_events(
                    table,
                    UPDATE,
                    row_id,
                    [workspace_id, new_workspace or workspace_id],
                )
            ]
        )
        return len(matched)

    async def delete(self, table: str, row_id: str) -> None:
        has_workspace = "workspace_id" in COLUMNS[table]

        def _run(conn: sqlite3.Connection) -> str | None:
            previous = conn.execute(
                f"SELECT * FROM {table} WHERE id = ?", (row_id,)
            ).fetchone()
            if previous is None:
                raise StoreError(f"{table} row not found: {row_id}")
            conn.execute(f"DELETE FROM {table} WHERE id = ?", (row_id,))
            return previous["workspace_id"] if has_workspace else None

        workspace_id = await self._call(_run)
        self._publish(change_events(table, DELETE, row_id, [workspace_id]))

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        async with self._transaction() as outermost:
            if not outermost:
                yield
                return
            await self._call(lambda conn: conn.execute("BEGIN IMMEDIATE"))
            try:
                yield
            except BaseException:
                await self._call(lambda conn: conn.execute("ROLLBACK"))
                raise
            await self._call(lambda conn: conn.execute("COMMIT"))


def _default(table: str, column: str, row: Mapping[str, Any]) -> Any:
    value = row.get(column)
    if value is not None:
        return value
    if table == FILES:
        if column == "original_name":
            return row.get("name")
        if column == "tags":
            return []
        if column == "is_favorite":
            return False
        if column == "file_size":
            return 0
        if column in {"file_type", "file_path"}:
            return ""
        if column == "file_category":
            return "other"
    if column == "color":
        return ""
    if column == "path":
        return ""
    return None
