from __future__ import annotations

import asyncio
from collections.abc import Iterable, Mapping, Sequence
from contextlib import AbstractAsyncContextManager
from datetime import UTC, datetime, timedelta
from typing import Any

from catalogsync.errors import StoreError
from catalogsync.models import (
    FILES,
    FOLDERS,
    PROJECTS,
    WORKSPACES,
    FileCategory,
    FileRecord,
    Folder,
    Row,
    file_to_row,
    format_timestamp,
)
from catalogsync.store import Filter, MemoryStore

BASE_TIME = datetime(2026, 1, 1, tzinfo=UTC)


def at(minutes: int) -> datetime:
    return BASE_TIME + timedelta(minutes=minutes)


def mk_file(
    file_id: str,
    *,
    workspace_id: str = "ws",
    project_id: str | None = None,
    folder_id: str | None = None,
    name: str | None = None,
    tags: Sequence[str] = (),
    size: int = 0,
    category: FileCategory = FileCategory.OTHER,
    favorite: bool = False,
    file_path: str | None = None,
    created: int = 0,
    deleted: bool = False,
) -> FileRecord:
    return FileRecord(
        id=file_id,
        workspace_id=workspace_id,
        name=name or f"{file_id}.txt",
        original_name=name or f"{file_id}.txt",
        file_size=size,
        file_type="text/plain",
        file_category=category,
        file_path=file_path if file_path is not None else f"{workspace_id}/{file_id}",
        project_id=project_id,
        folder_id=folder_id,
        is_favorite=favorite,
        tags=tuple(tags),
        deleted_at=at(created) if deleted else None,
        created_at=at(created),
        updated_at=at(created),
    )


def mk_folder(
    folder_id: str,
    *,
    project_id: str = "p1",
    parent_id: str | None = None,
    name: str | None = None,
    path: str = "",
) -> Folder:
    return Folder(
        id=folder_id,
        project_id=project_id,
        name=name or folder_id,
        parent_id=parent_id,
        path=path,
    )


def folder_row(folder: Folder) -> Row:
    return {
        "id": folder.id,
        "project_id": folder.project_id,
        "parent_id": folder.parent_id,
        "name": folder.name,
        "path": folder.path,
        "created_at": format_timestamp(BASE_TIME),
        "updated_at": format_timestamp(BASE_TIME),
    }


def seed(
    store: MemoryStore,
    *,
    workspaces: Iterable[str] = ("ws",),
    projects: Mapping[str, str] | None = None,
    folders: Iterable[Folder] = (),
    files: Iterable[FileRecord] = (),
) -> MemoryStore:
    """Fill a memory store directly, without publishing change events."""
    stamp = format_timestamp(BASE_TIME)
    for workspace_id in workspaces:
        store.tables[WORKSPACES][workspace_id] = {
            "id": workspace_id,
            "name": workspace_id.upper(),
            "color": "#000000",
            "description": None,
            "created_at": stamp,
            "updated_at": stamp,
        }
    for project_id, workspace_id in (projects or {}).items():
        store.tables[PROJECTS][project_id] = {
            "id": project_id,
            "workspace_id": workspace_id,
            "name": project_id.upper(),
            "color": "#000000",
            "description": None,
            "created_at": stamp,
            "updated_at": stamp,
        }
    for folder in folders:
        store.tables[FOLDERS][folder.id] = folder_row(folder)
    for record in files:
        store.tables[FILES][record.id] = file_to_row(record)
    return store


def file_tags(store: MemoryStore) -> dict[str, list[str]]:
    return {row["id"]: list(row["tags"]) for row in store.file_rows()}


class FlakyStore:
    """Store wrapper that fails chosen calls and records every call made."""

    def __init__(self, inner: MemoryStore) -> None:
        self.inner = inner
        self.failures: dict[tuple[str, str], Exception] = {}
        self.calls: list[tuple[str, str]] = []

    def _check_failure(self, method: str, key: str) -> None:
        self.calls.append((method, key))
        err = self.failures.get((method, key))
        if err is not None:
            raise err

    async def query(self, table: str, filters: Sequence[Filter] = (), **kwargs: Any) -> list[Row]:
        self._check_failure("query", table)
        return await self.inner.query(table, filters, **kwargs)

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        self._check_failure("count", table)
        return await self.inner.count(table, filters)

    async def insert(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[Row]:
        self._check_failure("insert", table)
        return await self.inner.insert(table, rows)

    async def update(self, table: str, row_id: str, fields: Mapping[str, Any]) -> Row:
        self._check_failure("update", row_id)
        return await self.inner.update(table, row_id, fields)

    async def update_where(
        self, table: str, filters: Sequence[Filter], fields: Mapping[str, Any]
    ) -> int:
        self._check_failure("update_where", table)
        return await self.inner.update_where(table, filters, fields)

    async def delete(self, table: str, row_id: str) -> None:
        self._check_failure("delete", row_id)
        await self.inner.delete(table, row_id)

    def atomic(self) -> AbstractAsyncContextManager[None]:
        return self.inner.atomic()

    def count_calls(self, method: str) -> int:
        return sum(1 for name, _ in self.calls if name == method)


class GatedStore(FlakyStore):
    """Holds `count` calls on queued gates so loads can be left in flight."""

    def __init__(self, inner: MemoryStore) -> None:
        super().__init__(inner)
        self.gates: list[asyncio.Event] = []

    def hold(self) -> asyncio.Event:
        gate = asyncio.Event()
        self.gates.append(gate)
        return gate

    async def count(self, table: str, filters: Sequence[Filter] = ()) -> int:
        if self.gates:
            gate = self.gates.pop(0)
            await gate.wait()
        return await super().count(table, filters)


def store_error(message: str = "store unavailable") -> StoreError:
    return StoreError(message)


async def settle(rounds: int = 5) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)
