from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, replace
from typing import Any

from .change_feed import ChangeEvent, ChangeFeed, Subscription
from .config import DEFAULT_PAGE_SIZE, RELOAD_COALESCE_SECONDS
from .errors import (
    BatchOperationError,
    CatalogError,
    InvalidMoveError,
    InvalidOperationError,
    StoreError,
)
from .invalidation import InvalidationSignal
from .models import (
    FILES,
    FOLDERS,
    MUTABLE_FILE_FIELDS,
    PROJECTS,
    BatchResult,
    FileRecord,
    Folder,
    MoveOutcome,
    Scope,
    file_from_row,
    folder_from_row,
    utc_now,
)
from .move_validator import MoveValidator
from .object_storage import ObjectStorage
from .store import Filter, RecordStore, eq, is_null
from .text_utils import clean_name, dedupe_tags, normalize_tag

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageInfo:
    page: int
    page_size: int
    total_count: int

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_count / self.page_size)

    @property
    def has_next_page(self) -> bool:
        return self.offset + self.page_size < self.total_count

    @property
    def has_prev_page(self) -> bool:
        return self.page > 1

    @property
    def item_count(self) -> int:
        """Number of records that fall on this page."""
        return max(0, min(self.page_size, self.total_count - self.offset))


def scope_filters(scope: Scope) -> list[Filter]:
    filters = [eq("workspace_id", scope.workspace_id), is_null("deleted_at")]
    if scope.project_id is not None:
        filters.append(eq("project_id", scope.project_id))
        filters.append(eq("folder_id", scope.folder_id))
    return filters


async def validate_destination(
    store: RecordStore,
    workspace_id: str,
    project_id: str | None,
    folder_id: str | None,
) -> None:
    """Raise InvalidMoveError unless files of `workspace_id` may go there.

    The project has to exist in that workspace and the folder, if any, has
    to belong to the project.
    """
    if project_id is not None:
        projects = await store.query(
            PROJECTS, [eq("id", project_id), eq("workspace_id", workspace_id)]
        )
        if not projects:
            raise InvalidMoveError(
                MoveOutcome.UNKNOWN_PROJECT,
                f"Unknown project in workspace {workspace_id}: {project_id}",
            )
    folders: dict[str, Folder] = {}
    if folder_id is not None:
        rows = await store.query(FOLDERS, [eq("id", folder_id)])
        folders = {str(row["id"]): folder_from_row(row) for row in rows}
    MoveValidator(folders).validate_file_destination(project_id, folder_id)


def _local_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    converted = dict(fields)
    if "tags" in converted:
        converted["tags"] = tuple(converted["tags"])
    if "is_favorite" in converted:
        converted["is_favorite"] = bool(converted["is_favorite"])
    return converted


class FileCollection:
    """Paginated window over the file records of one scope.

    Local state is mirrored optimistically on `update` and rolled back when
    the store write fails. `add_local` only touches local state; the next
    `load` reconciles it with the store.
    """

    def __init__(
        self,
        store: RecordStore,
        scope: Scope,
        signal: InvalidationSignal,
        *,
        objects: ObjectStorage | None = None,
        feed: ChangeFeed | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        reload_delay: float = RELOAD_COALESCE_SECONDS,
    ) -> None:
        if page_size < 1:
            raise ValueError("page_size must be at least 1")
        self.store = store
        self.scope = scope
        self.signal = signal
        self.objects = objects
        self.feed = feed
        self.page_size = page_size
        self.reload_delay = reload_delay

        self.files: list[FileRecord] = []
        self.total_count = 0
        self.page = 1
        self.error: Exception | None = None

        self._seq = 0
        self._inflight_seq: int | None = None
        self._load_done: asyncio.Event | None = None
        self._subscription: Subscription | None = None
        self._pending_reload: asyncio.TimerHandle | None = None
        self._reload_tasks: set[asyncio.Task[None]] = set()

    # pagination

    @property
    def page_info(self) -> PageInfo:
        return PageInfo(self.page, self.page_size, self.total_count)

    @property
    def offset(self) -> int:
        return self.page_info.offset

    @property
    def total_pages(self) -> int:
        return self.page_info.total_pages

    @property
    def has_next_page(self) -> bool:
        return self.page_info.has_next_page

    @property
    def has_prev_page(self) -> bool:
        return self.page_info.has_prev_page

    @property
    def loading(self) -> bool:
        return self._inflight_seq is not None

    # loading

    async def load(self, page: int | None = None) -> bool:
        """Fetch the count and one page of records for the current scope.

        Returns False without touching state when another load is already
        running, or when the scope changed before this one answered.
        """
        if self._inflight_seq is not None:
            logger.debug("Load of %s skipped, another load is in flight", self.scope)
            return False
        self._seq += 1
        seq = self._seq
        self._inflight_seq = seq
        done = asyncio.Event()
        self._load_done = done
        scope = self.scope
        target = self.page if page is None else page
        filters = scope_filters(scope)
        try:
            total = await self.store.count(FILES, filters)
            last_page = max(1, math.ceil(total / self.page_size))
            target = min(max(1, target), last_page)
            rows = await self.store.query(
                FILES,
                filters,
                order_by="created_at",
                descending=True,
                offset=(target - 1) * self.page_size,
                limit=self.page_size,
            )
        except StoreError as exc:
            if seq != self._seq:
                logger.warning("Stale load of %s failed, ignoring: %s", scope, exc)
                return False
            self.error = exc
            logger.exception("Loading files for %s failed", scope)
            raise
        finally:
            if self._inflight_seq == seq:
                self._inflight_seq = None
            if self._load_done is done:
                self._load_done = None
            done.set()

        if seq != self._seq:
            logger.warning("Discarding stale load for %s", scope)
            return False
        self.files = [file_from_row(row) for row in rows]
        self.total_count = total
        self.page = target
        self.error = None
        logger.debug(
            "Loaded page %d/%d of %s (%d of %d files)",
            target,
            max(1, self.total_pages),
            scope,
            len(self.files),
            total,
        )
        return True

    async def reload(self) -> bool:
        """Load again once any load already in flight has finished.

        A running load may have read its rows before the latest mutation, so
        it never stands in for this one.
        """
        while self._load_done is not None:
            await self._load_done.wait()
        return await self.load()

    async def set_scope(self, scope: Scope) -> bool:
        """Point the collection at another scope and load its first page."""
        if scope == self.scope:
            return False
        previous_workspace = self.scope.workspace_id
        self.scope = scope
        self._seq += 1
        self._inflight_seq = None
        self._cancel_pending_reload()
        self.files = []
        self.total_count = 0
        self.page = 1
        if self._subscription is not None and previous_workspace != scope.workspace_id:
            self.subscribe()
        return await self.load(1)

    async def go_to_page(self, page: int) -> bool:
        last_page = max(1, self.total_pages)
        if page < 1 or page > last_page:
            raise InvalidOperationError(f"Page {page} is out of range 1..{last_page}")
        return await self.load(page)

    async def next_page(self) -> bool:
        if not self.has_next_page:
            return False
        return await self.load(self.page + 1)

    async def prev_page(self) -> bool:
        if not self.has_prev_page:
            return False
        return await self.load(self.page - 1)

    # push notifications

    def subscribe(self) -> Subscription:
        if self.feed is None:
            raise InvalidOperationError("No change feed configured")
        if self._subscription is not None:
            self._subscription.close()
        self._subscription = self.feed.subscribe(
            FILES, self.scope.workspace_id, self._on_change
        )
        return self._subscription

    def close(self) -> None:
        if self._subscription is not None:
            self._subscription.close()
            self._subscription = None
        self._cancel_pending_reload()
        for task in list(self._reload_tasks):
            task.cancel()

    def _cancel_pending_reload(self) -> None:
        if self._pending_reload is not None:
            self._pending_reload.cancel()
            self._pending_reload = None

    def _on_change(self, event: ChangeEvent) -> None:
        if event.workspace_id != self.scope.workspace_id:
            return
        if self._inflight_seq is not None or self._pending_reload is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Change %s/%s outside an event loop ignored", event.table, event.row_id)
            return
        self._pending_reload = loop.call_later(self.reload_delay, self._start_reload)

    def _start_reload(self) -> None:
        self._pending_reload = None
        task = asyncio.ensure_future(self._scheduled_reload())
        self._reload_tasks.add(task)
        task.add_done_callback(self._reload_tasks.discard)

    async def _scheduled_reload(self) -> None:
        try:
            await self.load()
        except CatalogError as exc:
            self.error = exc
            logger.warning("Reload after remote change failed: %s", exc)

    # local and remote mutations

    def _index(self, file_id: str) -> int | None:
        for index, record in enumerate(self.files):
            if record.id == file_id:
                return index
        return None

    def get(self, file_id: str) -> FileRecord | None:
        index = self._index(file_id)
        return None if index is None else self.files[index]

    async def _current(self, file_id: str) -> FileRecord:
        held = self.get(file_id)
        if held is not None:
            return held
        rows = await self.store.query(
            FILES, [eq("id", file_id), eq("workspace_id", self.scope.workspace_id)]
        )
        if not rows:
            raise InvalidOperationError(f"Unknown file: {file_id}")
        return file_from_row(rows[0])

    def add_local(self, records: Iterable[FileRecord]) -> int:
        """Prepend freshly persisted records that belong to this scope."""
        held = {record.id for record in self.files}
        fresh: list[FileRecord] = []
        for record in records:
            if record.id in held or not self.scope.contains(record):
                continue
            held.add(record.id)
            fresh.append(record)
        if fresh:
            self.files = fresh + self.files
            self.total_count += len(fresh)
            logger.debug("Added %d local files to %s", len(fresh), self.scope)
        return len(fresh)

    async def update(self, file_id: str, fields: Mapping[str, Any]) -> FileRecord:
        unknown = sorted(set(fields) - MUTABLE_FILE_FIELDS)
        if unknown:
            raise InvalidOperationError(f"Fields cannot be updated: {', '.join(unknown)}")
        payload = dict(fields)
        if "name" in payload:
            payload["name"] = clean_name(str(payload["name"]))
            if not payload["name"]:
                raise InvalidOperationError("File name cannot be empty")
        if "tags" in payload:
            payload["tags"] = list(dedupe_tags(payload["tags"]))

        current = await self._current(file_id)
        if "project_id" in payload or "folder_id" in payload:
            project_id = payload.get("project_id", current.project_id)
            if "folder_id" not in payload and project_id != current.project_id:
                payload["folder_id"] = None
            await validate_destination(
                self.store,
                current.workspace_id,
                project_id,
                payload.get("folder_id", current.folder_id),
            )

        previous = self.get(file_id)
        if previous is not None:
            self._replace_local(replace(previous, **_local_fields(payload)))
        try:
            row = await self.store.update(FILES, file_id, payload)
        except StoreError:
            if previous is not None:
                self._replace_local(previous)
            logger.exception("Updating file %s failed, local change rolled back", file_id)
            raise

        updated = file_from_row(row)
        if self.get(file_id) is not None:
            if self.scope.contains(updated):
                self._replace_local(updated)
            else:
                self._drop_local(file_id)
        logger.info("Updated file %s: %s", file_id, ", ".join(sorted(payload)))
        self.signal.mark_dirty("file updated")
        return updated

    def _replace_local(self, record: FileRecord) -> None:
        index = self._index(record.id)
        if index is not None:
            self.files[index] = record

    def patch_local(self, records: Iterable[FileRecord]) -> int:
        """Swap held records for fresher copies written by another component."""
        patched = 0
        for record in records:
            if self.get(record.id) is None:
                continue
            if self.scope.contains(record):
                self._replace_local(record)
            else:
                self._drop_local(record.id)
            patched += 1
        return patched

    def _drop_local(self, file_id: str) -> bool:
        index = self._index(file_id)
        if index is None:
            return False
        del self.files[index]
        self.total_count = max(0, self.total_count - 1)
        return True

    async def toggle_favorite(self, file_id: str) -> FileRecord:
        current = await self._current(file_id)
        return await self.update(file_id, {"is_favorite": not current.is_favorite})

    async def move_file(
        self, file_id: str, project_id: str | None, folder_id: str | None = None
    ) -> FileRecord:
        """File a record under a project folder, a project root or the workspace root."""
        return await self.update(file_id, {"project_id": project_id, "folder_id": folder_id})

    async def remove(self, file_id: str) -> None:
        """Delete the backing object and the record row.

        A failing object removal is logged and does not block the row delete.
        """
        record = await self._current(file_id)
        if self.objects is not None and record.file_path:
            try:
                await self.objects.remove(record.file_path)
            except Exception as exc:
                logger.warning(
                    "Could not remove stored object %s for file %s: %s",
                    record.file_path,
                    file_id,
                    exc,
                )
        try:
            await self.store.delete(FILES, file_id)
        except StoreError:
            logger.exception("Deleting file %s failed", file_id)
            raise
        self._drop_local(file_id)
        logger.info("Deleted file %s (%s)", record.name, file_id)
        self.signal.mark_dirty("file deleted")

    async def trash(self, file_id: str) -> FileRecord:
        await self._current(file_id)
        row = await self.store.update(FILES, file_id, {"deleted_at": utc_now()})
        self._drop_local(file_id)
        logger.info("Moved file %s to trash", file_id)
        self.signal.mark_dirty("file trashed")
        return file_from_row(row)

    async def restore(self, file_id: str) -> FileRecord:
        await self._current(file_id)
        row = await self.store.update(FILES, file_id, {"deleted_at": None})
        record = file_from_row(row)
        self.add_local([record])
        logger.info("Restored file %s from trash", file_id)
        self.signal.mark_dirty("file restored")
        return record

    # batches

    async def _run_batch(
        self,
        action: str,
        file_ids: Sequence[str],
        operation: Callable[[str], Awaitable[object]],
    ) -> BatchResult:
        succeeded: list[str] = []
        failed: dict[str, str] = {}
        for file_id in dict.fromkeys(file_ids):
            try:
                await operation(file_id)
            except CatalogError as exc:
                logger.exception("Failed to %s file %s", action, file_id)
                failed[file_id] = str(exc)
            else:
                succeeded.append(file_id)
        result = BatchResult(succeeded=tuple(succeeded), failed=failed)
        logger.info(
            "Batch %s: %d succeeded, %d failed", action, len(succeeded), len(failed)
        )
        if failed:
            raise BatchOperationError(action, result)
        return result

    async def batch_delete(self, file_ids: Sequence[str]) -> BatchResult:
        return await self._run_batch("delete", file_ids, self.remove)

    async def batch_move(
        self,
        file_ids: Sequence[str],
        project_id: str | None,
        folder_id: str | None = None,
    ) -> BatchResult:
        await validate_destination(
            self.store, self.scope.workspace_id, project_id, folder_id
        )

        async def _move(file_id: str) -> FileRecord:
            return await self.move_file(file_id, project_id, folder_id)

        return await self._run_batch("move", file_ids, _move)

    async def batch_toggle_favorite(
        self, file_ids: Sequence[str], is_favorite: bool
    ) -> BatchResult:
        async def _favorite(file_id: str) -> FileRecord:
            return await self.update(file_id, {"is_favorite": is_favorite})

        return await self._run_batch("update", file_ids, _favorite)

    async def batch_add_tags(
        self, file_ids: Sequence[str], tags: Iterable[str]
    ) -> BatchResult:
        new_tags = dedupe_tags(tags)
        if not new_tags:
            raise InvalidOperationError("No tags to add")

        async def _add(file_id: str) -> FileRecord:
            current = await self._current(file_id)
            return await self.update(file_id, {"tags": [*current.tags, *new_tags]})

        return await self._run_batch("tag", file_ids, _add)

    async def batch_remove_tags(
        self, file_ids: Sequence[str], tags: Iterable[str]
    ) -> BatchResult:
        dropped = {normalize_tag(tag) for tag in tags}

        async def _remove(file_id: str) -> FileRecord:
            current = await self._current(file_id)
            kept = [tag for tag in current.tags if normalize_tag(tag) not in dropped]
            return await self.update(file_id, {"tags": kept})

        return await self._run_batch("untag", file_ids, _remove)
