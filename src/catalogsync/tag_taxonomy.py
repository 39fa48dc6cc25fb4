from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import TypeAlias

from .config import TAG_BATCH_DELAY_SECONDS, TAG_BATCH_SIZE
from .errors import BatchOperationError, InvalidOperationError, StoreError
from .file_collection import FileCollection
from .invalidation import InvalidationSignal
from .models import FILES, BatchResult, FileRecord, file_from_row
from .store import RecordStore, eq, is_null
from .text_utils import clean_name, dedupe_tags, normalize_tag

logger = logging.getLogger(__name__)

TagTransform: TypeAlias = Callable[[tuple[str, ...]], tuple[str, ...]]

SORT_BY_NAME = "name"
SORT_BY_COUNT = "count"
SORT_BY_RECENT = "recent"


@dataclass(frozen=True)
class TagStat:
    tag: str
    key: str
    count: int
    files: tuple[FileRecord, ...] = ()

    @property
    def last_used(self) -> datetime | None:
        stamps = [
            record.updated_at or record.created_at
            for record in self.files
            if (record.updated_at or record.created_at) is not None
        ]
        return max(stamps) if stamps else None


@dataclass(frozen=True)
class TagChange:
    action: str
    tag: str
    target: str | None = None
    result: BatchResult = field(default_factory=BatchResult)
    files: tuple[FileRecord, ...] = ()

    @property
    def changed(self) -> bool:
        return bool(self.result.succeeded)


def stats(files: Iterable[FileRecord]) -> list[TagStat]:
    """Group files by normalized tag, keeping the first spelling seen."""
    spellings: dict[str, str] = {}
    members: dict[str, dict[str, FileRecord]] = {}
    for record in files:
        for tag in record.tags:
            key = normalize_tag(tag)
            if not key:
                continue
            spellings.setdefault(key, clean_name(tag))
            members.setdefault(key, {})[record.id] = record
    return [
        TagStat(
            tag=spellings[key],
            key=key,
            count=len(members[key]),
            files=tuple(members[key].values()),
        )
        for key in spellings
    ]


def sorted_stats(items: Sequence[TagStat], by: str = SORT_BY_COUNT) -> list[TagStat]:
    if by == SORT_BY_NAME:
        return sorted(items, key=lambda item: (item.key, item.tag))
    if by == SORT_BY_COUNT:
        return sorted(items, key=lambda item: (-item.count, item.key))
    if by == SORT_BY_RECENT:
        return sorted(
            items,
            key=lambda item: (
                -(item.last_used.timestamp() if item.last_used else float("-inf")),
                item.key,
            ),
        )
    raise ValueError(f"unknown tag sort: {by}")


def search(items: Iterable[TagStat], query: str) -> list[TagStat]:
    needle = normalize_tag(query)
    return [item for item in items if needle in item.key]


def files_for_tag(files: Iterable[FileRecord], tag: str) -> list[FileRecord]:
    key = normalize_tag(tag)
    return [
        record
        for record in files
        if any(normalize_tag(value) == key for value in record.tags)
    ]


def _renamed(source_key: str, target: str) -> TagTransform:
    def _apply(tags: tuple[str, ...]) -> tuple[str, ...]:
        return dedupe_tags(
            target if normalize_tag(tag) == source_key else tag for tag in tags
        )

    return _apply


def _merged(source_key: str, target: str) -> TagTransform:
    target_key = normalize_tag(target)

    def _apply(tags: tuple[str, ...]) -> tuple[str, ...]:
        kept = [tag for tag in tags if normalize_tag(tag) != source_key]
        if not any(normalize_tag(tag) == target_key for tag in kept):
            kept.append(target)
        return dedupe_tags(kept)

    return _apply


def _deleted(source_key: str) -> TagTransform:
    def _apply(tags: tuple[str, ...]) -> tuple[str, ...]:
        return tuple(tag for tag in tags if normalize_tag(tag) != source_key)

    return _apply


class TagTaxonomy:
    """Workspace tag vocabulary derived from file records.

    Rename, merge and delete rewrite every matching file in batches with a
    short pause between batches. The first failing write stops the run.
    """

    def __init__(
        self,
        store: RecordStore,
        workspace_id: str,
        signal: InvalidationSignal,
        *,
        collection: FileCollection | None = None,
        batch_size: int = TAG_BATCH_SIZE,
        batch_delay: float = TAG_BATCH_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
    ) -> None:
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.workspace_id = workspace_id
        self.signal = signal
        self.collection = collection
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._sleep = sleep

    async def load_scope_files(self) -> list[FileRecord]:
        rows = await self.store.query(
            FILES,
            [eq("workspace_id", self.workspace_id), is_null("deleted_at")],
            order_by="created_at",
            descending=True,
        )
        return [file_from_row(row) for row in rows]

    async def stats(self) -> list[TagStat]:
        return stats(await self.load_scope_files())

    async def files_for_tag(self, tag: str) -> list[FileRecord]:
        return files_for_tag(await self.load_scope_files(), tag)

    async def rename(self, old_tag: str, new_tag: str) -> TagChange:
        source_key = _required_key(old_tag)
        target = _required_tag(new_tag)
        files = await self.load_scope_files()
        present = {item.key for item in stats(files)}
        if normalize_tag(target) in present:
            logger.info("Renaming tag %r onto existing %r, merging instead", old_tag, target)
            return await self.merge(old_tag, target)
        return await self._rewrite(
            "rename", old_tag, target, files, source_key, _renamed(source_key, target)
        )

    async def merge(self, source_tag: str, target_tag: str) -> TagChange:
        source_key = _required_key(source_tag)
        target = _required_tag(target_tag)
        if clean_name(source_tag) == target:
            return TagChange("merge", source_tag, target)
        files = await self.load_scope_files()
        return await self._rewrite(
            "merge", source_tag, target, files, source_key, _merged(source_key, target)
        )

    async def delete(self, tag: str) -> TagChange:
        source_key = _required_key(tag)
        files = await self.load_scope_files()
        return await self._rewrite(
            "delete", tag, None, files, source_key, _deleted(source_key)
        )

    async def _rewrite(
        self,
        action: str,
        tag: str,
        target: str | None,
        files: Sequence[FileRecord],
        source_key: str,
        transform: TagTransform,
    ) -> TagChange:
        affected: list[tuple[FileRecord, tuple[str, ...]]] = []
        for record in files:
            if not any(normalize_tag(value) == source_key for value in record.tags):
                continue
            new_tags = transform(record.tags)
            if new_tags != record.tags:
                affected.append((record, new_tags))

        updated: list[FileRecord] = []
        failed: dict[str, str] = {}
        skipped: tuple[str, ...] = ()
        for index, (record, new_tags) in enumerate(affected):
            if index and index % self.batch_size == 0:
                await self._sleep(self.batch_delay)
            try:
                row = await self.store.update(FILES, record.id, {"tags": list(new_tags)})
            except StoreError as exc:
                logger.exception("Tag %s stopped at file %s", action, record.id)
                failed[record.id] = str(exc)
                skipped = tuple(item.id for item, _ in affected[index + 1 :])
                break
            updated.append(file_from_row(row))

        result = BatchResult(
            succeeded=tuple(record.id for record in updated),
            failed=failed,
            skipped=skipped,
        )
        change = TagChange(action, tag, target, result, tuple(updated))
        if updated:
            if self.collection is not None:
                self.collection.patch_local(updated)
            self.signal.mark_dirty(f"tag {action}")
        logger.info(
            "Tag %s %r%s: %d of %d files updated",
            action,
            tag,
            f" -> {target!r}" if target is not None else "",
            len(updated),
            len(affected),
        )
        if failed:
            raise BatchOperationError(f"{action} tag on", result)
        return change


def _required_key(tag: str) -> str:
    key = normalize_tag(tag)
    if not key:
        raise InvalidOperationError("Tag cannot be empty")
    return key


def _required_tag(tag: str) -> str:
    cleaned = clean_name(tag)
    if not cleaned:
        raise InvalidOperationError("Tag cannot be empty")
    return cleaned
