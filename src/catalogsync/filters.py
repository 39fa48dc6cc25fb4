from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum

from .config import RECENT_DAYS
from .models import FileCategory, FileRecord
from .text_utils import normalize_tag


class TypeFilter(str, Enum):
    ALL = "all"
    FAVORITES = "favorites"
    RECENT = "recent"
    DOCUMENTS = "documents"
    IMAGES = "images"
    VIDEOS = "videos"
    AUDIO = "audio"
    ARCHIVES = "archives"


class SortField(str, Enum):
    NAME = "name"
    DATE = "date"
    SIZE = "size"
    TYPE = "type"


_CATEGORY_FILTERS = {
    TypeFilter.DOCUMENTS: FileCategory.DOCUMENT,
    TypeFilter.IMAGES: FileCategory.IMAGE,
    TypeFilter.VIDEOS: FileCategory.VIDEO,
    TypeFilter.AUDIO: FileCategory.AUDIO,
    TypeFilter.ARCHIVES: FileCategory.ARCHIVE,
}

_EPOCH = datetime.fromtimestamp(0, tz=UTC)


def _modified(record: FileRecord) -> datetime | None:
    return record.updated_at or record.created_at


@dataclass(frozen=True)
class FileFilter:
    search: str = ""
    tags: tuple[str, ...] = ()
    type_filter: TypeFilter = TypeFilter.ALL
    sort_by: SortField = SortField.DATE
    descending: bool = True
    recent_days: int = RECENT_DAYS
    now: datetime | None = field(default=None, compare=False)

    @property
    def active(self) -> bool:
        return bool(self.search.strip() or self.tags or self.type_filter is not TypeFilter.ALL)

    def matches(self, record: FileRecord) -> bool:
        needle = self.search.strip().casefold()
        if needle and not (
            needle in record.name.casefold()
            or needle in record.original_name.casefold()
            or any(needle in tag.casefold() for tag in record.tags)
        ):
            return False

        if self.tags:
            carried = {normalize_tag(tag) for tag in record.tags}
            if not any(normalize_tag(tag) in carried for tag in self.tags):
                return False

        if self.type_filter is TypeFilter.FAVORITES:
            return record.is_favorite
        if self.type_filter is TypeFilter.RECENT:
            now = self.now or datetime.now(tz=UTC)
            modified = _modified(record)
            return modified is not None and modified > now - timedelta(days=self.recent_days)
        category = _CATEGORY_FILTERS.get(self.type_filter)
        if category is not None:
            return record.file_category is category
        return True


def _sort_key(record: FileRecord, sort_by: SortField) -> tuple:
    if sort_by is SortField.NAME:
        return (record.name.casefold(), record.id)
    if sort_by is SortField.SIZE:
        return (record.file_size, record.id)
    if sort_by is SortField.TYPE:
        return (record.file_category.value, record.name.casefold(), record.id)
    return (_modified(record) or _EPOCH, record.id)


def apply_filters(
    files: Iterable[FileRecord], file_filter: FileFilter
) -> list[FileRecord]:
    selected = [record for record in files if file_filter.matches(record)]
    selected.sort(
        key=lambda record: _sort_key(record, file_filter.sort_by),
        reverse=file_filter.descending,
    )
    return selected


def available_tags(files: Sequence[FileRecord]) -> list[str]:
    """Distinct tags of `files` by normalized value, alphabetically."""
    spellings: dict[str, str] = {}
    for record in files:
        for tag in record.tags:
            spellings.setdefault(normalize_tag(tag), tag)
    return [spellings[key] for key in sorted(spellings) if key]
