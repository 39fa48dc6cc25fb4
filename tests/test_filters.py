from __future__ import annotations

from dataclasses import replace

from catalogsync.filters import (
    FileFilter,
    SortField,
    TypeFilter,
    apply_filters,
    available_tags,
)
from catalogsync.models import FileCategory

from conftest import at, mk_file


def _files() -> list:
    return [
        mk_file("a", name="Budget.xlsx", tags=["Finance"], size=300, category=FileCategory.DOCUMENT, created=10),
        mk_file("b", name="beach.jpg", tags=["holiday", "photos"], size=900, category=FileCategory.IMAGE, favorite=True, created=20),
        mk_file("c", name="clip.mp4", tags=["Photos"], size=100, category=FileCategory.VIDEO, created=30),
        mk_file("d", name="archive.zip", size=500, category=FileCategory.ARCHIVE, created=60 * 24 * 10),
    ]


def _ids(records) -> list[str]:
    return [record.id for record in records]


def test_default_filter_sorts_newest_first() -> None:
    file_filter = FileFilter()

    assert not file_filter.active
    assert _ids(apply_filters(_files(), file_filter)) == ["d", "c", "b", "a"]


def test_search_covers_names_and_tags() -> None:
    assert _ids(apply_filters(_files(), FileFilter(search="BEACH"))) == ["b"]
    assert _ids(apply_filters(_files(), FileFilter(search="photo"))) == ["c", "b"]
    assert FileFilter(search="x").active


def test_tag_filter_matches_any_selected_tag() -> None:
    selected = apply_filters(_files(), FileFilter(tags=("finance", "PHOTOS")))

    assert _ids(selected) == ["c", "b", "a"]


def test_type_filters() -> None:
    files = _files()

    assert _ids(apply_filters(files, FileFilter(type_filter=TypeFilter.FAVORITES))) == ["b"]
    assert _ids(apply_filters(files, FileFilter(type_filter=TypeFilter.IMAGES))) == ["b"]
    assert _ids(apply_filters(files, FileFilter(type_filter=TypeFilter.ARCHIVES))) == ["d"]
    assert _ids(apply_filters(files, FileFilter(type_filter=TypeFilter.AUDIO))) == []


def test_recent_filter_uses_last_modification() -> None:
    files = _files()
    files[0] = replace(files[0], updated_at=at(60 * 24 * 12))
    recent = FileFilter(type_filter=TypeFilter.RECENT, recent_days=7, now=at(60 * 24 * 14))

    assert _ids(apply_filters(files, recent)) == ["a", "d"]


def test_sort_fields() -> None:
    files = _files()

    by_name = FileFilter(sort_by=SortField.NAME, descending=False)
    by_size = FileFilter(sort_by=SortField.SIZE)
    by_type = FileFilter(sort_by=SortField.TYPE, descending=False)

    assert _ids(apply_filters(files, by_name)) == ["d", "b", "a", "c"]
    assert _ids(apply_filters(files, by_size)) == ["b", "d", "a", "c"]
    assert _ids(apply_filters(files, by_type)) == ["d", "a", "b", "c"]


def test_available_tags_are_distinct_and_sorted() -> None:
    assert available_tags(_files()) == ["Finance", "holiday", "photos"]
