from __future__ import annotations

import pytest

from catalogsync.errors import BatchOperationError, InvalidOperationError, StoreError
from catalogsync.file_collection import FileCollection
from catalogsync.invalidation import InvalidationSignal
from catalogsync.models import Scope
from catalogsync.store import MemoryStore
from catalogsync.tag_taxonomy import (
    SORT_BY_COUNT,
    SORT_BY_NAME,
    SORT_BY_RECENT,
    TagTaxonomy,
    files_for_tag,
    search,
    sorted_stats,
    stats,
)
from catalogsync.text_utils import normalize_tag

from conftest import FlakyStore, file_tags, mk_file, seed


def _tagged_files() -> list:
    return [
        mk_file("a", tags=["todo", "Invoice"], created=1),
        mk_file("b", tags=["TODO"], created=2),
        mk_file("c", tags=["invoice", "Invoice"], created=3),
        mk_file("d", tags=["misc"], created=4),
        mk_file("e", tags=["todo"], created=5, deleted=True),
        mk_file("z", tags=["todo"], workspace_id="other", created=6),
    ]


def _taxonomy(store, **kwargs) -> TagTaxonomy:
    return TagTaxonomy(store, "ws", InvalidationSignal(), **kwargs)


def test_stats_group_by_normalized_tag() -> None:
    items = {item.key: item for item in stats(_tagged_files()[:4])}

    assert set(items) == {"todo", "invoice", "misc"}
    assert items["todo"].tag == "todo"
    assert items["todo"].count == 2
    assert items["invoice"].tag == "Invoice"
    assert items["invoice"].count == 2
    assert items["misc"].last_used is not None


def test_sorted_stats_orders() -> None:
    items = stats(_tagged_files()[:4])

    assert [item.key for item in sorted_stats(items, SORT_BY_NAME)] == ["invoice", "misc", "todo"]
    assert [item.key for item in sorted_stats(items, SORT_BY_COUNT)] == ["invoice", "todo", "misc"]
    assert [item.key for item in sorted_stats(items, SORT_BY_RECENT)] == ["misc", "invoice", "todo"]
    with pytest.raises(ValueError):
        sorted_stats(items, "size")


def test_search_and_files_for_tag() -> None:
    files = _tagged_files()[:4]

    assert [item.key for item in search(stats(files), " VOI")] == ["invoice"]
    assert [record.id for record in files_for_tag(files, "INVOICE")] == ["a", "c"]


@pytest.mark.asyncio
async def test_workspace_stats_skip_trash_and_other_workspaces() -> None:
    store = seed(MemoryStore(), workspaces=("ws", "other"), files=_tagged_files())

    items = {item.key: item for item in await _taxonomy(store).stats()}

    assert items["todo"].count == 2
    assert {record.id for record in items["todo"].files} == {"a", "b"}


@pytest.mark.asyncio
async def test_rename_onto_existing_tag_matches_merge() -> None:
    # "TODO" already exists, so renaming "todo" onto it must act as a merge
    renamed = seed(MemoryStore(), workspaces=("ws", "other"), files=_tagged_files())
    merged = seed(MemoryStore(), workspaces=("ws", "other"), files=_tagged_files())

    rename_change = await _taxonomy(renamed).rename("todo", "TODO")
    merge_change = await _taxonomy(merged).merge("todo", "TODO")

    assert file_tags(renamed) == file_tags(merged)
    assert rename_change.action == merge_change.action == "merge"
    assert rename_change.result.succeeded == merge_change.result.succeeded
    assert file_tags(renamed)["a"] == ["Invoice", "TODO"]
    assert file_tags(renamed)["e"] == ["todo"]
    assert file_tags(renamed)["z"] == ["todo"]


@pytest.mark.asyncio
async def test_merge_converges_to_target_spelling() -> None:
    store = seed(MemoryStore(), files=_tagged_files())

    change = await _taxonomy(store).merge("Invoice", "invoice")

    tags = file_tags(store)
    for file_id in ("a", "c"):
        keys = [normalize_tag(tag) for tag in tags[file_id]]
        assert keys.count("invoice") == 1
        assert "invoice" in tags[file_id]
    assert set(change.result.succeeded) == {"a", "c"}


@pytest.mark.asyncio
async def test_merge_into_distinct_tag() -> None:
    store = seed(MemoryStore(), files=_tagged_files())
    signal = InvalidationSignal()

    change = await TagTaxonomy(store, "ws", signal).merge("misc", "Invoice")

    assert file_tags(store)["d"] == ["Invoice"]
    assert change.result.succeeded == ("d",)
    assert signal.is_dirty()


@pytest.mark.asyncio
async def test_rename_without_collision_keeps_position() -> None:
    store = seed(MemoryStore(), files=[mk_file("a", tags=["one", "Draft", "two"])])

    change = await _taxonomy(store).rename("draft", "Review")

    assert change.action == "rename"
    assert file_tags(store)["a"] == ["one", "Review", "two"]


@pytest.mark.asyncio
async def test_identical_merge_is_a_noop() -> None:
    inner = seed(MemoryStore(), files=_tagged_files())
    store = FlakyStore(inner)
    signal = InvalidationSignal()

    change = await TagTaxonomy(store, "ws", signal).merge("todo", " todo ")

    assert change.changed is False
    assert store.calls == []
    assert not signal.is_dirty()


@pytest.mark.asyncio
async def test_delete_removes_every_spelling() -> None:
    store = seed(MemoryStore(), files=_tagged_files())

    change = await _taxonomy(store).delete("TODO")

    tags = file_tags(store)
    assert tags["a"] == ["Invoice"]
    assert tags["b"] == []
    assert tags["e"] == ["todo"]
    assert set(change.result.succeeded) == {"a", "b"}


@pytest.mark.asyncio
async def test_empty_tag_is_rejected() -> None:
    store = seed(MemoryStore(), files=_tagged_files())
    taxonomy = _taxonomy(store)

    with pytest.raises(InvalidOperationError):
        await taxonomy.rename("  ", "x")
    with pytest.raises(InvalidOperationError):
        await taxonomy.merge("todo", "")
    with pytest.raises(InvalidOperationError):
        await taxonomy.delete("")


@pytest.mark.asyncio
async def test_failure_stops_the_run_and_reports_progress() -> None:
    files = [mk_file(f"f{index}", tags=["old"], created=index) for index in range(1, 7)]
    inner = seed(MemoryStore(), files=files)
    store = FlakyStore(inner)
    # files load newest first: f6, f5, f4, f3, ...
    store.failures[("update", "f3")] = StoreError("throttled")
    pauses: list[float] = []

    async def fake_sleep(delay: float) -> None:
        pauses.append(delay)

    taxonomy = _taxonomy(store, batch_size=2, batch_delay=0.25, sleep=fake_sleep)

    with pytest.raises(BatchOperationError) as exc_info:
        await taxonomy.rename("old", "new")

    result = exc_info.value.result
    assert result.succeeded == ("f6", "f5", "f4")
    assert set(result.failed) == {"f3"}
    assert result.skipped == ("f2", "f1")
    assert pauses == [0.25]
    assert str(exc_info.value) == "Failed to rename tag on 1 file(s), 2 not attempted"
    tags = file_tags(inner)
    assert [file_id for file_id, value in tags.items() if value == ["new"]] == ["f4", "f5", "f6"]


@pytest.mark.asyncio
async def test_batches_pause_between_groups() -> None:
    files = [mk_file(f"f{index}", tags=["old"], created=index) for index in range(5)]
    store = seed(MemoryStore(), files=files)
    pauses: list[float] = []

    async def fake_sleep(delay: float) -> None:
        pauses.append(delay)

    change = await (
        _taxonomy(store, batch_size=2, batch_delay=0.1, sleep=fake_sleep).delete("old")
    )

    assert len(change.result.succeeded) == 5
    assert pauses == [0.1, 0.1]


@pytest.mark.asyncio
async def test_rewrite_patches_the_visible_collection() -> None:
    store = seed(MemoryStore(), files=_tagged_files())
    signal = InvalidationSignal()
    collection = FileCollection(store, Scope("ws"), signal)
    await collection.load()
    taxonomy = TagTaxonomy(store, "ws", signal, collection=collection)

    await taxonomy.rename("misc", "Other")

    assert collection.get("d").tags == ("Other",)
    assert collection.get("a").tags == ("todo", "Invoice")
