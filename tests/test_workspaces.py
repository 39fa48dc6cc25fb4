from __future__ import annotations

import pytest

from catalogsync.config import DEFAULT_COLOR, DEFAULT_WORKSPACE_NAME
from catalogsync.errors import InvalidOperationError, StoreError
from catalogsync.invalidation import InvalidationSignal
from catalogsync.models import FILES, FOLDERS, PROJECTS, WORKSPACES, FileCategory, file_to_row
from catalogsync.store import MemoryStore
from catalogsync.workspaces import WorkspaceDirectory, summarize_files

from conftest import FlakyStore, at, mk_file, mk_folder, seed


def _directory(store) -> WorkspaceDirectory:
    return WorkspaceDirectory(store, InvalidationSignal())


@pytest.mark.asyncio
async def test_load_creates_default_workspace_once() -> None:
    store = MemoryStore()
    directory = _directory(store)

    [workspace] = await directory.load()

    assert workspace.name == DEFAULT_WORKSPACE_NAME
    assert workspace.color == DEFAULT_COLOR
    assert len(await directory.load()) == 1
    assert len(store.tables[WORKSPACES]) == 1


@pytest.mark.asyncio
async def test_switch_falls_back_to_first_workspace() -> None:
    store = seed(MemoryStore(), workspaces=("ws", "ws2"), projects={"p1": "ws2"})
    directory = _directory(store)

    await directory.load()

    missing = await directory.switch("gone")
    chosen = await directory.switch("ws2")

    assert missing.id == "ws"
    assert chosen.id == "ws2"
    assert [project.id for project in directory.projects] == ["p1"]


@pytest.mark.asyncio
async def test_workspace_create_update_and_validation() -> None:
    directory = _directory(seed(MemoryStore()))

    await directory.load()

    created = await directory.create_workspace("  Clients ", color="#10B981")
    updated = await directory.update_workspace(created.id, {"description": "paid work"})

    assert updated.name == "Clients"
    assert updated.description == "paid work"
    assert directory.signal.is_dirty()
    with pytest.raises(InvalidOperationError):
        await directory.create_workspace(" ")
    with pytest.raises(InvalidOperationError):
        await directory.update_workspace(updated.id, {"owner": "x"})


@pytest.mark.asyncio
async def test_last_workspace_cannot_be_deleted() -> None:
    directory = _directory(seed(MemoryStore()))
    await directory.load()

    with pytest.raises(InvalidOperationError):
        await directory.delete_workspace("ws")


@pytest.mark.asyncio
async def test_delete_workspace_removes_its_rows_and_switches() -> None:
    store = seed(
        MemoryStore(),
        workspaces=("ws", "ws2"),
        projects={"p1": "ws", "p2": "ws2"},
        folders=[mk_folder("d1"), mk_folder("d2", parent_id="d1"), mk_folder("k", project_id="p2")],
        files=[
            mk_file("a", project_id="p1", folder_id="d2"),
            mk_file("b"),
            mk_file("keep", workspace_id="ws2", project_id="p2", folder_id="k"),
        ],
    )
    directory = _directory(store)

    await directory.load()
    await directory.switch("ws")
    await directory.delete_workspace("ws")

    assert set(store.tables[WORKSPACES]) == {"ws2"}
    assert set(store.tables[PROJECTS]) == {"p2"}
    assert set(store.tables[FOLDERS]) == {"k"}
    assert set(store.tables[FILES]) == {"keep"}
    assert directory.current.id == "ws2"


@pytest.mark.asyncio
async def test_delete_project_moves_files_to_workspace_root() -> None:
    store = seed(
        MemoryStore(),
        projects={"p1": "ws", "p2": "ws"},
        folders=[mk_folder("d1"), mk_folder("d2", parent_id="d1")],
        files=[mk_file("a", project_id="p1", folder_id="d2"), mk_file("b", project_id="p1")],
    )
    directory = _directory(store)

    await directory.switch("ws")
    directory.select_project("p1")
    await directory.delete_project("p1")

    assert store.tables[FOLDERS] == {}
    assert "p1" not in store.tables[PROJECTS]
    for file_id in ("a", "b"):
        row = store.tables[FILES][file_id]
        assert (row["project_id"], row["folder_id"]) == (None, None)
    assert directory.current_project.id == "p2"


@pytest.mark.asyncio
async def test_failed_project_delete_is_rolled_back() -> None:
    inner = seed(
        MemoryStore(),
        projects={"p1": "ws"},
        folders=[mk_folder("d1")],
        files=[mk_file("a", project_id="p1", folder_id="d1")],
    )
    store = FlakyStore(inner)
    store.failures[("delete", "p1")] = StoreError("locked")
    directory = _directory(store)

    await directory.switch("ws")

    with pytest.raises(StoreError):
        await directory.delete_project("p1")

    assert inner.tables[FILES]["a"]["folder_id"] == "d1"
    assert "d1" in inner.tables[FOLDERS]
    assert [project.id for project in directory.projects] == ["p1"]


@pytest.mark.asyncio
async def test_move_and_duplicate_files_across_workspaces() -> None:
    store = seed(
        MemoryStore(),
        workspaces=("ws", "ws2"),
        projects={"p1": "ws"},
        files=[mk_file("a", project_id="p1", tags=["x"]), mk_file("b"), mk_file("c")],
    )
    directory = _directory(store)

    await directory.load()

    moved = await directory.move_files_to_workspace(["a", "b"], "ws2")
    [copy] = await directory.duplicate_files_to_workspace(["c"], "ws2")

    assert moved == 2
    assert store.tables[FILES]["a"]["workspace_id"] == "ws2"
    assert store.tables[FILES]["a"]["project_id"] is None
    assert copy.workspace_id == "ws2"
    assert copy.name == "c.txt (Copy)"
    assert copy.id != "c"
    assert store.tables[FILES]["c"]["workspace_id"] == "ws"
    with pytest.raises(InvalidOperationError):
        await directory.duplicate_files_to_workspace(["missing"], "ws2")
    with pytest.raises(InvalidOperationError):
        await directory.move_files_to_workspace(["c"], "nowhere")


def test_summarize_files_counts_categories_and_recency() -> None:
    rows = [
        file_to_row(mk_file("a", size=100, category=FileCategory.IMAGE, favorite=True, created=0)),
        file_to_row(mk_file("b", size=50, category=FileCategory.IMAGE, created=60 * 24 * 9)),
        file_to_row(mk_file("c", size=25, created=60 * 24 * 10)),
    ]

    summary = summarize_files(rows, recent_days=7, now=at(60 * 24 * 10))

    assert summary.total_files == 3
    assert summary.total_size == 175
    assert summary.files_by_category == {"image": 2, "other": 1}
    assert summary.favorite_files == 1
    assert summary.recent_files == 2


@pytest.mark.asyncio
async def test_workspace_and_project_stats() -> None:
    store = seed(
        MemoryStore(),
        projects={"p1": "ws", "p2": "ws"},
        folders=[mk_folder("d1"), mk_folder("d2"), mk_folder("d3", project_id="p2")],
        files=[
            mk_file("a", project_id="p1", size=10),
            mk_file("b", project_id="p1", folder_id="d1", size=20),
            mk_file("c", size=5),
            mk_file("t", project_id="p1", size=1000, deleted=True),
        ],
    )
    directory = _directory(store)

    await directory.switch("ws")

    workspace_stats = await directory.workspace_stats()
    project_stats = await directory.project_stats("p1")

    assert (workspace_stats.total_files, workspace_stats.total_size) == (3, 35)
    assert (workspace_stats.total_projects, workspace_stats.total_folders) == (2, 3)
    assert (project_stats.total_files, project_stats.total_size) == (2, 30)
    assert project_stats.total_folders == 2
