from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field, replace

from rich.text import Text

from .errors import InvalidOperationError, StoreError
from .invalidation import InvalidationSignal
from .models import FILES, FOLDERS, Folder, folder_from_row
from .move_validator import MoveValidator
from .store import RecordStore, eq, is_null
from .text_utils import clean_name

logger = logging.getLogger(__name__)


@dataclass
class FolderNode:
    folder: Folder
    children: list[FolderNode] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.folder.id

    @property
    def name(self) -> str:
        return self.folder.name

    def walk(self) -> Iterable[FolderNode]:
        stack = [self]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(reversed(node.children))


@dataclass(frozen=True)
class CascadeResult:
    folder_id: str
    new_parent_id: str | None
    files_moved: int
    folders_moved: int


def _sort_key(node: FolderNode) -> tuple[str, str]:
    return (node.folder.name.casefold(), node.folder.id)


def build(folders: Iterable[Folder]) -> list[FolderNode]:
    """Group flat folders into trees, roots first, children sorted by name.

    A folder whose parent is missing from the input becomes a root. Folders
    only reachable through a cycle are also promoted to roots, breaking the
    cycle at the first of them by name.
    """
    nodes = {folder.id: FolderNode(folder) for folder in folders}
    roots: list[FolderNode] = []
    for node in nodes.values():
        parent_id = node.folder.parent_id
        parent = nodes.get(parent_id) if parent_id is not None else None
        if parent is None:
            roots.append(node)
        else:
            parent.children.append(node)

    reached: set[str] = set()

    def _mark(root: FolderNode) -> None:
        for node in root.walk():
            reached.add(node.id)

    for root in roots:
        _mark(root)
    for node in sorted(nodes.values(), key=_sort_key):
        if node.id in reached:
            continue
        parent = nodes[node.folder.parent_id]
        parent.children.remove(node)
        roots.append(node)
        _mark(node)

    for node in nodes.values():
        node.children.sort(key=_sort_key)
    roots.sort(key=_sort_key)
    return roots


def materialize_paths(folders: Iterable[Folder]) -> dict[str, str]:
    """Slash-joined names from the project root down to each folder."""
    by_id = {folder.id: folder for folder in folders}
    paths: dict[str, str] = {}
    for folder_id in by_id:
        names: list[str] = []
        seen: set[str] = set()
        current: str | None = folder_id
        while current is not None and current in by_id and current not in seen:
            seen.add(current)
            names.append(by_id[current].name)
            current = by_id[current].parent_id
        paths[folder_id] = "/".join(reversed(names))
    return paths


def folder_label(node: FolderNode) -> Text:
    count = node.folder.file_count
    summary = f"{count} file" if count == 1 else f"{count} files"
    return Text.assemble((node.name, "bold"), "  ", (summary, "cyan"))


def _validated_name(name: str) -> str:
    cleaned = clean_name(name)
    if not cleaned:
        raise InvalidOperationError("Folder name cannot be empty")
    if "/" in cleaned:
        raise InvalidOperationError(f"Folder name cannot contain '/': {cleaned}")
    return cleaned


class FolderTree:
    """Folder hierarchy of one project, with cascade-on-delete semantics.

    Mutations write through the record store and then reload, so `path` and
    file counts are always recomputed from the live parent chain.
    """

    def __init__(
        self,
        store: RecordStore,
        project_id: str,
        signal: InvalidationSignal,
    ) -> None:
        self.store = store
        self.project_id = project_id
        self.signal = signal
        self.folders: dict[str, Folder] = {}
        self.roots: list[FolderNode] = []
        self.current_folder_id: str | None = None

    @staticmethod
    def build(folders: Iterable[Folder]) -> list[FolderNode]:
        return build(folders)

    @property
    def validator(self) -> MoveValidator:
        return MoveValidator(self.folders)

    async def reload(self) -> list[FolderNode]:
        rows = await self.store.query(
            FOLDERS, [eq("project_id", self.project_id)], order_by="name"
        )
        file_rows = await self.store.query(
            FILES, [eq("project_id", self.project_id), is_null("deleted_at")]
        )
        counts = Counter(row["folder_id"] for row in file_rows if row.get("folder_id"))
        folders = [folder_from_row(row, counts.get(row["id"], 0)) for row in rows]

        paths = materialize_paths(folders)
        stale = [folder for folder in folders if folder.path != paths[folder.id]]
        if stale:
            async with self.store.atomic():
                for folder in stale:
                    logger.debug(
                        "Refreshing folder path %s: %r -> %r",
                        folder.id,
                        folder.path,
                        paths[folder.id],
                    )
                    await self.store.update(FOLDERS, folder.id, {"path": paths[folder.id]})
        refreshed = [replace(folder, path=paths[folder.id]) for folder in folders]

        self.folders = {folder.id: folder for folder in refreshed}
        if self.current_folder_id is not None and self.current_folder_id not in self.folders:
            self.current_folder_id = None
        self.roots = build(refreshed)
        logger.debug(
            "Loaded %d folders for project %s", len(self.folders), self.project_id
        )
        return self.roots

    def get(self, folder_id: str) -> Folder:
        folder = self.folders.get(folder_id)
        if folder is None:
            raise InvalidOperationError(f"Unknown folder: {folder_id}")
        return folder

    async def create(self, name: str, parent_id: str | None = None) -> Folder:
        cleaned = _validated_name(name)
        parent_path = ""
        if parent_id is not None:
            parent_path = self.get(parent_id).path
        path = f"{parent_path}/{cleaned}" if parent_path else cleaned
        [row] = await self.store.insert(
            FOLDERS,
            [
                {
                    "project_id": self.project_id,
                    "parent_id": parent_id,
                    "name": cleaned,
                    "path": path,
                }
            ],
        )
        logger.info("Created folder %s (%s)", path, row["id"])
        await self.reload()
        self.signal.mark_dirty("folder created")
        return self.folders[str(row["id"])]

    async def rename(self, folder_id: str, new_name: str) -> Folder:
        folder = self.get(folder_id)
        cleaned = _validated_name(new_name)
        if cleaned == folder.name:
            return folder
        await self.store.update(FOLDERS, folder_id, {"name": cleaned})
        logger.info("Renamed folder %s: %s -> %s", folder_id, folder.name, cleaned)
        await self.reload()
        self.signal.mark_dirty("folder renamed")
        return self.folders[folder_id]

    async def delete(self, folder_id: str) -> CascadeResult:
        """Delete a folder, handing its files and subfolders to its parent.

        The three writes run as one atomic unit in the order file reparent,
        subfolder reparent, row delete.
        """
        folder = self.get(folder_id)
        new_parent_id = folder.parent_id
        try:
            async with self.store.atomic():
                files_moved = await self.store.update_where(
                    FILES,
                    [eq("folder_id", folder_id)],
                    {"folder_id": new_parent_id, "project_id": self.project_id},
                )
                folders_moved = await self.store.update_where(
                    FOLDERS,
                    [eq("parent_id", folder_id)],
                    {"parent_id": new_parent_id},
                )
                await self.store.delete(FOLDERS, folder_id)
        except StoreError:
            logger.exception("Deleting folder %s failed, nothing was changed", folder_id)
            raise

        logger.info(
            "Deleted folder %s: %d files and %d subfolders moved to %s",
            folder.path or folder.name,
            files_moved,
            folders_moved,
            new_parent_id or "project root",
        )
        if self.current_folder_id == folder_id:
            self.current_folder_id = new_parent_id
        await self.reload()
        self.signal.mark_dirty("folder deleted")
        return CascadeResult(folder_id, new_parent_id, files_moved, folders_moved)

    async def move(self, folder_id: str, new_parent_id: str | None) -> bool:
        """Reparent a folder. Returns False when it already sits there."""
        if not self.validator.validate_folder_move(folder_id, new_parent_id):
            return False
        await self.store.update(FOLDERS, folder_id, {"parent_id": new_parent_id})
        logger.info("Moved folder %s under %s", folder_id, new_parent_id or "project root")
        await self.reload()
        self.signal.mark_dirty("folder moved")
        return True

    def path_of(self, folder_id: str | None) -> list[str]:
        if folder_id is None:
            return []
        path = self.get(folder_id).path
        return path.split("/") if path else []

    def navigate(self, folder_id: str | None) -> list[str]:
        if folder_id is not None:
            self.get(folder_id)
        self.current_folder_id = folder_id
        return self.path_of(folder_id)

    def move_destinations(self, folder_id: str) -> list[Folder]:
        """Folders that `folder_id` could legally be moved under, by path."""
        validator = self.validator
        return sorted(
            (
                candidate
                for candidate in self.folders.values()
                if validator.check_folder_move(folder_id, candidate.id).allowed
            ),
            key=lambda folder: folder.path.casefold(),
        )

    def children_of(self, folder_id: str | None) -> list[Folder]:
        return sorted(
            (folder for folder in self.folders.values() if folder.parent_id == folder_id),
            key=lambda folder: (folder.name.casefold(), folder.id),
        )
