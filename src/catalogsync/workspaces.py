from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import Any

from .config import (
    DEFAULT_COLOR,
    DEFAULT_WORKSPACE_DESCRIPTION,
    DEFAULT_WORKSPACE_NAME,
    RECENT_DAYS,
)
from .errors import InvalidOperationError, StoreError
from .invalidation import InvalidationSignal
from .models import (
    FILES,
    FOLDERS,
    PROJECTS,
    WORKSPACES,
    FileRecord,
    Project,
    Row,
    Workspace,
    file_from_row,
    parse_timestamp,
    project_from_row,
    workspace_from_row,
)
from .store import RecordStore, eq, in_, is_null
from .text_utils import clean_name

logger = logging.getLogger(__name__)

_WORKSPACE_FIELDS = frozenset({"name", "color", "description"})
_PROJECT_FIELDS = frozenset({"name", "color", "description"})
_COPY_SUFFIX = " (Copy)"


@dataclass(frozen=True)
class CatalogStats:
    total_files: int = 0
    total_size: int = 0
    files_by_category: dict[str, int] = field(default_factory=dict)
    favorite_files: int = 0
    recent_files: int = 0
    total_projects: int = 0
    total_folders: int = 0


def summarize_files(
    rows: Iterable[Row],
    *,
    recent_days: int = RECENT_DAYS,
    now: datetime | None = None,
) -> CatalogStats:
    cutoff = (now or datetime.now(tz=UTC)) - timedelta(days=recent_days)
    total = 0
    size = 0
    favorites = 0
    recent = 0
    categories: Counter[str] = Counter()
    for row in rows:
        total += 1
        size += int(row.get("file_size") or 0)
        categories[str(row.get("file_category") or "other")] += 1
        if row.get("is_favorite"):
            favorites += 1
        modified = parse_timestamp(row.get("updated_at") or row.get("created_at"))
        if modified is not None and modified > cutoff:
            recent += 1
    return CatalogStats(
        total_files=total,
        total_size=size,
        files_by_category=dict(categories),
        favorite_files=favorites,
        recent_files=recent,
    )


def _checked_fields(
    fields: Mapping[str, Any], allowed: frozenset[str], kind: str
) -> dict[str, Any]:
    unknown = sorted(set(fields) - allowed)
    if unknown:
        raise InvalidOperationError(f"{kind} fields cannot be updated: {', '.join(unknown)}")
    checked = dict(fields)
    if "name" in checked:
        checked["name"] = clean_name(str(checked["name"]))
        if not checked["name"]:
            raise InvalidOperationError(f"{kind} name cannot be empty")
    return checked


class WorkspaceDirectory:
    """Workspaces and projects of the catalog plus the current selection.

    Keeps the invariant that at least one workspace exists once loaded.
    """

    def __init__(
        self,
        store: RecordStore,
        signal: InvalidationSignal,
        *,
        recent_days: int = RECENT_DAYS,
    ) -> None:
        self.store = store
        self.signal = signal
        self.recent_days = recent_days
        self.workspaces: list[Workspace] = []
        self.current: Workspace | None = None
        self.projects: list[Project] = []
        self.current_project: Project | None = None

    # workspaces

    async def load(self) -> list[Workspace]:
        rows = await self.store.query(WORKSPACES, order_by="name")
        self.workspaces = [workspace_from_row(row) for row in rows]
        if not self.workspaces:
            await self.ensure_default()
        logger.debug("Loaded %d workspaces", len(self.workspaces))
        return self.workspaces

    async def ensure_default(self) -> Workspace:
        if self.workspaces:
            return self.workspaces[0]
        logger.info("No workspaces found, creating %r", DEFAULT_WORKSPACE_NAME)
        return await self.create_workspace(
            DEFAULT_WORKSPACE_NAME,
            color=DEFAULT_COLOR,
            description=DEFAULT_WORKSPACE_DESCRIPTION,
        )

    def get_workspace(self, workspace_id: str) -> Workspace:
        for workspace in self.workspaces:
            if workspace.id == workspace_id:
                return workspace
        raise InvalidOperationError(f"Unknown workspace: {workspace_id}")

    async def switch(self, workspace_id: str | None) -> Workspace:
        """Select a workspace, falling back to the first one when unknown."""
        if not self.workspaces:
            await self.load()
        selected = next(
            (workspace for workspace in self.workspaces if workspace.id == workspace_id),
            None,
        )
        if selected is None:
            if workspace_id is not None:
                logger.warning(
                    "Workspace %s not found, falling back to %s",
                    workspace_id,
                    self.workspaces[0].name,
                )
            selected = self.workspaces[0]
        if self.current is None or self.current.id != selected.id:
            self.current_project = None
        self.current = selected
        await self.load_projects()
        return selected

    async def create_workspace(
        self,
        name: str,
        *,
        color: str = DEFAULT_COLOR,
        description: str | None = None,
    ) -> Workspace:
        checked = _checked_fields(
            {"name": name, "color": color, "description": description},
            _WORKSPACE_FIELDS,
            "Workspace",
        )
        [row] = await self.store.insert(WORKSPACES, [checked])
        workspace = workspace_from_row(row)
        self.workspaces.append(workspace)
        logger.info("Created workspace %s (%s)", workspace.name, workspace.id)
        self.signal.mark_dirty("workspace created")
        return workspace

    async def update_workspace(
        self, workspace_id: str, fields: Mapping[str, Any]
    ) -> Workspace:
        self.get_workspace(workspace_id)
        checked = _checked_fields(fields, _WORKSPACE_FIELDS, "Workspace")
        workspace = workspace_from_row(
            await self.store.update(WORKSPACES, workspace_id, checked)
        )
        self.workspaces = [
            workspace if item.id == workspace_id else item for item in self.workspaces
        ]
        if self.current is not None and self.current.id == workspace_id:
            self.current = workspace
        self.signal.mark_dirty("workspace updated")
        return workspace

    async def delete_workspace(self, workspace_id: str) -> None:
        self.get_workspace(workspace_id)
        if len(self.workspaces) <= 1:
            raise InvalidOperationError("Cannot delete the last workspace")
        async with self.store.atomic():
            for row in await self.store.query(PROJECTS, [eq("workspace_id", workspace_id)]):
                await self._delete_project_rows(str(row["id"]))
            for row in await self.store.query(FILES, [eq("workspace_id", workspace_id)]):
                await self.store.delete(FILES, str(row["id"]))
            await self.store.delete(WORKSPACES, workspace_id)
        self.workspaces = [item for item in self.workspaces if item.id != workspace_id]
        logger.info("Deleted workspace %s", workspace_id)
        if self.current is not None and self.current.id == workspace_id:
            await self.switch(self.workspaces[0].id)
        self.signal.mark_dirty("workspace deleted")

    # projects

    def _workspace_id(self, workspace_id: str | None) -> str:
        if workspace_id is not None:
            return workspace_id
        if self.current is None:
            raise InvalidOperationError("No workspace selected")
        return self.current.id

    async def load_projects(self, workspace_id: str | None = None) -> list[Project]:
        target = self._workspace_id(workspace_id)
        rows = await self.store.query(PROJECTS, [eq("workspace_id", target)], order_by="name")
        projects = [project_from_row(row) for row in rows]
        if self.current is not None and target == self.current.id:
            self.projects = projects
        return projects

    def get_project(self, project_id: str) -> Project:
        for project in self.projects:
            if project.id == project_id:
                return project
        raise InvalidOperationError(f"Unknown project: {project_id}")

    def select_project(self, project_id: str | None) -> Project | None:
        self.current_project = None if project_id is None else self.get_project(project_id)
        return self.current_project

    async def create_project(
        self,
        name: str,
        *,
        color: str = DEFAULT_COLOR,
        description: str | None = None,
        workspace_id: str | None = None,
    ) -> Project:
        target = self._workspace_id(workspace_id)
        checked = _checked_fields(
            {"name": name, "color": color, "description": description},
            _PROJECT_FIELDS,
            "Project",
        )
        [row] = await self.store.insert(PROJECTS, [{**checked, "workspace_id": target}])
        project = project_from_row(row)
        if self.current is not None and target == self.current.id:
            self.projects.append(project)
        logger.info("Created project %s (%s)", project.name, project.id)
        self.signal.mark_dirty("project created")
        return project

    async def update_project(self, project_id: str, fields: Mapping[str, Any]) -> Project:
        checked = _checked_fields(fields, _PROJECT_FIELDS, "Project")
        project = project_from_row(await self.store.update(PROJECTS, project_id, checked))
        self.projects = [project if item.id == project_id else item for item in self.projects]
        if self.current_project is not None and self.current_project.id == project_id:
            self.current_project = project
        self.signal.mark_dirty("project updated")
        return project

    async def _delete_project_rows(self, project_id: str) -> None:
        await self.store.update_where(
            FILES, [eq("project_id", project_id)], {"project_id": None, "folder_id": None}
        )
        for row in await self.store.query(FOLDERS, [eq("project_id", project_id)]):
            await self.store.update(FOLDERS, str(row["id"]), {"parent_id": None})
        for row in await self.store.query(FOLDERS, [eq("project_id", project_id)]):
            await self.store.delete(FOLDERS, str(row["id"]))
        await self.store.delete(PROJECTS, project_id)

    async def delete_project(self, project_id: str) -> None:
        """Delete a project; its files move to the workspace root."""
        try:
            async with self.store.atomic():
                await self._delete_project_rows(project_id)
        except StoreError:
            logger.exception("Deleting project %s failed", project_id)
            raise
        self.projects = [item for item in self.projects if item.id != project_id]
        if self.current_project is not None and self.current_project.id == project_id:
            self.current_project = self.projects[0] if self.projects else None
        logger.info("Deleted project %s", project_id)
        self.signal.mark_dirty("project deleted")

    # cross-workspace file operations

    async def move_files_to_workspace(
        self, file_ids: Sequence[str], target_workspace_id: str
    ) -> int:
        self.get_workspace(target_workspace_id)
        if not file_ids:
            return 0
        moved = await self.store.update_where(
            FILES,
            [in_("id", file_ids)],
            {"workspace_id": target_workspace_id, "project_id": None, "folder_id": None},
        )
        logger.info("Moved %d files to workspace %s", moved, target_workspace_id)
        self.signal.mark_dirty("files moved to workspace")
        return moved

    async def duplicate_files_to_workspace(
        self, file_ids: Sequence[str], target_workspace_id: str
    ) -> list[FileRecord]:
        self.get_workspace(target_workspace_id)
        rows = await self.store.query(FILES, [in_("id", file_ids)])
        if not rows:
            raise InvalidOperationError("No files found to duplicate")
        copies = [
            {
                **row,
                "id": None,
                "workspace_id": target_workspace_id,
                "project_id": None,
                "folder_id": None,
                "name": f"{row['name']}{_COPY_SUFFIX}",
                "created_at": None,
                "updated_at": None,
            }
            for row in rows
        ]
        inserted = await self.store.insert(FILES, copies)
        logger.info(
            "Duplicated %d files to workspace %s", len(inserted), target_workspace_id
        )
        self.signal.mark_dirty("files duplicated")
        return [file_from_row(row) for row in inserted]

    # statistics

    async def workspace_stats(self, workspace_id: str | None = None) -> CatalogStats:
        target = self._workspace_id(workspace_id)
        rows = await self.store.query(
            FILES, [eq("workspace_id", target), is_null("deleted_at")]
        )
        projects = await self.store.query(PROJECTS, [eq("workspace_id", target)])
        project_ids = [str(row["id"]) for row in projects]
        folders = (
            await self.store.count(FOLDERS, [in_("project_id", project_ids)])
            if project_ids
            else 0
        )
        summary = summarize_files(rows, recent_days=self.recent_days)
        return CatalogStats(
            total_files=summary.total_files,
            total_size=summary.total_size,
            files_by_category=summary.files_by_category,
            favorite_files=summary.favorite_files,
            recent_files=summary.recent_files,
            total_projects=len(project_ids),
            total_folders=folders,
        )

    async def project_stats(self, project_id: str) -> CatalogStats:
        rows = await self.store.query(
            FILES, [eq("project_id", project_id), is_null("deleted_at")]
        )
        folders = await self.store.count(FOLDERS, [eq("project_id", project_id)])
        summary = summarize_files(rows, recent_days=self.recent_days)
        return CatalogStats(
            total_files=summary.total_files,
            total_size=summary.total_size,
            files_by_category=summary.files_by_category,
            favorite_files=summary.favorite_files,
            recent_files=summary.recent_files,
            total_projects=1,
            total_folders=folders,
        )
