from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.tree import Tree

from .change_feed import ChangeFeed
from .config import DEFAULT_COLOR, CatalogSettings, load_settings
from .drag_payload import dispatch_drop
from .errors import BatchOperationError, CatalogError
from .file_collection import FileCollection, validate_destination
from .filters import FileFilter, SortField, TypeFilter, apply_filters
from .folder_tree import FolderNode, FolderTree, folder_label
from .invalidation import InvalidationSignal
from .models import FILES, FileCategory, Scope, file_from_row
from .object_storage import LocalObjectStorage
from .state_db import SqliteStore
from .tag_taxonomy import SORT_BY_COUNT, TagChange, TagTaxonomy, search, sorted_stats
from .text_utils import dedupe_tags, format_file_size
from .workspaces import CatalogStats, WorkspaceDirectory

app = typer.Typer(
    help="Organize cataloged files into workspaces, projects and folders",
    no_args_is_help=True,
)
workspace_app = typer.Typer(help="Manage workspaces", no_args_is_help=True)
project_app = typer.Typer(help="Manage projects of a workspace", no_args_is_help=True)
folder_app = typer.Typer(help="Manage the folder tree of a project", no_args_is_help=True)
file_app = typer.Typer(help="List and organize files", no_args_is_help=True)
tag_app = typer.Typer(help="Manage the tag vocabulary of a workspace", no_args_is_help=True)
app.add_typer(workspace_app, name="workspace")
app.add_typer(project_app, name="project")
app.add_typer(folder_app, name="folder")
app.add_typer(file_app, name="file")
app.add_typer(tag_app, name="tag")

console = Console()
logger = logging.getLogger(__name__)


@dataclass
class Session:
    settings: CatalogSettings
    store: SqliteStore
    signal: InvalidationSignal
    feed: ChangeFeed
    directory: WorkspaceDirectory

    async def workspace_id(self, workspace_id: str | None) -> str:
        workspace = await self.directory.switch(workspace_id)
        return workspace.id

    def collection(self, scope: Scope) -> FileCollection:
        return FileCollection(
            self.store,
            scope,
            self.signal,
            objects=LocalObjectStorage(self.settings.object_root_path),
            feed=self.feed,
            page_size=self.settings.page_size,
            reload_delay=self.settings.reload_coalesce_seconds,
        )

    async def tree(self, project_id: str) -> FolderTree:
        tree = FolderTree(self.store, project_id, self.signal)
        await tree.reload()
        return tree

    def taxonomy(self, workspace_id: str) -> TagTaxonomy:
        return TagTaxonomy(
            self.store,
            workspace_id,
            self.signal,
            batch_size=self.settings.tag_batch_size,
            batch_delay=self.settings.tag_batch_delay_seconds,
        )


@dataclass(frozen=True)
class CliOptions:
    settings: CatalogSettings
    db_path: Path


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _run(ctx: typer.Context, action: Callable[[Session], Awaitable[None]]) -> None:
    options: CliOptions = ctx.obj

    async def _main() -> None:
        feed = ChangeFeed()
        store = SqliteStore(options.db_path, feed)
        signal = InvalidationSignal()
        try:
            session = Session(
                settings=options.settings,
                store=store,
                signal=signal,
                feed=feed,
                directory=WorkspaceDirectory(
                    store, signal, recent_days=options.settings.recent_days
                ),
            )
            await action(session)
        finally:
            store.close()

    try:
        asyncio.run(_main())
    except BatchOperationError as exc:
        console.print(f"[red]{exc}[/red]")
        for item_id, message in exc.result.failed.items():
            console.print(f"  [red]{item_id}[/red]: {message}")
        raise typer.Exit(1)
    except CatalogError as exc:
        console.print(f"[red]Error:[/red] {exc}")
        raise typer.Exit(1)


@app.callback()
def _main_options(
    ctx: typer.Context,
    db: Path | None = typer.Option(
        None,
        help="Catalog SQLite path (default: ~/.catalogsync/catalog.sqlite3)",
    ),
    config: Path | None = typer.Option(
        None,
        help="Settings file with a [catalog] table (default: ~/.catalogsync/config.toml)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
) -> None:
    _configure_logging(verbose)
    try:
        settings = load_settings(config)
    except ValueError as exc:
        console.print(f"[red]Invalid settings:[/red] {exc}")
        raise typer.Exit(2)
    db_path = db.expanduser().resolve() if db is not None else settings.catalog_db_path
    ctx.obj = CliOptions(settings=settings, db_path=db_path)


def _print_stats(title: str, stats: CatalogStats) -> None:
    table = Table(title=title, show_header=False)
    table.add_row("Files", str(stats.total_files))
    table.add_row("Size", format_file_size(stats.total_size))
    table.add_row("Favorites", str(stats.favorite_files))
    table.add_row("Recently changed", str(stats.recent_files))
    table.add_row("Projects", str(stats.total_projects))
    table.add_row("Folders", str(stats.total_folders))
    for category, count in sorted(stats.files_by_category.items()):
        table.add_row(f"  {category}", str(count))
    console.print(table)


def _print_tag_change(change: TagChange) -> None:
    target = f" -> {change.target}" if change.target is not None else ""
    console.print(
        f"Tag {change.action} {change.tag}{target}: "
        f"{len(change.result.succeeded)} files updated"
    )


# workspaces


@workspace_app.command("list")
def workspace_list(ctx: typer.Context) -> None:
    """List workspaces (creates the default one on first use)."""

    async def _action(session: Session) -> None:
        table = Table("ID", "Name", "Color", "Description")
        for workspace in await session.directory.load():
            table.add_row(
                workspace.id, workspace.name, workspace.color, workspace.description or ""
            )
        console.print(table)

    _run(ctx, _action)


@workspace_app.command("create")
def workspace_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Workspace name"),
    color: str = typer.Option(DEFAULT_COLOR, help="Display color"),
    description: str | None = typer.Option(None, help="Optional description"),
) -> None:
    async def _action(session: Session) -> None:
        await session.directory.load()
        workspace = await session.directory.create_workspace(
            name,
            color=color,
            description=description,
        )
        console.print(f"Created workspace [bold]{workspace.name}[/bold] {workspace.id}")

    _run(ctx, _action)


@workspace_app.command("delete")
def workspace_delete(
    ctx: typer.Context,
    workspace_id: str = typer.Argument(..., help="Workspace id"),
) -> None:
    async def _action(session: Session) -> None:
        await session.directory.load()
        await session.directory.delete_workspace(workspace_id)
        console.print(f"Deleted workspace {workspace_id}")

    _run(ctx, _action)


@workspace_app.command("stats")
def workspace_stats(
    ctx: typer.Context,
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    async def _action(session: Session) -> None:
        workspace_id = await session.workspace_id(workspace)
        stats = await session.directory.workspace_stats(workspace_id)
        _print_stats(f"Workspace {session.directory.get_workspace(workspace_id).name}", stats)

    _run(ctx, _action)


# projects


@project_app.command("list")
def project_list(
    ctx: typer.Context,
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    async def _action(session: Session) -> None:
        await session.workspace_id(workspace)
        table = Table("ID", "Name", "Color", "Description")
        for project in session.directory.projects:
            table.add_row(project.id, project.name, project.color, project.description or "")
        console.print(table)

    _run(ctx, _action)


@project_app.command("create")
def project_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Project name"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
    color: str = typer.Option(DEFAULT_COLOR, help="Display color"),
    description: str | None = typer.Option(None, help="Optional description"),
) -> None:
    async def _action(session: Session) -> None:
        await session.workspace_id(workspace)
        project = await session.directory.create_project(
            name, color=color, description=description
        )
        console.print(f"Created project [bold]{project.name}[/bold] {project.id}")

    _run(ctx, _action)


@project_app.command("delete")
def project_delete(
    ctx: typer.Context,
    project_id: str = typer.Argument(..., help="Project id"),
) -> None:
    """Delete a project; its files stay in the workspace root."""

    async def _action(session: Session) -> None:
        await session.directory.delete_project(project_id)
        console.print(f"Deleted project {project_id}")

    _run(ctx, _action)


@project_app.command("stats")
def project_stats(
    ctx: typer.Context,
    project_id: str = typer.Argument(..., help="Project id"),
) -> None:
    async def _action(session: Session) -> None:
        _print_stats(f"Project {project_id}", await session.directory.project_stats(project_id))

    _run(ctx, _action)


# folders


def _add_nodes(parent: Tree, nodes: list[FolderNode]) -> None:
    for node in nodes:
        branch = parent.add(folder_label(node))
        _add_nodes(branch, node.children)


@folder_app.command("tree")
def folder_tree(
    ctx: typer.Context,
    project: str = typer.Option(..., help="Project id"),
) -> None:
    """Show the folder hierarchy with file counts."""

    async def _action(session: Session) -> None:
        tree = await session.tree(project)
        root = Tree(f"[bold]{project}[/bold]")
        _add_nodes(root, tree.roots)
        console.print(root)

    _run(ctx, _action)


@folder_app.command("create")
def folder_create(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Folder name"),
    project: str = typer.Option(..., help="Project id"),
    parent: str | None = typer.Option(None, help="Parent folder id (default: project root)"),
) -> None:
    async def _action(session: Session) -> None:
        folder = await (await session.tree(project)).create(name, parent)
        console.print(f"Created folder {folder.path} {folder.id}")

    _run(ctx, _action)


@folder_app.command("rename")
def folder_rename(
    ctx: typer.Context,
    folder_id: str = typer.Argument(..., help="Folder id"),
    name: str = typer.Argument(..., help="New name"),
    project: str = typer.Option(..., help="Project id"),
) -> None:
    async def _action(session: Session) -> None:
        folder = await (await session.tree(project)).rename(folder_id, name)
        console.print(f"Renamed folder to {folder.path}")

    _run(ctx, _action)


@folder_app.command("move")
def folder_move(
    ctx: typer.Context,
    folder_id: str = typer.Argument(..., help="Folder id"),
    project: str = typer.Option(..., help="Project id"),
    parent: str | None = typer.Option(None, help="New parent folder id (default: project root)"),
) -> None:
    async def _action(session: Session) -> None:
        tree = await session.tree(project)
        if await tree.move(folder_id, parent):
            console.print(f"Moved folder to {tree.folders[folder_id].path}")
        else:
            console.print("Folder is already there")

    _run(ctx, _action)


@folder_app.command("delete")
def folder_delete(
    ctx: typer.Context,
    folder_id: str = typer.Argument(..., help="Folder id"),
    project: str = typer.Option(..., help="Project id"),
) -> None:
    """Delete a folder, moving its files and subfolders to its parent."""

    async def _action(session: Session) -> None:
        result = await (await session.tree(project)).delete(folder_id)
        console.print(
            f"Deleted folder {folder_id}: {result.files_moved} files and "
            f"{result.folders_moved} folders moved to "
            f"{result.new_parent_id or 'project root'}"
        )

    _run(ctx, _action)


# files


@file_app.command("list")
def file_list(
    ctx: typer.Context,
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
    project: str | None = typer.Option(None, help="Project id"),
    folder: str | None = typer.Option(None, help="Folder id (requires --project)"),
    page: int = typer.Option(1, min=1, help="Page number"),
    search_text: str = typer.Option("", "--search", help="Match name, original name or tags"),
    tag: list[str] = typer.Option([], help="Only files carrying one of these tags"),
    type_filter: TypeFilter = typer.Option(TypeFilter.ALL, "--type", help="Type filter"),
    sort: SortField = typer.Option(SortField.DATE, help="Sort field"),
    ascending: bool = typer.Option(False, help="Sort ascending"),
) -> None:
    """List one page of files of a scope."""

    async def _action(session: Session) -> None:
        try:
            scope = Scope(await session.workspace_id(workspace), project, folder)
        except ValueError as exc:
            raise CatalogError(str(exc)) from exc
        collection = session.collection(scope)
        await collection.load(page)
        file_filter = FileFilter(
            search=search_text,
            tags=tuple(tag),
            type_filter=type_filter,
            sort_by=sort,
            descending=not ascending,
            recent_days=session.settings.recent_days,
        )
        table = Table("ID", "Name", "Size", "Category", "Tags", "Fav")
        for record in apply_filters(collection.files, file_filter):
            table.add_row(
                record.id,
                record.name,
                format_file_size(record.file_size),
                record.file_category.value,
                ", ".join(record.tags),
                "*" if record.is_favorite else "",
            )
        console.print(table)
        console.print(
            f"Page {collection.page}/{max(1, collection.total_pages)}"
            f"  total={collection.total_count}"
        )

    _run(ctx, _action)


@file_app.command("add")
def file_add(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Display name"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
    project: str | None = typer.Option(None, help="Project id"),
    folder: str | None = typer.Option(None, help="Folder id (requires --project)"),
    size: int = typer.Option(0, min=0, help="Size in bytes"),
    category: FileCategory = typer.Option(FileCategory.OTHER, help="File category"),
    mime: str = typer.Option("", help="MIME type"),
    path: str = typer.Option("", help="Object path under the storage root"),
    tag: list[str] = typer.Option([], help="Tag to attach (repeatable)"),
) -> None:
    """Register an already stored object in the catalog."""

    async def _action(session: Session) -> None:
        workspace_id = await session.workspace_id(workspace)
        await validate_destination(session.store, workspace_id, project, folder)
        [row] = await session.store.insert(
            FILES,
            [
                {
                    "workspace_id": workspace_id,
                    "project_id": project,
                    "folder_id": folder,
                    "name": name,
                    "original_name": name,
                    "file_size": size,
                    "file_type": mime,
                    "file_category": category.value,
                    "file_path": path,
                    "tags": list(dedupe_tags(tag)),
                }
            ],
        )
        record = file_from_row(row)
        console.print(f"Added file {record.name} {record.id}")

    _run(ctx, _action)


@file_app.command("move")
def file_move(
    ctx: typer.Context,
    file_ids: list[str] = typer.Argument(..., help="File ids"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
    project: str | None = typer.Option(None, help="Destination project (default: workspace root)"),
    folder: str | None = typer.Option(None, help="Destination folder (requires --project)"),
) -> None:
    async def _action(session: Session) -> None:
        collection = session.collection(Scope(await session.workspace_id(workspace)))
        result = await collection.batch_move(file_ids, project, folder)
        console.print(f"Moved {len(result.succeeded)} files")

    _run(ctx, _action)


@file_app.command("favorite")
def file_favorite(
    ctx: typer.Context,
    file_id: str = typer.Argument(..., help="File id"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    """Toggle the favorite flag of a file."""

    async def _action(session: Session) -> None:
        collection = session.collection(Scope(await session.workspace_id(workspace)))
        record = await collection.toggle_favorite(file_id)
        state = "marked" if record.is_favorite else "unmarked"
        console.print(f"File {record.name} {state} as favorite")

    _run(ctx, _action)


@file_app.command("delete")
def file_delete(
    ctx: typer.Context,
    file_ids: list[str] = typer.Argument(..., help="File ids"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
    trash: bool = typer.Option(False, help="Move to trash instead of deleting"),
) -> None:
    async def _action(session: Session) -> None:
        collection = session.collection(Scope(await session.workspace_id(workspace)))
        if trash:
            for file_id in file_ids:
                await collection.trash(file_id)
            console.print(f"Moved {len(file_ids)} files to trash")
            return
        result = await collection.batch_delete(file_ids)
        console.print(f"Deleted {len(result.succeeded)} files")

    _run(ctx, _action)


@file_app.command("restore")
def file_restore(
    ctx: typer.Context,
    file_id: str = typer.Argument(..., help="File id"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    async def _action(session: Session) -> None:
        collection = session.collection(Scope(await session.workspace_id(workspace)))
        record = await collection.restore(file_id)
        console.print(f"Restored file {record.name}")

    _run(ctx, _action)


@file_app.command("drop")
def file_drop(
    ctx: typer.Context,
    payload: str = typer.Argument(..., help="Drag payload: files:<json ids> or folder:<id>"),
    project: str = typer.Option(..., help="Project id of the drop target"),
    target: str | None = typer.Option(None, help="Target folder id (default: project root)"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    """Apply a drag payload as if it was dropped on a folder."""

    async def _action(session: Session) -> None:
        collection = session.collection(Scope(await session.workspace_id(workspace)))
        tree = await session.tree(project)
        outcome = await dispatch_drop(
            payload, tree=tree, collection=collection, target_folder_id=target
        )
        if outcome is False:
            console.print("Nothing to move")
        else:
            console.print("Drop applied")

    _run(ctx, _action)


# tags


@tag_app.command("stats")
def tag_stats(
    ctx: typer.Context,
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
    sort: str = typer.Option(SORT_BY_COUNT, help="Sort by name, count or recent"),
    query: str = typer.Option("", "--search", help="Only tags containing this text"),
) -> None:
    async def _action(session: Session) -> None:
        taxonomy = session.taxonomy(await session.workspace_id(workspace))
        try:
            items = sorted_stats(await taxonomy.stats(), sort)
        except ValueError as exc:
            raise CatalogError(str(exc)) from exc
        if query:
            items = search(items, query)
        table = Table("Tag", "Files")
        for item in items:
            table.add_row(item.tag, str(item.count))
        console.print(table)

    _run(ctx, _action)


@tag_app.command("rename")
def tag_rename(
    ctx: typer.Context,
    old: str = typer.Argument(..., help="Current tag"),
    new: str = typer.Argument(..., help="New spelling"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    async def _action(session: Session) -> None:
        taxonomy = session.taxonomy(await session.workspace_id(workspace))
        _print_tag_change(await taxonomy.rename(old, new))

    _run(ctx, _action)


@tag_app.command("merge")
def tag_merge(
    ctx: typer.Context,
    source: str = typer.Argument(..., help="Tag to fold away"),
    target: str = typer.Argument(..., help="Tag to keep"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    async def _action(session: Session) -> None:
        taxonomy = session.taxonomy(await session.workspace_id(workspace))
        _print_tag_change(await taxonomy.merge(source, target))

    _run(ctx, _action)


@tag_app.command("delete")
def tag_delete(
    ctx: typer.Context,
    tag: str = typer.Argument(..., help="Tag to remove from every file"),
    workspace: str | None = typer.Option(None, help="Workspace id (default: first)"),
) -> None:
    async def _action(session: Session) -> None:
        taxonomy = session.taxonomy(await session.workspace_id(workspace))
        _print_tag_change(await taxonomy.delete(tag))

    _run(ctx, _action)


if __name__ == "__main__":
    app()
