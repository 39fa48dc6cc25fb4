from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeAlias

Row: TypeAlias = dict[str, Any]

WORKSPACES = "workspaces"
PROJECTS = "projects"
FOLDERS = "folders"
FILES = "files"
TABLES = (WORKSPACES, PROJECTS, FOLDERS, FILES)

# Fields a caller may change on a file record through FileCollection.update.
MUTABLE_FILE_FIELDS = frozenset(
    {"name", "tags", "is_favorite", "project_id", "folder_id", "file_url"}
)


class FileCategory(str, Enum):
    DOCUMENT = "document"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"
    ARCHIVE = "archive"
    OTHER = "other"


class MoveOutcome(str, Enum):
    OK = "ok"
    NOOP = "noop"
    INTO_SELF = "into_self"
    INTO_DESCENDANT = "into_descendant"
    UNKNOWN_FOLDER = "unknown_folder"
    CROSS_PROJECT = "cross_project"
    UNKNOWN_PROJECT = "unknown_project"
    CORRUPT_HIERARCHY = "corrupt_hierarchy"

    @property
    def allowed(self) -> bool:
        return self is MoveOutcome.OK


@dataclass(frozen=True)
class Workspace:
    id: str
    name: str
    color: str
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Project:
    id: str
    workspace_id: str
    name: str
    color: str
    description: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Folder:
    id: str
    project_id: str
    name: str
    parent_id: str | None = None
    path: str = ""
    file_count: int = 0
    created_at: datetime | None = None


@dataclass(frozen=True)
class FileRecord:
    id: str
    workspace_id: str
    name: str
    original_name: str
    file_size: int
    file_type: str
    file_category: FileCategory
    file_path: str
    project_id: str | None = None
    folder_id: str | None = None
    file_url: str | None = None
    is_favorite: bool = False
    tags: tuple[str, ...] = ()
    deleted_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class Scope:
    """Bounds of a file view.

    With a project and no folder the view holds the project root files only;
    with neither it holds every file of the workspace.
    """

    workspace_id: str
    project_id: str | None = None
    folder_id: str | None = None

    def __post_init__(self) -> None:
        if self.folder_id is not None and self.project_id is None:
            raise ValueError("folder scope requires a project")

    def contains(self, record: FileRecord) -> bool:
        if record.workspace_id != self.workspace_id or record.deleted_at is not None:
            return False
        if self.project_id is None:
            return True
        return (
            record.project_id == self.project_id
            and record.folder_id == self.folder_id
        )


@dataclass(frozen=True)
class BatchResult:
    succeeded: tuple[str, ...] = ()
    failed: dict[str, str] = field(default_factory=dict)
    skipped: tuple[str, ...] = ()

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed) + len(self.skipped)

    @property
    def ok(self) -> bool:
        return not self.failed


def parse_timestamp(value: object) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def utc_now() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="microseconds")


def workspace_from_row(row: Mapping[str, Any]) -> Workspace:
    return Workspace(
        id=str(row["id"]),
        name=str(row["name"]),
        color=str(row.get("color") or ""),
        description=(
            str(row["description"]) if row.get("description") is not None else None
        ),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def project_from_row(row: Mapping[str, Any]) -> Project:
    return Project(
        id=str(row["id"]),
        workspace_id=str(row["workspace_id"]),
        name=str(row["name"]),
        color=str(row.get("color") or ""),
        description=(
            str(row["description"]) if row.get("description") is not None else None
        ),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def folder_from_row(row: Mapping[str, Any], file_count: int = 0) -> Folder:
    return Folder(
        id=str(row["id"]),
        project_id=str(row["project_id"]),
        name=str(row["name"]),
        parent_id=str(row["parent_id"]) if row.get("parent_id") is not None else None,
        path=str(row.get("path") or ""),
        file_count=file_count,
        created_at=parse_timestamp(row.get("created_at")),
    )


def file_from_row(row: Mapping[str, Any]) -> FileRecord:
    category = str(row.get("file_category") or FileCategory.OTHER.value)
    return FileRecord(
        id=str(row["id"]),
        workspace_id=str(row["workspace_id"]),
        name=str(row["name"]),
        original_name=str(row.get("original_name") or row["name"]),
        file_size=int(row.get("file_size") or 0),
        file_type=str(row.get("file_type") or ""),
        file_category=(
            FileCategory(category)
            if category in FileCategory._value2member_map_
            else FileCategory.OTHER
        ),
        file_path=str(row.get("file_path") or ""),
        project_id=(
            str(row["project_id"]) if row.get("project_id") is not None else None
        ),
        folder_id=str(row["folder_id"]) if row.get("folder_id") is not None else None,
        file_url=str(row["file_url"]) if row.get("file_url") else None,
        is_favorite=bool(row.get("is_favorite")),
        tags=tuple(str(tag) for tag in row.get("tags") or ()),
        deleted_at=parse_timestamp(row.get("deleted_at")),
        created_at=parse_timestamp(row.get("created_at")),
        updated_at=parse_timestamp(row.get("updated_at")),
    )


def file_to_row(record: FileRecord) -> Row:
    return {
        "id": record.id,
        "workspace_id": record.workspace_id,
        "project_id": record.project_id,
        "folder_id": record.folder_id,
        "name": record.name,
        "original_name": record.original_name,
        "file_size": record.file_size,
        "file_type": record.file_type,
        "file_category": record.file_category.value,
        "file_path": record.file_path,
        "file_url": record.file_url,
        "is_favorite": record.is_favorite,
        "tags": list(record.tags),
        "deleted_at": format_timestamp(record.deleted_at),
        "created_at": format_timestamp(record.created_at),
        "updated_at": format_timestamp(record.updated_at),
    }
