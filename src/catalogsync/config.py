from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields, replace
from pathlib import Path

DEFAULT_PAGE_SIZE = 20
RELOAD_COALESCE_SECONDS = 0.05
TAG_BATCH_SIZE = 20
TAG_BATCH_DELAY_SECONDS = 0.05
RECENT_DAYS = 7

DEFAULT_WORKSPACE_NAME = "My Workspace"
DEFAULT_WORKSPACE_DESCRIPTION = "Default workspace for your files"
DEFAULT_COLOR = "#3B82F6"

DEFAULT_CATALOG_DB = "~/.catalogsync/catalog.sqlite3"
DEFAULT_OBJECT_ROOT = "~/.catalogsync/objects"
DEFAULT_SETTINGS_FILE = "~/.catalogsync/config.toml"


@dataclass(frozen=True)
class CatalogSettings:
    page_size: int = DEFAULT_PAGE_SIZE
    reload_coalesce_seconds: float = RELOAD_COALESCE_SECONDS
    tag_batch_size: int = TAG_BATCH_SIZE
    tag_batch_delay_seconds: float = TAG_BATCH_DELAY_SECONDS
    recent_days: int = RECENT_DAYS
    catalog_db: str = DEFAULT_CATALOG_DB
    object_root: str = DEFAULT_OBJECT_ROOT

    @property
    def catalog_db_path(self) -> Path:
        return Path(self.catalog_db).expanduser()

    @property
    def object_root_path(self) -> Path:
        return Path(self.object_root).expanduser()


def load_settings(path: Path | None = None) -> CatalogSettings:
    """Read `[catalog]` overrides from a TOML file on top of the defaults.

    A missing file yields the defaults. Unknown keys are rejected so typos do
    not silently fall back to a default.
    """
    settings = CatalogSettings()
    resolved = (path or Path(DEFAULT_SETTINGS_FILE)).expanduser()
    if not resolved.exists():
        return settings

    data = tomllib.loads(resolved.read_text(encoding="utf-8"))
    section = data.get("catalog", {})
    known = {item.name for item in fields(CatalogSettings)}
    unknown = sorted(set(section) - known)
    if unknown:
        raise ValueError(f"Unknown catalog settings in {resolved}: {', '.join(unknown)}")

    overrides: dict[str, object] = {}
    for key, value in section.items():
        overrides[key] = type(getattr(settings, key))(value)

    if overrides.get("page_size", settings.page_size) < 1:
        raise ValueError("page_size must be at least 1")
    if overrides.get("tag_batch_size", settings.tag_batch_size) < 1:
        raise ValueError("tag_batch_size must be at least 1")
    return replace(settings, **overrides)
