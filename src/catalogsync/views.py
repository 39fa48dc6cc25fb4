from __future__ import annotations

import logging
from dataclasses import dataclass

from .file_collection import FileCollection
from .folder_tree import FolderTree
from .invalidation import InvalidationSignal
from .models import Scope

logger = logging.getLogger(__name__)


@dataclass
class CatalogView:
    """A screen showing one file collection and, optionally, a folder tree.

    `activate` is what a view calls when it regains focus: it reloads only
    when some mutation happened since the signal was last cleared.
    """

    name: str
    signal: InvalidationSignal
    collection: FileCollection
    tree: FolderTree | None = None
    last_refresh_at: float | None = None

    async def activate(self, *, force: bool = False) -> bool:
        if not force and not self.signal.is_dirty():
            return False
        logger.debug("View %s refreshing (forced=%s)", self.name, force)
        if self.tree is not None:
            await self.tree.reload()
        if not await self.collection.reload():
            logger.debug("View %s reload was superseded, signal left dirty", self.name)
            return False
        self.signal.clear()
        self.last_refresh_at = self.signal.marked_at
        return True

    async def change_scope(self, scope: Scope) -> bool:
        """Follow a workspace/project/folder selection change."""
        if scope.project_id is None:
            self.tree = None
        elif self.tree is None or self.tree.project_id != scope.project_id:
            self.tree = FolderTree(self.collection.store, scope.project_id, self.signal)
            await self.tree.reload()
        if self.tree is not None:
            self.tree.navigate(scope.folder_id)
        return await self.collection.set_scope(scope)
