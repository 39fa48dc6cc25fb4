from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
from typing import Protocol

logger = logging.getLogger(__name__)


class ObjectStorage(Protocol):
    async def remove(self, path: str) -> None: ...


class MemoryObjectStorage:
    def __init__(self, paths: set[str] | None = None) -> None:
        self.objects: set[str] = set(paths or ())
        self.failures: dict[str, Exception] = {}
        self.removed: list[str] = []

    async def remove(self, path: str) -> None:
        await asyncio.sleep(0)
        failure = self.failures.get(path)
        if failure is not None:
            raise failure
        if path not in self.objects:
            raise FileNotFoundError(path)
        self.objects.discard(path)
        self.removed.append(path)


class LocalObjectStorage:
    """Backing objects kept as plain files under `root`."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser().resolve()

    def _resolve(self, path: str) -> Path:
        relpath = PurePosixPath(path)
        if relpath.is_absolute() or ".." in relpath.parts:
            raise ValueError(f"object path escapes storage root: {path}")
        return self.root.joinpath(*relpath.parts)

    async def remove(self, path: str) -> None:
        target = self._resolve(path)
        await asyncio.to_thread(target.unlink)
        logger.info("Removed stored object: %s", target)
