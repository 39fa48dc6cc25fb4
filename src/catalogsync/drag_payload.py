"""Text payloads exchanged by drag gestures between catalog widgets."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

from .errors import InvalidOperationError
from .file_collection import FileCollection
from .folder_tree import FolderTree
from .models import BatchResult

logger = logging.getLogger(__name__)

FILES_PREFIX = "files:"
FOLDER_PREFIX = "folder:"


@dataclass(frozen=True)
class DragPayload:
    kind: str
    ids: tuple[str, ...]

    @property
    def is_folder(self) -> bool:
        return self.kind == "folder"


def encode_files(file_ids: list[str] | tuple[str, ...]) -> str:
    if not file_ids:
        raise InvalidOperationError("Nothing to drag")
    return FILES_PREFIX + json.dumps(list(file_ids))


def encode_folder(folder_id: str) -> str:
    if not folder_id:
        raise InvalidOperationError("Nothing to drag")
    return FOLDER_PREFIX + folder_id


def decode(payload: str) -> DragPayload:
    if payload.startswith(FILES_PREFIX):
        try:
            ids = json.loads(payload[len(FILES_PREFIX) :])
        except json.JSONDecodeError as exc:
            raise InvalidOperationError(f"Malformed file drag payload: {exc}") from exc
        if (
            not isinstance(ids, list)
            or not ids
            or not all(isinstance(item, str) and item for item in ids)
        ):
            raise InvalidOperationError("File drag payload must be a list of ids")
        return DragPayload("files", tuple(dict.fromkeys(ids)))
    if payload.startswith(FOLDER_PREFIX):
        folder_id = payload[len(FOLDER_PREFIX) :].strip()
        if not folder_id:
            raise InvalidOperationError("Folder drag payload has no id")
        return DragPayload("folder", (folder_id,))
    raise InvalidOperationError(f"Unknown drag payload: {payload[:32]!r}")


async def dispatch_drop(
    payload: str,
    *,
    tree: FolderTree,
    collection: FileCollection,
    target_folder_id: str | None,
) -> bool | BatchResult:
    """Apply a drop on a folder of `tree` (None for the project root).

    Folder payloads become a folder move, file payloads a batch file move
    into the same project.
    """
    decoded = decode(payload)
    if decoded.is_folder:
        logger.debug("Dropping folder %s on %s", decoded.ids[0], target_folder_id)
        return await tree.move(decoded.ids[0], target_folder_id)
    logger.debug("Dropping %d files on %s", len(decoded.ids), target_folder_id)
    return await collection.batch_move(decoded.ids, tree.project_id, target_folder_id)
