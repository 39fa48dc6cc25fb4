from __future__ import annotations

from collections.abc import Mapping

from .errors import InvalidMoveError
from .models import Folder, MoveOutcome

_MESSAGES = {
    MoveOutcome.NOOP: "Folder is already there",
    MoveOutcome.INTO_SELF: "Cannot move a folder into itself",
    MoveOutcome.INTO_DESCENDANT: "Cannot move a folder into one of its subfolders",
    MoveOutcome.UNKNOWN_FOLDER: "Unknown folder",
    MoveOutcome.CROSS_PROJECT: "Destination folder belongs to another project",
    MoveOutcome.UNKNOWN_PROJECT: "Unknown project",
    MoveOutcome.CORRUPT_HIERARCHY: "Folder hierarchy contains a cycle",
}


def describe(outcome: MoveOutcome) -> str:
    return _MESSAGES.get(outcome, "Move allowed")


class MoveValidator:
    """Decides whether a structural change keeps the hierarchy valid.

    `folders` is the set of known folders keyed by id, usually the ones of
    one project. Checks never write anything.
    """

    def __init__(self, folders: Mapping[str, Folder]) -> None:
        self.folders = folders

    def is_ancestor(self, ancestor_id: str, folder_id: str | None) -> bool:
        """Return True if `ancestor_id` is on the parent chain of `folder_id`.

        The walk is bounded by the number of known folders; a chain longer
        than that can only be a cycle and raises InvalidMoveError.
        """
        current = folder_id
        visited: set[str] = set()
        while current is not None:
            if current == ancestor_id:
                return True
            if current in visited or len(visited) > len(self.folders):
                raise InvalidMoveError(
                    MoveOutcome.CORRUPT_HIERARCHY,
                    f"Folder hierarchy contains a cycle at {current}",
                )
            visited.add(current)
            folder = self.folders.get(current)
            if folder is None:
                return False
            current = folder.parent_id
        return False

    def check_folder_move(self, folder_id: str, new_parent_id: str | None) -> MoveOutcome:
        folder = self.folders.get(folder_id)
        if folder is None:
            return MoveOutcome.UNKNOWN_FOLDER
        if new_parent_id == folder_id:
            return MoveOutcome.INTO_SELF
        if new_parent_id == folder.parent_id:
            return MoveOutcome.NOOP
        if new_parent_id is None:
            return MoveOutcome.OK

        target = self.folders.get(new_parent_id)
        if target is None:
            return MoveOutcome.UNKNOWN_FOLDER
        if target.project_id != folder.project_id:
            return MoveOutcome.CROSS_PROJECT
        try:
            if self.is_ancestor(folder_id, new_parent_id):
                return MoveOutcome.INTO_DESCENDANT
        except InvalidMoveError as exc:
            return exc.outcome
        return MoveOutcome.OK

    def validate_folder_move(self, folder_id: str, new_parent_id: str | None) -> bool:
        """Raise InvalidMoveError for illegal moves.

        Returns False for a no-op move (nothing to write), True otherwise.
        """
        outcome = self.check_folder_move(folder_id, new_parent_id)
        if outcome is MoveOutcome.NOOP:
            return False
        if not outcome.allowed:
            raise InvalidMoveError(outcome, describe(outcome))
        return True

    def check_file_move(self, project_id: str | None, folder_id: str | None) -> MoveOutcome:
        if folder_id is None:
            return MoveOutcome.OK
        folder = self.folders.get(folder_id)
        if folder is None:
            return MoveOutcome.UNKNOWN_FOLDER
        if project_id is None or folder.project_id != project_id:
            return MoveOutcome.CROSS_PROJECT
        return MoveOutcome.OK

    def validate_file_destination(
        self, project_id: str | None, folder_id: str | None
    ) -> None:
        outcome = self.check_file_move(project_id, folder_id)
        if not outcome.allowed:
            raise InvalidMoveError(outcome, describe(outcome))
