"""Exceptions raised by catalog operations."""

from __future__ import annotations

from .models import BatchResult, MoveOutcome


class CatalogError(Exception):
    """Base class for catalog failures."""


class InvalidOperationError(CatalogError):
    """Raised when a request is rejected before anything is written."""


class InvalidMoveError(InvalidOperationError):
    """Raised when a folder or file move would break the hierarchy."""

    def __init__(self, outcome: MoveOutcome, message: str) -> None:
        """Initialize InvalidMoveError.

        Args:
            outcome: Validator verdict explaining the rejection.
            message: Human readable description.
        """
        self.outcome = outcome
        super().__init__(message)


class StoreError(CatalogError):
    """Raised when the record store rejects or fails an operation."""


class BatchOperationError(CatalogError):
    """Raised when some items of a multi-item operation failed.

    The items that did succeed stay applied; `result` tells which.
    """

    def __init__(self, action: str, result: BatchResult) -> None:
        """Initialize BatchOperationError.

        Args:
            action: Short verb phrase for the operation (e.g. 'delete').
            result: Per-item outcome of the batch.
        """
        self.action = action
        self.result = result
        message = f"Failed to {action} {len(result.failed)} file(s)"
        if result.skipped:
            message += f", {len(result.skipped)} not attempted"
        super().__init__(message)
