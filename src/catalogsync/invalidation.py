from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import TypeAlias

logger = logging.getLogger(__name__)

DirtyListener: TypeAlias = Callable[[float], None]


class InvalidationSignal:
    """Shared "something changed" flag handed to every mutating component.

    There is no lock: a racing `clear` only costs one extra reload.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._dirty = False
        self._marked_at: float | None = None
        self._listeners: list[DirtyListener] = []

    def mark_dirty(self, reason: str = "") -> None:
        self._dirty = True
        self._marked_at = self._clock()
        logger.debug("Catalog marked dirty at %.3f (%s)", self._marked_at, reason)
        for listener in list(self._listeners):
            try:
                listener(self._marked_at)
            except Exception:
                logger.exception("Invalidation listener failed")

    def is_dirty(self) -> bool:
        return self._dirty

    @property
    def marked_at(self) -> float | None:
        return self._marked_at

    def clear(self) -> None:
        self._dirty = False

    def consume(self) -> bool:
        """Return the dirty flag and clear it in one step."""
        dirty = self._dirty
        self._dirty = False
        return dirty

    def subscribe(self, listener: DirtyListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe
