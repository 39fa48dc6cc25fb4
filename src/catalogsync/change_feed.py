from __future__ import annotations

import asyncio
import contextvars
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeAlias

logger = logging.getLogger(__name__)

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str
    row_id: str
    workspace_id: str | None


ChangeCallback: TypeAlias = Callable[[ChangeEvent], None]


class Subscription:
    def __init__(
        self,
        feed: ChangeFeed,
        key: tuple[str, str],
        callback: ChangeCallback,
    ) -> None:
        self._feed = feed
        self.key = key
        self.callback = callback
        self.closed = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)


class ChangeFeed:
    """Row-level change notifications scoped by table and workspace.

    Delivery is best-effort and happens on a later loop iteration, never
    inside the publisher's call stack.
    """

    def __init__(self) -> None:
        self._subscribers: dict[tuple[str, str], list[Subscription]] = {}

    def subscribe(
        self, table: str, workspace_id: str, callback: ChangeCallback
    ) -> Subscription:
        key = (table, workspace_id)
        subscription = Subscription(self, key, callback)
        self._subscribers.setdefault(key, []).append(subscription)
        return subscription

    def subscriber_count(self, table: str, workspace_id: str) -> int:
        return len(self._subscribers.get((table, workspace_id), ()))

    def publish(self, event: ChangeEvent) -> int:
        if event.workspace_id is None:
            return 0
        targets = list(self._subscribers.get((event.table, event.workspace_id), ()))
        if not targets:
            return 0
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            loop = None
        for subscription in targets:
            if loop is None:
                self._deliver(subscription, event)
            else:
                # subscribers never inherit the publisher's context, open
                # store transactions included
                loop.call_soon(
                    self._deliver, subscription, event, context=contextvars.Context()
                )
        return len(targets)

    def _deliver(self, subscription: Subscription, event: ChangeEvent) -> None:
        if subscription.closed:
            return
        try:
            subscription.callback(event)
        except Exception:
            logger.exception(
                "Change subscriber failed for %s %s/%s",
                event.kind,
                event.table,
                event.row_id,
            )

    def _remove(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.key)
        if not subscribers:
            return
        if subscription in subscribers:
            subscribers.remove(subscription)
        if not subscribers:
            self._subscribers.pop(subscription.key, None)
