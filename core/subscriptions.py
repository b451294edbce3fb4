"""SubscriptionRegistry -- in-process fan-out of published snapshots.

Every subscriber receives the same Snapshot object. A failing callback is
logged and never prevents delivery to the others.
"""

from __future__ import annotations

import asyncio
import inspect
import itertools
import logging
from typing import Callable

from core.models.market import Snapshot
from core.protocols import SnapshotCallback

logger = logging.getLogger(__name__)

Hook = Callable[[], None]

_handle_ids = itertools.count(1)


class SubscriberHandle:
    """Cancellation token returned by subscribe()."""

    __slots__ = ("id", "callback", "active")

    def __init__(self, callback: SnapshotCallback) -> None:
        self.id = next(_handle_ids)
        self.callback = callback
        self.active = True

    def __repr__(self) -> str:
        state = "active" if self.active else "cancelled"
        return f"SubscriberHandle(id={self.id}, {state})"


class SubscriptionRegistry:
    """Explicit observer list with activation hooks.

    Usage:
        registry = SubscriptionRegistry(on_active=scheduler.start, on_idle=scheduler.cancel)
        handle = registry.subscribe(my_callback)
        await registry.notify(snapshot)
        registry.unsubscribe(handle)
    """

    def __init__(self, on_active: Hook | None = None, on_idle: Hook | None = None) -> None:
        self._handles: list[SubscriberHandle] = []
        self._on_active = on_active
        self._on_idle = on_idle

    @property
    def count(self) -> int:
        return len(self._handles)

    def subscribe(self, callback: SnapshotCallback) -> SubscriberHandle:
        handle = SubscriberHandle(callback)
        self._handles.append(handle)
        logger.debug("Subscribed %r (%d total)", handle, len(self._handles))
        if len(self._handles) == 1 and self._on_active is not None:
            self._on_active()
        return handle

    def unsubscribe(self, handle: SubscriberHandle) -> None:
        """Remove a subscriber. A second call with the same handle is a no-op."""
        if not handle.active or handle not in self._handles:
            handle.active = False
            return
        handle.active = False
        self._handles.remove(handle)
        logger.debug("Unsubscribed %r (%d left)", handle, len(self._handles))
        if not self._handles and self._on_idle is not None:
            self._on_idle()

    async def notify(self, snapshot: Snapshot) -> int:
        """Deliver a snapshot to every current subscriber.

        Returns the number of callbacks that completed without error.
        """
        handles = list(self._handles)
        if not handles:
            logger.debug("No subscribers for snapshot %s", snapshot.captured_at.isoformat())
            return 0

        results = await asyncio.gather(
            *(self._safe_invoke(h, snapshot) for h in handles),
        )
        return sum(1 for ok in results if ok)

    async def deliver(self, handle: SubscriberHandle, snapshot: Snapshot) -> bool:
        """Deliver a snapshot to a single subscriber (initial cached replay)."""
        if not handle.active:
            return False
        return await self._safe_invoke(handle, snapshot)

    async def _safe_invoke(self, handle: SubscriberHandle, snapshot: Snapshot) -> bool:
        """Invoke a callback, catching and logging any exceptions."""
        try:
            result = handle.callback(snapshot)
            if inspect.isawaitable(result):
                await result
            return True
        except Exception:
            logger.exception("Error in snapshot subscriber %r", handle)
            return False
