"""Push-style subscriptions over the shared store.

The store has no cross-process notifications, so a watcher polls a fetch
function and fires its callback only when the result actually changes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Subscription(Generic[T]):
    """A live listener. Call `cancel()` to stop it."""

    def __init__(
        self,
        fetch: Callable[[], Awaitable[T]],
        on_change: Callable[[T], Any],
        fingerprint: Callable[[T], Any] = repr,
        interval: float = 1.0,
        name: str = "subscription",
    ) -> None:
        self._fetch = fetch
        self._on_change = on_change
        self._fingerprint = fingerprint
        self.interval = interval
        self.name = name
        self._last: Any = object()
        self._task: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> Subscription[T]:
        if not self.active:
            self._task = asyncio.create_task(self._run(), name=self.name)
        return self

    async def refresh(self) -> bool:
        """Fetch once and notify if changed. Returns True when a change was delivered."""
        value = await self._fetch()
        marker = self._fingerprint(value)
        if marker == self._last:
            return False
        self._last = marker
        result = self._on_change(value)
        if asyncio.iscoroutine(result):
            await result
        return True

    async def _run(self) -> None:
        while True:
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"{self.name}: refresh failed: {e}")
            await asyncio.sleep(self.interval)

    async def cancel(self) -> None:
        """Stop polling and wait for the loop to exit."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
