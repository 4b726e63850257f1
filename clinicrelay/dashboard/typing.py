"""Typing-indicator lease.

A typing flag is an advisory lease: raised on the first keystroke, lowered
after a quiet period with no further keystrokes. Used for both sides of a
conversation (staff in the dashboard, patients in the relay worker).
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class TypingLease:
    """Debounced writer for one boolean typing flag.

    `write(True)` happens once when the lease starts; each `pulse()` pushes
    the `write(False)` deadline back to `quiet_period` seconds after it.
    While the lease stays up longer than `quiet_period`, pulses re-write
    True so readers that ignore stale flags keep seeing it.
    """

    def __init__(
        self,
        write: Callable[[bool], Awaitable[None]],
        quiet_period: float = 3.0,
    ) -> None:
        self._write = write
        self.quiet_period = quiet_period
        self._active = False
        self._raised_at = 0.0
        self._timer: asyncio.Task | None = None

    @property
    def active(self) -> bool:
        return self._active

    async def pulse(self) -> None:
        """Record a keystroke."""
        self._cancel_timer()
        now = time.monotonic()
        if not self._active or now - self._raised_at >= self.quiet_period:
            self._active = True
            self._raised_at = now
            await self._write(True)
        self._timer = asyncio.create_task(self._expire())

    async def _expire(self) -> None:
        await asyncio.sleep(self.quiet_period)
        self._timer = None
        self._active = False
        try:
            await self._write(False)
        except Exception as e:
            logger.warning(f"Could not clear typing flag: {e}")

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def close(self) -> None:
        """Cancel the pending timer and lower an active flag before returning."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        if self._active:
            self._active = False
            await self._write(False)
