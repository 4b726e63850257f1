"""Conversation view — what the dashboard shows for one open patient chat.

Opening a view paints the cached window immediately, then revalidates
against the store and keeps two subscriptions running: the newest
`live_window` messages and the patient summary (typing flags, unread).
Older pages are loaded on demand and merged with the live window.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from typing import Any, Callable

from clinicrelay.config import ConversationConfig
from clinicrelay.conversation.cache import ConversationCache
from clinicrelay.conversation.history import ConversationHistory
from clinicrelay.conversation.models import Message, PageCursor
from clinicrelay.conversation.window import LiveWindowState
from clinicrelay.dashboard.typing import TypingLease
from clinicrelay.patients.directory import PatientDirectory
from clinicrelay.patients.summary import PatientSummary
from clinicrelay.store.documents import DocumentStore
from clinicrelay.store.watch import Subscription

logger = logging.getLogger(__name__)


def _window_fingerprint(messages: list[Message]) -> tuple:
    return tuple(
        (m.id, m.text, m.status, m.external_message_id) for m in messages
    )


class ConversationView:
    """One open conversation. Call `close()` when the chat is left."""

    def __init__(
        self,
        store: DocumentStore,
        patient_id: str,
        config: ConversationConfig | None = None,
        cache: ConversationCache | None = None,
        on_update: Callable[[ConversationView], Any] | None = None,
    ) -> None:
        self.patient_id = patient_id
        self.config = config or ConversationConfig()
        self.cache = cache
        self.on_update = on_update
        self.history = ConversationHistory(store)
        self.directory = PatientDirectory(store)
        self.state = LiveWindowState()
        self.patient: PatientSummary | None = None
        self.has_more = False
        self.closed = False
        self._typing = TypingLease(
            partial(store.set_typing, patient_id, "doctor"),
            quiet_period=self.config.typing_quiet_period,
        )
        self._subscriptions: list[Subscription] = []

    @property
    def messages(self) -> list[Message]:
        """Everything currently shown, ascending."""
        return self.state.messages

    @property
    def patient_is_typing(self) -> bool:
        if self.patient is None:
            return False
        return self.patient.user_typing_active(self.config.typing_stale_after)

    async def open(self) -> ConversationView:
        if self.cache is not None:
            cached = self.cache.load(self.patient_id)
            if cached:
                self.state.apply_snapshot(cached, self.config.live_window)
                await self._notify()

        await self.directory.mark_as_read(self.patient_id)

        window = Subscription(
            partial(self.history.fetch_latest, self.patient_id, self.config.live_window),
            self._on_window,
            fingerprint=_window_fingerprint,
            interval=self.config.live_poll_interval,
            name=f"window:{self.patient_id}",
        )
        summary = Subscription(
            partial(self.directory.get, self.patient_id),
            self._on_patient,
            interval=self.config.live_poll_interval,
            name=f"patient:{self.patient_id}",
        )
        # First fetch is awaited so the view is current when open() returns.
        for sub in (window, summary):
            await sub.refresh()
            self._subscriptions.append(sub.start())
        self.has_more = len(self.state.live) >= self.config.live_window
        return self

    async def _on_window(self, snapshot: list[Message]) -> None:
        self.state.apply_snapshot(snapshot, self.config.live_window)
        if self.cache is not None:
            try:
                self.cache.save(self.patient_id, snapshot)
            except OSError as e:
                logger.warning(f"Could not cache conversation {self.patient_id}: {e}")
        await self._notify()

    async def _on_patient(self, patient: PatientSummary | None) -> None:
        self.patient = patient
        if patient is not None and patient.unread_count and not self.closed:
            # Messages arriving while the chat is open count as read.
            await self.directory.mark_as_read(self.patient_id)
        await self._notify()

    async def _notify(self) -> None:
        if self.on_update is None:
            return
        result = self.on_update(self)
        if asyncio.iscoroutine(result):
            await result

    async def load_older(self) -> list[Message]:
        """Fetch the next page older than everything shown."""
        oldest = self.state.oldest
        if oldest is None:
            self.has_more = False
            return []
        page = await self.history.fetch_older_than(
            PageCursor.from_message(oldest), self.config.page_size
        )
        self.state.add_history(page)
        self.has_more = len(page) == self.config.page_size
        await self._notify()
        return page

    def apply_local(self, message: Message) -> None:
        """Show a local write before the live window confirms it."""
        self.state.upsert_local(message)

    def remove_local(self, message_id: str) -> None:
        self.state.remove_local(message_id)

    async def typing(self) -> None:
        """Record a staff keystroke."""
        if not self.closed:
            await self._typing.pulse()

    async def close(self) -> None:
        """Unsubscribe all listeners and lower the staff typing flag."""
        if self.closed:
            return
        self.closed = True
        subscriptions, self._subscriptions = self._subscriptions, []
        for sub in subscriptions:
            await sub.cancel()
        await self._typing.close()
