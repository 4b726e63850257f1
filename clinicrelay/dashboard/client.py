"""Dashboard client — the staff-facing side of the shared store.

Every operation persists locally first and only then enqueues an outbound
task. Local persistence and external delivery are separate failure
domains: a message can be saved even when it cannot be queued, and the
caller learns which through `SyncResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

import aiosqlite

from clinicrelay.config import ConversationConfig
from clinicrelay.conversation.cache import ConversationCache
from clinicrelay.conversation.history import ConversationHistory
from clinicrelay.conversation.models import (
    Message,
    MessageStatus,
    Sender,
    to_iso,
    utc_now_iso,
)
from clinicrelay.dashboard.view import ConversationView
from clinicrelay.delivery.formatter import clinic_timezone, format_display_time, format_preview
from clinicrelay.errors import MissingConnectionError
from clinicrelay.patients.directory import PatientDirectory
from clinicrelay.patients.summary import PatientSummary
from clinicrelay.queue.outbound import OutboundQueue, delete_task, edit_task, send_task
from clinicrelay.queue.tasks import OutboundTask
from clinicrelay.store.documents import DocumentStore

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    """Outcome of a dashboard write.

    `saved` covers the local store, `queued` the outbound task. `error_code`
    is one of "missing_connection", "queue_failed", "not_found", "invalid".
    """

    message: Message | None = None
    saved: bool = False
    queued: bool = False
    task_id: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.saved and self.error is None


class DashboardClient:
    """Compose, edit and delete staff messages; open conversation views."""

    def __init__(
        self,
        store: DocumentStore,
        config: ConversationConfig | None = None,
        cache: ConversationCache | None = None,
    ) -> None:
        self.store = store
        self.config = config or ConversationConfig()
        self.cache = cache
        self.tz = clinic_timezone(self.config.timezone)
        self.history = ConversationHistory(store)
        self.directory = PatientDirectory(store)
        self.queue = OutboundQueue(store)
        self._views: dict[str, ConversationView] = {}

    # ─── Writes ──────────────────────────────────────────────────

    async def compose(
        self,
        patient_id: str,
        text: str | None = None,
        image: str | None = None,
        voice: str | None = None,
        reply_to: str | None = None,
        scheduled_for: datetime | str | None = None,
    ) -> SyncResult:
        """Save a staff message, then queue it for the patient's channel."""
        patient = await self.directory.get(patient_id)
        if patient is None:
            return SyncResult(error=f"Unknown patient {patient_id}", error_code="not_found")

        reply_snapshot = None
        reply_external_id = None
        if reply_to:
            replied = await self.history.get(patient_id, reply_to)
            if replied is not None:
                reply_snapshot = {
                    "id": replied.id,
                    "text": format_preview(replied),
                    "sender": replied.sender.value,
                }
                reply_external_id = replied.external_message_id

        if isinstance(scheduled_for, datetime):
            scheduled_for = to_iso(scheduled_for)

        created_at = utc_now_iso()
        message = Message(
            patient_id=patient_id,
            sender=Sender.STAFF,
            created_at=created_at,
            time=format_display_time(created_at, self.tz),
            text=text,
            image=image,
            voice=voice,
            status=MessageStatus.SENT,
            reply_to=reply_snapshot,
            scheduled_for=scheduled_for,
        )
        try:
            await self.history.append(message)
        except ValueError as e:
            return SyncResult(error=str(e), error_code="invalid")

        if not scheduled_for:
            await self.directory.record_preview(message)
        self._apply_to_view(message)

        try:
            task = send_task(patient, message, reply_external_id)
        except MissingConnectionError as e:
            logger.warning(f"Message {message.id} saved but not sent: {e}")
            return SyncResult(message, saved=True, error=str(e), error_code="missing_connection")
        return await self._enqueue(message, task)

    async def edit_message(self, patient_id: str, message_id: str, text: str) -> SyncResult:
        """Replace a staff message's text; mirror it externally when possible."""
        message = await self.history.get(patient_id, message_id)
        if message is None:
            return SyncResult(error=f"Message {message_id} not found", error_code="not_found")
        if message.sender != Sender.STAFF or message.primary_kind != "text":
            return SyncResult(message, error="Only staff text messages can be edited", error_code="invalid")
        if not text or not text.strip():
            return SyncResult(message, error="Message text cannot be empty", error_code="invalid")

        await self.history.edit_text(patient_id, message_id, text)
        message.text = text
        await self._refresh_preview(patient_id)
        self._apply_to_view(message)

        # Without an external id there is nothing to edit on the channel.
        if not message.can_sync_externally:
            return SyncResult(message, saved=True)

        patient = await self.directory.get(patient_id)
        try:
            task = edit_task(self._require(patient, patient_id), message, text)
        except MissingConnectionError as e:
            return SyncResult(message, saved=True, error=str(e), error_code="missing_connection")
        return await self._enqueue(message, task)

    async def delete_message(self, patient_id: str, message_id: str) -> SyncResult:
        """Delete a message. Deleting an already-deleted message succeeds."""
        message = await self.history.get(patient_id, message_id)
        if message is None:
            return SyncResult(saved=True)

        await self.history.delete(patient_id, message_id)
        await self.queue.withdraw_send(message_id)
        await self._refresh_preview(patient_id)
        view = self._view(patient_id)
        if view is not None:
            view.remove_local(message_id)

        # Either side's message can be removed from the chat once it has an external id.
        if not message.can_sync_externally:
            return SyncResult(message, saved=True)

        patient = await self.directory.get(patient_id)
        try:
            task = delete_task(self._require(patient, patient_id), message)
        except MissingConnectionError as e:
            return SyncResult(message, saved=True, error=str(e), error_code="missing_connection")
        return await self._enqueue(message, task)

    async def _enqueue(self, message: Message, task: OutboundTask) -> SyncResult:
        try:
            task_id = await self.queue.enqueue(task)
        except (aiosqlite.Error, ValueError) as e:
            logger.error(f"Could not queue {task.action.value} for message {message.id}: {e}")
            return SyncResult(message, saved=True, error=str(e), error_code="queue_failed")
        return SyncResult(message, saved=True, queued=True, task_id=task_id)

    @staticmethod
    def _require(patient: PatientSummary | None, patient_id: str) -> PatientSummary:
        if patient is None:
            raise MissingConnectionError(patient_id)
        return patient

    async def _refresh_preview(self, patient_id: str) -> None:
        await self.directory.refresh_preview(patient_id, await self.history.latest(patient_id))

    # ─── Reads ───────────────────────────────────────────────────

    async def delivery_state(self, message_id: str) -> str:
        """One of "pending", "delivered", "failed" or "local_only"."""
        task = await self.queue.status_for_message(message_id)
        if task is None:
            return "local_only"
        return task.status.value.lower()

    async def open_conversation(self, patient_id: str, on_update=None) -> ConversationView:
        existing = self._view(patient_id)
        if existing is not None:
            return existing
        view = ConversationView(
            self.store, patient_id, self.config, cache=self.cache, on_update=on_update
        )
        await view.open()
        self._views[patient_id] = view
        return view

    def _view(self, patient_id: str) -> ConversationView | None:
        view = self._views.get(patient_id)
        if view is not None and view.closed:
            del self._views[patient_id]
            return None
        return view

    def _apply_to_view(self, message: Message) -> None:
        view = self._view(message.patient_id)
        if view is not None:
            view.apply_local(message)

    async def close(self) -> None:
        """Close every open conversation view."""
        views, self._views = list(self._views.values()), {}
        for view in views:
            await view.close()
