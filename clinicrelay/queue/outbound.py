"""Outbound task queue — the only path from the dashboard to the channel.

Producers enqueue and move on; they never wait for delivery. The relay
worker claims due tasks, and each task ends DELIVERED or FAILED.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from clinicrelay.conversation.models import Message, to_iso, utc_now_iso
from clinicrelay.errors import MissingConnectionError
from clinicrelay.patients.summary import PatientSummary
from clinicrelay.queue.tasks import OutboundTask, TaskAction, TaskStatus
from clinicrelay.store.documents import DocumentStore

logger = logging.getLogger(__name__)


def send_task(
    patient: PatientSummary,
    message: Message,
    reply_to_external_id: str | None = None,
) -> OutboundTask:
    """Build a SEND task for a freshly persisted staff message."""
    if not patient.is_connected:
        raise MissingConnectionError(patient.id)
    return OutboundTask(
        target_channel_identity=str(patient.channel_identity),
        action=TaskAction.SEND,
        originating_message_id=message.id,
        patient_id=patient.id,
        text=message.text,
        image_url=message.image,
        voice_url=message.voice,
        reply_to_external_id=reply_to_external_id,
        not_before=message.scheduled_for,
    )


def edit_task(patient: PatientSummary, message: Message, text: str) -> OutboundTask:
    """Build an EDIT task. The message must carry an external id."""
    if not message.external_message_id:
        raise ValueError("Cannot edit externally: message has no external id")
    if not patient.is_connected:
        raise MissingConnectionError(patient.id)
    return OutboundTask(
        target_channel_identity=str(patient.channel_identity),
        action=TaskAction.EDIT,
        originating_message_id=message.id,
        patient_id=patient.id,
        text=text,
        external_message_id=message.external_message_id,
    )


def delete_task(patient: PatientSummary, message: Message) -> OutboundTask:
    """Build a DELETE task. The message must carry an external id."""
    if not message.external_message_id:
        raise ValueError("Cannot delete externally: message has no external id")
    if not patient.is_connected:
        raise MissingConnectionError(patient.id)
    return OutboundTask(
        target_channel_identity=str(patient.channel_identity),
        action=TaskAction.DELETE,
        originating_message_id=message.id,
        patient_id=patient.id,
        external_message_id=message.external_message_id,
    )


class OutboundQueue:
    """Producer and consumer operations over `outbound_tasks`."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    # ─── Producer side ───────────────────────────────────────────

    async def enqueue(self, task: OutboundTask) -> str:
        """Persist a PENDING task and return its id. Does not wait for delivery."""
        task.validate()
        task.status = TaskStatus.PENDING
        await self.store.insert_task(task)
        logger.info(f"Queued {task.action.value} task {task.id} for message {task.originating_message_id}")
        return task.id

    async def withdraw_send(self, message_id: str) -> int:
        """Cancel a not-yet-claimed SEND for a message that was deleted locally."""
        removed = await self.store.withdraw_pending_send(message_id, utc_now_iso())
        if removed:
            logger.info(f"Withdrew {removed} pending SEND task(s) for message {message_id}")
        return removed

    async def status_for_message(self, message_id: str) -> OutboundTask | None:
        return await self.store.task_for_message(message_id, TaskAction.SEND)

    # ─── Consumer side ───────────────────────────────────────────

    async def due(self, limit: int = 20) -> list[str]:
        return await self.store.due_task_ids(utc_now_iso(), limit)

    async def claim(self, task_id: str, lease_seconds: float) -> OutboundTask | None:
        now = datetime.now(timezone.utc)
        return await self.store.claim_task(
            task_id, to_iso(now), to_iso(now + timedelta(seconds=lease_seconds))
        )

    async def mark_delivered(self, task_id: str) -> bool:
        return await self.store.finish_task(task_id, TaskStatus.DELIVERED)

    async def mark_failed(self, task_id: str, error: str) -> bool:
        return await self.store.finish_task(task_id, TaskStatus.FAILED, error)

    async def retry_later(self, task_id: str, error: str, delay: float) -> bool:
        not_before = to_iso(datetime.now(timezone.utc) + timedelta(seconds=delay))
        return await self.store.release_task(task_id, error, not_before)
