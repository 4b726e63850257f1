"""Outbound execution — performs one claimed task against the channel.

At-least-once with retries: a task is claimed under a lease, executed with
a per-attempt timeout, then either finished (DELIVERED / FAILED) or
released with a backoff delay for the next attempt.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum

from clinicrelay.config import DeliveryConfig
from clinicrelay.conversation.history import ConversationHistory
from clinicrelay.conversation.models import Message, MessageStatus
from clinicrelay.errors import ChannelError, TargetNotFoundError
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.patients.directory import PatientDirectory
from clinicrelay.queue.outbound import OutboundQueue
from clinicrelay.queue.tasks import OutboundTask, TaskAction
from clinicrelay.store.documents import DocumentStore

logger = logging.getLogger(__name__)


class DeliveryResult(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"
    RETRY = "retry"          # Released with a backoff delay
    SKIPPED = "skipped"      # Not claimable: terminal, leased elsewhere, or not due


@dataclass
class DeliveryOutcome:
    """What happened to one task on one delivery pass."""

    task_id: str
    result: DeliveryResult
    attempts: int = 0
    error: str | None = None
    external_message_id: str | None = None
    retry_in: float | None = None


class _OriginGone(Exception):
    """The message a SEND was created for no longer exists."""


class TaskDeliverer:
    """Executes outbound tasks through a channel."""

    def __init__(
        self,
        store: DocumentStore,
        channel: BaseChannel,
        config: DeliveryConfig | None = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.config = config or DeliveryConfig()
        self.queue = OutboundQueue(store)
        self.history = ConversationHistory(store)
        self.directory = PatientDirectory(store)

    def backoff(self, attempts: int) -> float:
        """Delay before the attempt following attempt number `attempts`."""
        delay = self.config.backoff_base * (2 ** max(attempts - 1, 0))
        return min(self.config.backoff_max, delay)

    async def deliver(self, task_id: str) -> DeliveryOutcome:
        task = await self.queue.claim(task_id, self.config.lease_seconds)
        if task is None:
            return DeliveryOutcome(task_id, DeliveryResult.SKIPPED)

        try:
            task.validate()
        except ValueError as e:
            return await self._fail(task, str(e))

        try:
            external_id = await asyncio.wait_for(
                self._execute(task), timeout=self.config.attempt_timeout
            )
        except asyncio.TimeoutError:
            return await self._retry_or_fail(
                task, f"Attempt timed out after {self.config.attempt_timeout:g}s"
            )
        except _OriginGone as e:
            return await self._fail(task, str(e))
        except TargetNotFoundError as e:
            if task.action == TaskAction.DELETE:
                logger.info(f"Task {task.id}: message already gone on the channel")
                return await self._succeed(task)
            return await self._fail(task, str(e))
        except ChannelError as e:
            if e.retryable:
                return await self._retry_or_fail(task, str(e))
            return await self._fail(task, str(e))
        except Exception as e:
            logger.exception(f"Task {task.id}: unexpected error during {task.action.value}")
            return await self._retry_or_fail(task, f"{type(e).__name__}: {e}")

        return await self._succeed(task, external_id)

    # ─── Actions ─────────────────────────────────────────────────

    async def _execute(self, task: OutboundTask) -> str | None:
        identity = task.target_channel_identity
        if task.action == TaskAction.SEND:
            return await self._send(task)
        if task.action == TaskAction.EDIT:
            await self.channel.edit_text(identity, task.external_message_id, task.text)
            return task.external_message_id
        await self.channel.delete_message(identity, task.external_message_id)
        return task.external_message_id

    async def _send(self, task: OutboundTask) -> str:
        message = await self.history.get(task.patient_id, task.originating_message_id)
        if message is None:
            raise _OriginGone(f"Message {task.originating_message_id} was deleted before sending")
        if message.external_message_id:
            # Sent on an earlier attempt whose outcome was never recorded.
            logger.info(f"Task {task.id}: message already sent as #{message.external_message_id}")
            return message.external_message_id

        # Text edited before delivery goes out in its current form.
        text = message.text if message.text is not None else task.text
        identity = task.target_channel_identity
        if task.image_url:
            external_id = await self.channel.send_image(identity, task.image_url, caption=text)
        elif task.voice_url:
            external_id = await self.channel.send_voice(identity, task.voice_url)
        else:
            external_id = await self.channel.send_text(
                identity, text, reply_to=task.reply_to_external_id
            )
        await self._record_sent(message, external_id)
        return external_id

    async def _record_sent(self, message: Message, external_id: str) -> None:
        """Link the local message to its channel copy."""
        await self.store.set_external_message_id(message.patient_id, message.id, external_id)
        await self.history.advance_status(message.patient_id, message.id, MessageStatus.DELIVERED)
        if message.scheduled_for:
            await self.directory.record_preview(message)

    # ─── Outcomes ────────────────────────────────────────────────

    async def _succeed(self, task: OutboundTask, external_id: str | None = None) -> DeliveryOutcome:
        await self.queue.mark_delivered(task.id)
        logger.info(f"Delivered {task.action.value} task {task.id} (attempt {task.attempts})")
        return DeliveryOutcome(
            task.id, DeliveryResult.DELIVERED, task.attempts, external_message_id=external_id
        )

    async def _fail(self, task: OutboundTask, error: str) -> DeliveryOutcome:
        await self.queue.mark_failed(task.id, error)
        logger.error(f"{task.action.value} task {task.id} failed: {error}")
        return DeliveryOutcome(task.id, DeliveryResult.FAILED, task.attempts, error)

    async def _retry_or_fail(self, task: OutboundTask, error: str) -> DeliveryOutcome:
        if task.attempts >= self.config.max_attempts:
            return await self._fail(task, f"{error} (gave up after {task.attempts} attempts)")
        delay = self.backoff(task.attempts)
        await self.queue.retry_later(task.id, error, delay)
        logger.warning(f"Task {task.id} attempt {task.attempts} failed, retrying in {delay:.1f}s: {error}")
        return DeliveryOutcome(task.id, DeliveryResult.RETRY, task.attempts, error, retry_in=delay)
