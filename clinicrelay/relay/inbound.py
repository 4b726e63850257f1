"""Inbound ingestion — turns channel events into conversation messages.

Pipeline per event: resolve the sender to a patient, screen the content,
publish attachments to durable storage, then persist the message together
with the patient summary update in one transaction.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from functools import partial

from clinicrelay.conversation.history import ConversationHistory
from clinicrelay.conversation.models import Message, MessageStatus, Sender, utc_now_iso
from clinicrelay.dashboard.typing import TypingLease
from clinicrelay.delivery.formatter import clinic_timezone, format_display_time, format_preview
from clinicrelay.errors import ChannelError, MediaPublishError
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.gateway.message import InboundEvent
from clinicrelay.patients.directory import PatientDirectory
from clinicrelay.patients.summary import PatientSummary
from clinicrelay.relay.media import MediaPublisher
from clinicrelay.relay.safety import ContentSafetyGate
from clinicrelay.store.documents import DocumentStore

logger = logging.getLogger(__name__)


class IngestStatus(str, Enum):
    STORED = "stored"        # A message was persisted
    DROPPED = "dropped"      # Sender is not a known patient
    REJECTED = "rejected"    # Failed the content-safety gate
    FAILED = "failed"        # Attachment could not be published
    IGNORED = "ignored"      # Nothing to persist (unsupported payload)
    LINKED = "linked"        # Contact card linked an identity to a patient
    UPDATED = "updated"      # Typing flag or message status changed


@dataclass
class IngestResult:
    """Outcome of ingesting one event."""

    status: IngestStatus
    patient_id: str | None = None
    message: Message | None = None
    reason: str = ""

    @property
    def stored(self) -> bool:
        return self.status == IngestStatus.STORED


class InboundIngestor:
    """Processes inbound events one at a time, in channel order."""

    def __init__(
        self,
        store: DocumentStore,
        channel: BaseChannel,
        publisher: MediaPublisher,
        gate: ContentSafetyGate | None = None,
        typing_quiet_period: float = 3.0,
        timezone: str = "UTC",
        link_replies: tuple[str, str] | None = None,
    ) -> None:
        self.store = store
        self.channel = channel
        self.publisher = publisher
        self.gate = gate or ContentSafetyGate()
        self.typing_quiet_period = typing_quiet_period
        self.tz = clinic_timezone(timezone)
        # (linked, not found) confirmations; "{name}" is the patient's name
        self.link_replies = link_replies
        self.directory = PatientDirectory(store)
        self.history = ConversationHistory(store)
        self._leases: dict[str, TypingLease] = {}

    async def ingest(self, event: InboundEvent) -> IngestResult:
        if event.kind == "contact":
            return await self._link_contact(event)

        patient = await self.directory.resolve_identity(event.sender_identity)
        if patient is None:
            logger.info(f"Dropping {event.kind} event from unknown identity {event.sender_identity!r}")
            return IngestResult(IngestStatus.DROPPED, reason="unknown identity")

        if event.kind == "typing":
            return await self._patient_typing(patient)
        if event.kind == "read":
            return await self._mark_seen(patient, event)
        if event.kind != "message":
            return IngestResult(IngestStatus.IGNORED, patient.id, reason=f"unsupported kind {event.kind}")
        return await self._store_message(patient, event)

    # ─── Messages ────────────────────────────────────────────────

    async def _store_message(self, patient: PatientSummary, event: InboundEvent) -> IngestResult:
        if self.gate.is_unsafe(event.content, event.filenames, forwarded=event.forwarded):
            logger.warning(f"Rejected unsafe content from patient {patient.id}")
            return IngestResult(IngestStatus.REJECTED, patient.id, reason="unsafe content")

        primary = next((m for m in event.media if m.type in ("image", "voice")), None)
        if primary is None and event.has_media:
            logger.info(f"Ignoring unsupported attachment from patient {patient.id}")
            return IngestResult(IngestStatus.IGNORED, patient.id, reason="unsupported attachment")

        url = None
        if primary is not None:
            try:
                url = await self.publisher.publish_attachment(self.channel, patient.id, primary)
            except MediaPublishError as e:
                logger.error(f"Media publish failed for patient {patient.id}: {e}")
                return IngestResult(IngestStatus.FAILED, patient.id, reason=str(e))

        created_at = utc_now_iso()
        message = Message(
            patient_id=patient.id,
            sender=Sender.PATIENT,
            created_at=created_at,
            time=format_display_time(created_at, self.tz),
            external_message_id=event.external_message_id,
        )
        if primary is None:
            message.text = event.text
        elif primary.type == "image":
            message.image = url
            message.text = event.caption or event.text or None
        else:
            message.voice = url

        try:
            message.validate_payload()
        except ValueError as e:
            return IngestResult(IngestStatus.IGNORED, patient.id, reason=str(e))

        try:
            await self.store.append_inbound_message(message, format_preview(message))
        except LookupError as e:
            logger.info(f"Dropping message: {e}")
            return IngestResult(IngestStatus.DROPPED, patient.id, reason=str(e))

        # A sent message ends the patient's typing lease.
        lease = self._leases.pop(patient.id, None)
        if lease is not None:
            await lease.close()

        logger.debug(f"Stored {message.primary_kind} message {message.id} for patient {patient.id}")
        return IngestResult(IngestStatus.STORED, patient.id, message)

    # ─── Side events ─────────────────────────────────────────────

    async def _patient_typing(self, patient: PatientSummary) -> IngestResult:
        lease = self._leases.get(patient.id)
        if lease is None:
            lease = TypingLease(
                partial(self.store.set_typing, patient.id, "user"),
                quiet_period=self.typing_quiet_period,
            )
            self._leases[patient.id] = lease
        await lease.pulse()
        return IngestResult(IngestStatus.UPDATED, patient.id)

    async def _mark_seen(self, patient: PatientSummary, event: InboundEvent) -> IngestResult:
        if not event.external_message_id:
            return IngestResult(IngestStatus.IGNORED, patient.id, reason="read receipt without target")
        message = await self.store.find_message_by_external_id(patient.id, event.external_message_id)
        if message is None or message.sender != Sender.STAFF:
            return IngestResult(IngestStatus.IGNORED, patient.id, reason="unknown read target")
        changed = await self.history.advance_status(patient.id, message.id, MessageStatus.SEEN)
        status = IngestStatus.UPDATED if changed else IngestStatus.IGNORED
        return IngestResult(status, patient.id, message)

    async def _link_contact(self, event: InboundEvent) -> IngestResult:
        patient = await self.directory.link_by_phone(event.contact_phone, event.sender_identity)
        if patient is None:
            await self._confirm_link(event.sender_identity, None)
            return IngestResult(IngestStatus.DROPPED, reason="phone not registered")
        await self._confirm_link(event.sender_identity, patient)
        return IngestResult(IngestStatus.LINKED, patient.id)

    async def _confirm_link(self, identity: str | int, patient: PatientSummary | None) -> None:
        """Tell the sender whether their phone number matched a patient."""
        if not self.link_replies:
            return
        linked, not_found = self.link_replies
        text = linked.format(name=patient.full_name or "") if patient else not_found
        try:
            await self.channel.send_text(str(identity), text)
        except ChannelError as e:
            logger.warning(f"Could not confirm contact link to {identity}: {e}")

    async def close(self) -> None:
        """Stop all patient typing leases, lowering any raised flag."""
        leases, self._leases = list(self._leases.values()), {}
        for lease in leases:
            await lease.close()
