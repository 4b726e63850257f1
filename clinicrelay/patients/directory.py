"""Patient directory — identity resolution and summary maintenance."""

from __future__ import annotations

import logging
import re

from clinicrelay.conversation.models import Message
from clinicrelay.delivery.formatter import format_display_time, format_preview
from clinicrelay.patients.summary import PatientSummary
from clinicrelay.store.documents import DocumentStore

logger = logging.getLogger(__name__)


def coerce_identity(identity: str | int) -> str | int | None:
    """Return the alternate-typed form of a channel identity, if any.

    Channel ids may have been stored as numbers by one writer and as
    strings by another: "123" ↔ 123.
    """
    if isinstance(identity, bool):
        return None
    if isinstance(identity, int):
        return str(identity)
    text = str(identity).strip()
    if re.fullmatch(r"-?\d+", text):
        return int(text)
    return None


def phone_variants(raw_phone: str) -> list[str]:
    """Return the stored phone formats a channel-reported number may match.

    Always includes the compact "+<digits>" form; Uzbek numbers also match
    the spaced "+998 AA BBB CC DD" form the dashboard writes.
    """
    phone = re.sub(r"\s", "", raw_phone or "")
    if not phone:
        return []
    if not phone.startswith("+"):
        phone = "+" + phone
    variants = [phone]
    if phone.startswith("+998") and len(phone) == 13:
        variants.append(f"{phone[:4]} {phone[4:6]} {phone[6:9]} {phone[9:11]} {phone[11:13]}")
    return variants


class PatientDirectory:
    """Looks up patients and keeps their summary record consistent."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get(self, patient_id: str) -> PatientSummary | None:
        return await self.store.get_patient(patient_id)

    async def resolve_identity(self, identity: str | int) -> PatientSummary | None:
        """Exact lookup first, then the type-coerced fallback."""
        patient = await self.store.find_patient_by_identity(identity)
        if patient:
            return patient
        alternate = coerce_identity(identity)
        if alternate is None:
            return None
        patient = await self.store.find_patient_by_identity(alternate)
        if patient:
            logger.debug(f"Resolved identity {identity!r} via coerced form {alternate!r}")
        return patient

    async def link_by_phone(self, phone: str, identity: str | int) -> PatientSummary | None:
        """Attach a channel identity to the patient registered under `phone`."""
        variants = phone_variants(phone)
        matches = await self.store.find_patients_by_phone(variants)
        if not matches:
            logger.info(f"No patient registered under {variants}")
            return None
        if len(matches) > 1:
            logger.warning(f"{len(matches)} patients share phone {variants[0]}; linking the first")
        patient = matches[0]
        await self.store.set_channel_identity(patient.id, str(identity))
        logger.info(f"Linked channel identity {identity} to patient {patient.id}")
        return await self.store.get_patient(patient.id)

    async def mark_as_read(self, patient_id: str) -> None:
        await self.store.reset_unread(patient_id)

    async def record_preview(self, message: Message) -> None:
        """Point the summary preview at `message`."""
        await self.store.update_preview(
            message.patient_id,
            format_preview(message),
            message.time or format_display_time(message.created_at),
            message.created_at,
        )

    async def refresh_preview(self, patient_id: str, latest: Message | None) -> None:
        """Recompute the preview from the authoritative latest message."""
        if latest is None:
            await self.store.update_preview(patient_id, "", "", None)
        else:
            await self.record_preview(latest)
