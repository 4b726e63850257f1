"""Message schema — the canonical record of one chat message in a conversation.

Both actors (dashboard and relay worker) read and write this shape through
the shared store. Field names in `to_dict` follow the document layout the
dashboard cache and the wire format use.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from clinicrelay.errors import InvalidStatusTransition


class Sender(str, Enum):
    PATIENT = "patient"
    STAFF = "staff"


class MessageStatus(str, Enum):
    """Delivery status of a staff-authored message. Forward-only."""

    SENT = "sent"
    DELIVERED = "delivered"
    SEEN = "seen"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    def can_advance_to(self, new: MessageStatus) -> bool:
        return new.rank >= self.rank


_STATUS_RANK = {
    MessageStatus.SENT: 0,
    MessageStatus.DELIVERED: 1,
    MessageStatus.SEEN: 2,
}


def utc_now_iso() -> str:
    """Return the current UTC time as a fixed-width ISO-8601 string.

    Fixed width keeps string comparison in the store equal to time order.
    """
    return to_iso(datetime.now(timezone.utc))


def to_iso(value: datetime) -> str:
    """Normalize a datetime to a fixed-width UTC ISO-8601 string."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


@dataclass
class Message:
    """One message in a patient's conversation.

    Exactly one primary payload is set among `text`, `image` and `voice`;
    `text` may additionally carry the caption of an image.
    """

    patient_id: str
    sender: Sender
    created_at: str = field(default_factory=utc_now_iso)
    time: str = ""
    text: str | None = None
    image: str | None = None
    voice: str | None = None
    external_message_id: str | None = None
    status: MessageStatus | None = None
    reply_to: dict | None = None
    scheduled_for: str | None = None
    id: str = ""                      # assigned by the store on insert

    def __post_init__(self) -> None:
        self.sender = Sender(self.sender)
        if self.status is not None:
            self.status = MessageStatus(self.status)
        if self.external_message_id is not None:
            self.external_message_id = str(self.external_message_id)

    @property
    def sort_key(self) -> tuple[str, str]:
        """Ascending display order: createdAt, then id."""
        return (self.created_at, self.id)

    @property
    def primary_kind(self) -> str | None:
        """Return which primary payload this message carries."""
        if self.image:
            return "image"
        if self.voice:
            return "voice"
        if self.text:
            return "text"
        return None

    @property
    def is_scheduled(self) -> bool:
        """A deferred staff message not yet handed to the channel."""
        return self.scheduled_for is not None and self.external_message_id is None

    @property
    def can_sync_externally(self) -> bool:
        """Only messages with a foreign handle can be edited/deleted externally."""
        return self.external_message_id is not None

    def validate_payload(self) -> None:
        """Raise ValueError unless exactly one primary payload is present."""
        if self.image and self.voice:
            raise ValueError("A message carries either an image or a voice note, not both")
        if self.voice and self.text:
            raise ValueError("Voice messages cannot carry text")
        if not (self.text or self.image or self.voice):
            raise ValueError("Message has no content")

    def advance_status(self, new: MessageStatus) -> bool:
        """Move status forward. Returns False when already at or past `new`."""
        new = MessageStatus(new)
        if self.sender != Sender.STAFF:
            raise InvalidStatusTransition("Only staff messages carry a delivery status")
        current = self.status or MessageStatus.SENT
        if not current.can_advance_to(new):
            raise InvalidStatusTransition(f"Cannot move status from {current.value} to {new.value}")
        if current == new and self.status is not None:
            return False
        self.status = new
        return True

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "patientId": self.patient_id,
            "sender": self.sender.value,
            "createdAt": self.created_at,
            "time": self.time,
        }
        optional = {
            "text": self.text,
            "image": self.image,
            "voice": self.voice,
            "externalMessageId": self.external_message_id,
            "status": self.status.value if self.status else None,
            "replyTo": self.reply_to,
            "scheduledFor": self.scheduled_for,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Message:
        return cls(
            id=data.get("id", ""),
            patient_id=data["patientId"],
            sender=data["sender"],
            created_at=data["createdAt"],
            time=data.get("time", ""),
            text=data.get("text"),
            image=data.get("image"),
            voice=data.get("voice"),
            external_message_id=data.get("externalMessageId"),
            status=data.get("status"),
            reply_to=data.get("replyTo"),
            scheduled_for=data.get("scheduledFor"),
        )


@dataclass(frozen=True)
class PageCursor:
    """Position in a conversation; pages fetched from it are strictly older."""

    patient_id: str
    created_at: str
    message_id: str

    @classmethod
    def from_message(cls, message: Message) -> PageCursor:
        return cls(message.patient_id, message.created_at, message.id)
