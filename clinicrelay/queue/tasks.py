"""OutboundTask schema — one pending action destined for the external channel."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum

from clinicrelay.conversation.models import utc_now_iso


class TaskAction(str, Enum):
    SEND = "SEND"
    EDIT = "EDIT"
    DELETE = "DELETE"


class TaskStatus(str, Enum):
    """PENDING → DELIVERED or PENDING → FAILED. Both outcomes are terminal."""

    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not TaskStatus.PENDING


@dataclass
class OutboundTask:
    """A durable instruction for the relay worker.

    Written once by the dashboard; consumed at most once by the worker.
    """

    target_channel_identity: str
    action: TaskAction
    originating_message_id: str
    patient_id: str = ""
    text: str | None = None
    image_url: str | None = None
    voice_url: str | None = None
    external_message_id: str | None = None
    reply_to_external_id: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: str = field(default_factory=utc_now_iso)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    # Worker bookkeeping
    attempts: int = 0
    last_error: str | None = None
    not_before: str | None = None
    lease_until: str | None = None
    delivered_at: str | None = None

    def __post_init__(self) -> None:
        self.action = TaskAction(self.action)
        self.status = TaskStatus(self.status)
        if self.target_channel_identity is None:
            self.target_channel_identity = ""
        self.target_channel_identity = str(self.target_channel_identity)
        if self.external_message_id is not None:
            self.external_message_id = str(self.external_message_id)

    @property
    def needs_external_target(self) -> bool:
        return self.action in (TaskAction.EDIT, TaskAction.DELETE)

    def validate(self) -> None:
        """Raise ValueError if the task cannot be executed as written."""
        if not self.target_channel_identity:
            raise ValueError("Task has no target channel identity")
        if self.needs_external_target and not self.external_message_id:
            raise ValueError(f"{self.action.value} task requires an external message id")
        if self.action == TaskAction.SEND and not (self.text or self.image_url or self.voice_url):
            raise ValueError("SEND task has no payload")
        if self.action == TaskAction.EDIT and not self.text:
            raise ValueError("EDIT task has no text")

    def to_wire(self) -> dict:
        """Serialize to the shared task record shape."""
        data = {
            "id": self.id,
            "targetChannelIdentity": self.target_channel_identity,
            "action": self.action.value,
            "status": self.status.value,
            "originatingMessageId": self.originating_message_id,
            "createdAt": self.created_at,
        }
        optional = {
            "patientId": self.patient_id or None,
            "text": self.text,
            "imageUrl": self.image_url,
            "voiceUrl": self.voice_url,
            "externalMessageId": self.external_message_id,
            "replyToExternalId": self.reply_to_external_id,
            "attempts": self.attempts or None,
            "lastError": self.last_error,
            "notBefore": self.not_before,
            "deliveredAt": self.delivered_at,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_wire(cls, data: dict) -> OutboundTask:
        task = cls(
            target_channel_identity=data["targetChannelIdentity"],
            action=data["action"],
            originating_message_id=data["originatingMessageId"],
            patient_id=data.get("patientId", ""),
            text=data.get("text"),
            image_url=data.get("imageUrl"),
            voice_url=data.get("voiceUrl"),
            external_message_id=data.get("externalMessageId"),
            reply_to_external_id=data.get("replyToExternalId"),
            status=data.get("status", TaskStatus.PENDING.value),
            created_at=data.get("createdAt") or utc_now_iso(),
            attempts=data.get("attempts", 0),
            last_error=data.get("lastError"),
            not_before=data.get("notBefore"),
            delivered_at=data.get("deliveredAt"),
        )
        if data.get("id"):
            task.id = data["id"]
        return task
