"""InboundEvent schema — what every channel normalizes its updates into.

The relay worker only ever sees InboundEvents; channel-specific payloads
stay inside the channel adapter.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone


@dataclass
class Media:
    """An attachment still living in the channel's transient storage."""

    type: str              # "image", "voice", "document"
    file_ref: str          # Channel file id, or a local path for the console channel
    mime_type: str = ""
    filename: str = ""
    size_bytes: int = 0


@dataclass
class InboundEvent:
    """One update received from the external channel."""

    kind: str = "message"                            # "message", "typing", "read", "contact"
    sender_identity: str | int = ""
    text: str = ""
    caption: str = ""
    media: list[Media] = field(default_factory=list)
    external_message_id: str | None = None            # Channel id of the message itself
    contact_phone: str = ""                           # For "contact" events
    forwarded: bool = False                           # Forwarded from a channel or group
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    metadata: dict = field(default_factory=dict)      # Channel-specific extras

    @property
    def has_media(self) -> bool:
        """Check if the event has any attachments."""
        return len(self.media) > 0

    @property
    def is_empty(self) -> bool:
        """Check if the event has no content at all."""
        return not self.text and not self.caption and not self.media

    @property
    def content(self) -> str:
        """All user-visible text of the event, for the safety gate."""
        return "\n".join(part for part in (self.text, self.caption) if part)

    @property
    def filenames(self) -> list[str]:
        return [m.filename for m in self.media if m.filename]
