"""Delivery formatter — previews and display times for list views."""

from __future__ import annotations

from datetime import datetime, timezone, tzinfo
from zoneinfo import ZoneInfo

from clinicrelay.conversation.models import Message

PHOTO_PREVIEW = "🖼 Photo"
VOICE_PREVIEW = "🎤 Voice"


def format_preview(message: Message | None) -> str:
    """Return the one-line preview shown in the patient list.

    Args:
        message: The latest message, or None when the conversation is empty.

    Returns:
        The message text, or a media placeholder when there is no text.
    """
    if message is None:
        return ""
    if message.text:
        return message.text.strip()
    if message.image:
        return PHOTO_PREVIEW
    if message.voice:
        return VOICE_PREVIEW
    return ""


def clinic_timezone(name: str) -> tzinfo:
    """Resolve an IANA zone name such as "Asia/Tashkent"."""
    if not name or name.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(name)


def format_display_time(value: datetime | str, tz: tzinfo | None = None) -> str:
    """Format a timestamp as 24h HH:MM, in clinic-local time when `tz` is given."""
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    if tz is not None and value.tzinfo is not None:
        value = value.astimezone(tz)
    return value.strftime("%H:%M")
