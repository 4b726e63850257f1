"""Patient summary — the small per-patient record list views read."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass
class PatientSummary:
    """Mutable summary updated by both actors.

    `unread_count` is only ever incremented by inbound ingestion and reset
    by the dashboard when a conversation is opened. The typing flags are
    advisory leases; `*_typing_at` records when each was last raised.
    """

    id: str
    full_name: str = ""
    phone: str = ""
    channel_identity: str | int | None = None
    last_message: str = ""
    last_message_time: str = ""
    last_message_timestamp: str | None = None
    unread_count: int = 0
    user_is_typing: bool = False
    doctor_is_typing: bool = False
    user_typing_at: str | None = None
    doctor_typing_at: str | None = None

    @property
    def is_connected(self) -> bool:
        """True when the patient has a resolved external channel identity."""
        return self.channel_identity not in (None, "")

    def user_typing_active(self, stale_after: float, now: datetime | None = None) -> bool:
        """Reader-side view of `user_is_typing`, ignoring a flag stuck too long."""
        return _lease_active(self.user_is_typing, self.user_typing_at, stale_after, now)

    def doctor_typing_active(self, stale_after: float, now: datetime | None = None) -> bool:
        return _lease_active(self.doctor_is_typing, self.doctor_typing_at, stale_after, now)

    @classmethod
    def from_row(cls, row: dict) -> PatientSummary:
        return cls(
            id=row["id"],
            full_name=row.get("full_name") or "",
            phone=row.get("phone") or "",
            channel_identity=row.get("channel_identity"),
            last_message=row.get("last_message") or "",
            last_message_time=row.get("last_message_time") or "",
            last_message_timestamp=row.get("last_message_timestamp"),
            unread_count=row.get("unread_count") or 0,
            user_is_typing=bool(row.get("user_is_typing")),
            doctor_is_typing=bool(row.get("doctor_is_typing")),
            user_typing_at=row.get("user_typing_at"),
            doctor_typing_at=row.get("doctor_typing_at"),
        )


def _lease_active(flag: bool, since: str | None, stale_after: float, now: datetime | None) -> bool:
    if not flag:
        return False
    if not since:
        return True
    now = now or datetime.now(timezone.utc)
    age = (now - datetime.fromisoformat(since)).total_seconds()
    return age <= stale_after
