"""SQLite document store — patients, conversation messages, outbound tasks.

The single shared store both actors read and write. Three collections:
`patients/{id}`, `patients/{id}/messages/{id}` and `outbound_tasks/{id}`.
Async via aiosqlite; WAL mode and a busy timeout let the dashboard and the
relay worker open the same file from separate processes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path

import aiosqlite

from clinicrelay.conversation.models import Message, MessageStatus, utc_now_iso
from clinicrelay.patients.summary import PatientSummary
from clinicrelay.queue.tasks import OutboundTask, TaskAction, TaskStatus

logger = logging.getLogger(__name__)

# channel_identity has no declared type so a numeric id and its string form
# stay distinct, as they do in the document store the worker mirrors.
_SCHEMA = """
CREATE TABLE IF NOT EXISTS patients (
    id TEXT PRIMARY KEY,
    full_name TEXT,
    phone TEXT,
    channel_identity,
    last_message TEXT DEFAULT '',
    last_message_time TEXT DEFAULT '',
    last_message_timestamp TEXT,
    unread_count INTEGER NOT NULL DEFAULT 0 CHECK (unread_count >= 0),
    user_is_typing INTEGER NOT NULL DEFAULT 0,
    doctor_is_typing INTEGER NOT NULL DEFAULT 0,
    user_typing_at TEXT,
    doctor_typing_at TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_patients_identity ON patients (channel_identity);
CREATE INDEX IF NOT EXISTS idx_patients_phone ON patients (phone);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    patient_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    created_at TEXT NOT NULL,
    time TEXT,
    text TEXT,
    image TEXT,
    voice TEXT,
    external_message_id TEXT,
    status TEXT,
    reply_to JSON,
    scheduled_for TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_order
    ON messages (patient_id, created_at DESC, id DESC);
CREATE INDEX IF NOT EXISTS idx_messages_external
    ON messages (patient_id, external_message_id);

CREATE TABLE IF NOT EXISTS outbound_tasks (
    id TEXT PRIMARY KEY,
    patient_id TEXT,
    target_channel_identity TEXT NOT NULL,
    action TEXT NOT NULL,
    text TEXT,
    image_url TEXT,
    voice_url TEXT,
    external_message_id TEXT,
    reply_to_external_id TEXT,
    originating_message_id TEXT,
    status TEXT NOT NULL DEFAULT 'PENDING',
    attempts INTEGER NOT NULL DEFAULT 0,
    last_error TEXT,
    not_before TEXT,
    lease_until TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT,
    delivered_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_tasks_due ON outbound_tasks (status, not_before);
CREATE INDEX IF NOT EXISTS idx_tasks_origin ON outbound_tasks (originating_message_id);
"""

_PATIENT_FIELDS = {"full_name", "phone", "channel_identity"}
_TYPING_COLUMNS = {
    "user": ("user_is_typing", "user_typing_at"),
    "doctor": ("doctor_is_typing", "doctor_typing_at"),
}


def _row_to_message(row: dict) -> Message:
    return Message(
        id=row["id"],
        patient_id=row["patient_id"],
        sender=row["sender"],
        created_at=row["created_at"],
        time=row["time"] or "",
        text=row["text"],
        image=row["image"],
        voice=row["voice"],
        external_message_id=row["external_message_id"],
        status=row["status"],
        reply_to=json.loads(row["reply_to"]) if row["reply_to"] else None,
        scheduled_for=row["scheduled_for"],
    )


def _row_to_task(row: dict) -> OutboundTask:
    task = OutboundTask(
        target_channel_identity=row["target_channel_identity"],
        action=row["action"],
        originating_message_id=row["originating_message_id"] or "",
        patient_id=row["patient_id"] or "",
        text=row["text"],
        image_url=row["image_url"],
        voice_url=row["voice_url"],
        external_message_id=row["external_message_id"],
        reply_to_external_id=row["reply_to_external_id"],
        status=row["status"],
        created_at=row["created_at"],
        attempts=row["attempts"],
        last_error=row["last_error"],
        not_before=row["not_before"],
        lease_until=row["lease_until"],
        delivered_at=row["delivered_at"],
    )
    task.id = row["id"]
    return task


class DocumentStore:
    """SQLite-backed shared store for ClinicRelay.

    Counter updates are single UPDATE statements so concurrent writers from
    either actor never lose an increment.
    """

    def __init__(self, db_path: str | Path, busy_timeout: float = 30.0) -> None:
        self.db_path = str(db_path)
        self.busy_timeout = busy_timeout
        self._db: aiosqlite.Connection | None = None
        self._write_lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the database connection and create tables."""
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path, timeout=self.busy_timeout)
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()
        logger.info(f"Document store connected: {self.db_path}")

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Document store is not connected")
        return self._db

    async def _fetchone(self, sql: str, params: tuple | list = ()) -> dict | None:
        cursor = await self.db.execute(sql, params)
        row = await cursor.fetchone()
        if row is None:
            return None
        cols = [d[0] for d in cursor.description]
        return dict(zip(cols, row))

    async def _fetchall(self, sql: str, params: tuple | list = ()) -> list[dict]:
        cursor = await self.db.execute(sql, params)
        rows = await cursor.fetchall()
        cols = [d[0] for d in cursor.description]
        return [dict(zip(cols, row)) for row in rows]

    async def _write(self, sql: str, params: tuple | list = ()) -> int:
        """Execute one write statement and commit. Returns the row count."""
        async with self._write_lock:
            cursor = await self.db.execute(sql, params)
            await self.db.commit()
            return cursor.rowcount

    # ─── Patients ────────────────────────────────────────────────

    async def upsert_patient(self, patient_id: str, **fields) -> None:
        """Create or update a patient summary record."""
        unknown = set(fields) - _PATIENT_FIELDS
        if unknown:
            raise ValueError(f"Unknown patient fields: {sorted(unknown)}")
        now = utc_now_iso()
        async with self._write_lock:
            existing = await self._fetchone("SELECT id FROM patients WHERE id = ?", (patient_id,))
            if existing:
                if fields:
                    sets = ", ".join(f"{k} = ?" for k in fields)
                    vals = list(fields.values()) + [now, patient_id]
                    await self.db.execute(
                        f"UPDATE patients SET {sets}, updated_at = ? WHERE id = ?", vals
                    )
            else:
                fields["id"] = patient_id
                fields["created_at"] = now
                fields["updated_at"] = now
                cols = ", ".join(fields.keys())
                placeholders = ", ".join("?" for _ in fields)
                await self.db.execute(
                    f"INSERT INTO patients ({cols}) VALUES ({placeholders})",
                    list(fields.values()),
                )
            await self.db.commit()

    async def get_patient(self, patient_id: str) -> PatientSummary | None:
        row = await self._fetchone("SELECT * FROM patients WHERE id = ?", (patient_id,))
        return PatientSummary.from_row(row) if row else None

    async def find_patient_by_identity(self, identity: str | int) -> PatientSummary | None:
        """Exact, type-sensitive lookup of a patient by channel identity."""
        row = await self._fetchone(
            "SELECT * FROM patients WHERE channel_identity = ? LIMIT 1", (identity,)
        )
        return PatientSummary.from_row(row) if row else None

    async def find_patients_by_phone(self, phones: list[str]) -> list[PatientSummary]:
        if not phones:
            return []
        placeholders = ", ".join("?" for _ in phones)
        rows = await self._fetchall(
            f"SELECT * FROM patients WHERE phone IN ({placeholders})", phones
        )
        return [PatientSummary.from_row(r) for r in rows]

    async def set_channel_identity(self, patient_id: str, identity: str | int) -> bool:
        count = await self._write(
            "UPDATE patients SET channel_identity = ?, updated_at = ? WHERE id = ?",
            (identity, utc_now_iso(), patient_id),
        )
        return count == 1

    async def increment_unread(self, patient_id: str, by: int = 1) -> bool:
        """Atomically add to the unread counter."""
        count = await self._write(
            "UPDATE patients SET unread_count = unread_count + ?, updated_at = ? WHERE id = ?",
            (by, utc_now_iso(), patient_id),
        )
        return count == 1

    async def reset_unread(self, patient_id: str) -> None:
        await self._write(
            "UPDATE patients SET unread_count = 0, updated_at = ? WHERE id = ? AND unread_count != 0",
            (utc_now_iso(), patient_id),
        )

    async def set_typing(self, patient_id: str, side: str, value: bool) -> None:
        """Write a typing flag. `side` is "user" (patient) or "doctor" (staff)."""
        flag_col, at_col = _TYPING_COLUMNS[side]
        now = utc_now_iso()
        await self._write(
            f"UPDATE patients SET {flag_col} = ?, {at_col} = ?, updated_at = ? WHERE id = ?",
            (int(value), now if value else None, now, patient_id),
        )

    async def update_preview(
        self, patient_id: str, text: str, time: str, timestamp: str | None
    ) -> None:
        await self._write(
            """UPDATE patients
               SET last_message = ?, last_message_time = ?, last_message_timestamp = ?, updated_at = ?
               WHERE id = ?""",
            (text, time, timestamp, utc_now_iso(), patient_id),
        )

    # ─── Messages ────────────────────────────────────────────────

    async def insert_message(self, message: Message) -> Message:
        """Insert a message, assigning its id."""
        async with self._write_lock:
            await self._insert_message_row(message)
            await self.db.commit()
        return message

    async def _insert_message_row(self, message: Message) -> None:
        message.id = message.id or uuid.uuid4().hex
        await self.db.execute(
            """INSERT INTO messages
               (id, patient_id, sender, created_at, time, text, image, voice,
                external_message_id, status, reply_to, scheduled_for)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                message.id,
                message.patient_id,
                message.sender.value,
                message.created_at,
                message.time,
                message.text,
                message.image,
                message.voice,
                message.external_message_id,
                message.status.value if message.status else None,
                json.dumps(message.reply_to) if message.reply_to else None,
                message.scheduled_for,
            ),
        )

    async def append_inbound_message(self, message: Message, preview: str) -> Message:
        """Persist an inbound message and bump the patient summary in one transaction."""
        async with self._write_lock:
            try:
                await self._insert_message_row(message)
                cursor = await self.db.execute(
                    """UPDATE patients
                       SET unread_count = unread_count + 1,
                           last_message = ?, last_message_time = ?, last_message_timestamp = ?,
                           user_is_typing = 0, user_typing_at = NULL, updated_at = ?
                       WHERE id = ?""",
                    (preview, message.time, message.created_at, utc_now_iso(), message.patient_id),
                )
                if cursor.rowcount != 1:
                    raise LookupError(f"Patient {message.patient_id} disappeared during ingestion")
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return message

    async def get_message(self, patient_id: str, message_id: str) -> Message | None:
        row = await self._fetchone(
            "SELECT * FROM messages WHERE patient_id = ? AND id = ?", (patient_id, message_id)
        )
        return _row_to_message(row) if row else None

    async def find_message_by_external_id(
        self, patient_id: str, external_id: str
    ) -> Message | None:
        row = await self._fetchone(
            "SELECT * FROM messages WHERE patient_id = ? AND external_message_id = ? LIMIT 1",
            (patient_id, str(external_id)),
        )
        return _row_to_message(row) if row else None

    async def update_message_text(self, patient_id: str, message_id: str, text: str) -> bool:
        count = await self._write(
            "UPDATE messages SET text = ? WHERE patient_id = ? AND id = ?",
            (text, patient_id, message_id),
        )
        return count == 1

    async def set_external_message_id(
        self, patient_id: str, message_id: str, external_id: str
    ) -> bool:
        count = await self._write(
            "UPDATE messages SET external_message_id = ? WHERE patient_id = ? AND id = ?",
            (str(external_id), patient_id, message_id),
        )
        return count == 1

    async def update_message_status(
        self, patient_id: str, message_id: str, status: MessageStatus
    ) -> bool:
        count = await self._write(
            "UPDATE messages SET status = ? WHERE patient_id = ? AND id = ?",
            (MessageStatus(status).value, patient_id, message_id),
        )
        return count == 1

    async def delete_message(self, patient_id: str, message_id: str) -> bool:
        """Delete a message. Returns False if it was already gone."""
        count = await self._write(
            "DELETE FROM messages WHERE patient_id = ? AND id = ?", (patient_id, message_id)
        )
        return count == 1

    async def latest_messages(self, patient_id: str, limit: int) -> list[Message]:
        """Return the `limit` newest messages in ascending display order."""
        rows = await self._fetchall(
            """SELECT * FROM messages WHERE patient_id = ?
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (patient_id, limit),
        )
        return [_row_to_message(r) for r in reversed(rows)]

    async def messages_before(
        self, patient_id: str, created_at: str, message_id: str, limit: int
    ) -> list[Message]:
        """Return up to `limit` messages strictly older than the given position, ascending."""
        rows = await self._fetchall(
            """SELECT * FROM messages
               WHERE patient_id = ?
                 AND (created_at < ? OR (created_at = ? AND id < ?))
               ORDER BY created_at DESC, id DESC LIMIT ?""",
            (patient_id, created_at, created_at, message_id, limit),
        )
        return [_row_to_message(r) for r in reversed(rows)]

    async def count_messages(self, patient_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS n FROM messages WHERE patient_id = ?", (patient_id,)
        )
        return row["n"] if row else 0

    # ─── Outbound Tasks ──────────────────────────────────────────

    async def insert_task(self, task: OutboundTask) -> OutboundTask:
        now = utc_now_iso()
        await self._write(
            """INSERT INTO outbound_tasks
               (id, patient_id, target_channel_identity, action, text, image_url, voice_url,
                external_message_id, reply_to_external_id, originating_message_id, status,
                attempts, not_before, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                task.id,
                task.patient_id,
                task.target_channel_identity,
                task.action.value,
                task.text,
                task.image_url,
                task.voice_url,
                task.external_message_id,
                task.reply_to_external_id,
                task.originating_message_id,
                task.status.value,
                task.attempts,
                task.not_before,
                task.created_at,
                now,
            ),
        )
        return task

    async def get_task(self, task_id: str) -> OutboundTask | None:
        row = await self._fetchone("SELECT * FROM outbound_tasks WHERE id = ?", (task_id,))
        return _row_to_task(row) if row else None

    async def due_task_ids(self, now: str, limit: int = 20) -> list[str]:
        """Ids of PENDING tasks that are due and not leased by another consumer."""
        rows = await self._fetchall(
            """SELECT id FROM outbound_tasks
               WHERE status = 'PENDING'
                 AND (not_before IS NULL OR not_before <= ?)
                 AND (lease_until IS NULL OR lease_until < ?)
               ORDER BY created_at ASC LIMIT ?""",
            (now, now, limit),
        )
        return [r["id"] for r in rows]

    async def claim_task(self, task_id: str, now: str, lease_until: str) -> OutboundTask | None:
        """Take the lease on a due PENDING task. Returns None if someone else holds it."""
        count = await self._write(
            """UPDATE outbound_tasks
               SET lease_until = ?, attempts = attempts + 1, updated_at = ?
               WHERE id = ? AND status = 'PENDING'
                 AND (not_before IS NULL OR not_before <= ?)
                 AND (lease_until IS NULL OR lease_until < ?)""",
            (lease_until, now, task_id, now, now),
        )
        if count != 1:
            return None
        return await self.get_task(task_id)

    async def release_task(self, task_id: str, error: str, not_before: str) -> bool:
        """Give the lease back after a retryable failure and reschedule."""
        count = await self._write(
            """UPDATE outbound_tasks
               SET lease_until = NULL, last_error = ?, not_before = ?, updated_at = ?
               WHERE id = ? AND status = 'PENDING'""",
            (error, not_before, utc_now_iso(), task_id),
        )
        return count == 1

    async def finish_task(
        self, task_id: str, status: TaskStatus, error: str | None = None
    ) -> bool:
        """Move a PENDING task to a terminal state. No-op if already terminal."""
        status = TaskStatus(status)
        if not status.is_terminal:
            raise ValueError("finish_task requires a terminal status")
        now = utc_now_iso()
        count = await self._write(
            """UPDATE outbound_tasks
               SET status = ?, last_error = ?, lease_until = NULL, updated_at = ?,
                   delivered_at = ?
               WHERE id = ? AND status = 'PENDING'""",
            (
                status.value,
                error,
                now,
                now if status == TaskStatus.DELIVERED else None,
                task_id,
            ),
        )
        return count == 1

    async def withdraw_pending_send(self, message_id: str, now: str) -> int:
        """Remove unclaimed PENDING SEND tasks for a message. Returns how many."""
        return await self._write(
            """DELETE FROM outbound_tasks
               WHERE originating_message_id = ? AND action = ? AND status = 'PENDING'
                 AND (lease_until IS NULL OR lease_until < ?)""",
            (message_id, TaskAction.SEND.value, now),
        )

    async def task_for_message(
        self, message_id: str, action: TaskAction = TaskAction.SEND
    ) -> OutboundTask | None:
        row = await self._fetchone(
            """SELECT * FROM outbound_tasks
               WHERE originating_message_id = ? AND action = ?
               ORDER BY created_at DESC LIMIT 1""",
            (message_id, TaskAction(action).value),
        )
        return _row_to_task(row) if row else None

    async def count_tasks_by_status(self) -> dict[str, int]:
        rows = await self._fetchall(
            "SELECT status, COUNT(*) AS n FROM outbound_tasks GROUP BY status"
        )
        counts = {s.value: 0 for s in TaskStatus}
        counts.update({r["status"]: r["n"] for r in rows})
        return counts

    async def recent_tasks(self, limit: int = 20) -> list[OutboundTask]:
        rows = await self._fetchall(
            "SELECT * FROM outbound_tasks ORDER BY created_at DESC LIMIT ?", (limit,)
        )
        return [_row_to_task(r) for r in rows]
