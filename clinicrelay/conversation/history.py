"""Conversation history — paginated access to a patient's message log.

Known limitation: an open view only re-reads the newest `live_window`
messages. Edits or deletes of older messages reach the view only after it
is reopened.
"""

from __future__ import annotations

import logging

from clinicrelay.conversation.models import Message, MessageStatus, PageCursor
from clinicrelay.store.documents import DocumentStore

logger = logging.getLogger(__name__)


class ConversationHistory:
    """Reads and writes the canonical `patients/{id}/messages` collection."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def fetch_latest(self, patient_id: str, n: int) -> list[Message]:
        """Return the n most recent messages in ascending display order."""
        if n <= 0:
            return []
        return await self.store.latest_messages(patient_id, n)

    async def fetch_older_than(self, cursor: PageCursor, n: int) -> list[Message]:
        """Return the next page strictly older than `cursor`, ascending."""
        if n <= 0:
            return []
        return await self.store.messages_before(
            cursor.patient_id, cursor.created_at, cursor.message_id, n
        )

    async def latest(self, patient_id: str) -> Message | None:
        page = await self.fetch_latest(patient_id, 1)
        return page[-1] if page else None

    async def get(self, patient_id: str, message_id: str) -> Message | None:
        return await self.store.get_message(patient_id, message_id)

    async def append(self, message: Message) -> Message:
        message.validate_payload()
        return await self.store.insert_message(message)

    async def edit_text(self, patient_id: str, message_id: str, text: str) -> bool:
        return await self.store.update_message_text(patient_id, message_id, text)

    async def delete(self, patient_id: str, message_id: str) -> bool:
        """Delete a message. Deleting an already-deleted message is a no-op."""
        removed = await self.store.delete_message(patient_id, message_id)
        if not removed:
            logger.debug(f"Message {message_id} already gone for patient {patient_id}")
        return removed

    async def advance_status(
        self, patient_id: str, message_id: str, status: MessageStatus
    ) -> bool:
        """Move a staff message's status forward. Returns True if it changed."""
        message = await self.store.get_message(patient_id, message_id)
        if message is None:
            return False
        if not message.advance_status(status):
            return False
        return await self.store.update_message_status(patient_id, message_id, message.status)
