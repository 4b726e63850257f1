"""Merging paginated history with the live window."""

from __future__ import annotations

from clinicrelay.conversation.models import Message


def merge_messages(*batches: list[Message]) -> list[Message]:
    """De-duplicate by id (later batches win) and sort ascending."""
    by_id: dict[str, Message] = {}
    for batch in batches:
        for message in batch:
            by_id[message.id] = message
    return sorted(by_id.values(), key=lambda m: m.sort_key)


class LiveWindowState:
    """What a conversation view currently shows.

    `history` holds pages loaded with `fetch_older_than`; `live` is the last
    snapshot of the newest window. A snapshot is authoritative for its own
    time range, so history entries inside that range that the snapshot no
    longer contains were deleted and are pruned. Older entries are left as
    they were loaded; newer ones are optimistic local writes the next
    snapshot will confirm.
    """

    def __init__(self) -> None:
        self.history: dict[str, Message] = {}
        self.live: list[Message] = []

    @property
    def messages(self) -> list[Message]:
        return merge_messages(list(self.history.values()), self.live)

    @property
    def oldest(self) -> Message | None:
        msgs = self.messages
        return msgs[0] if msgs else None

    def apply_snapshot(self, snapshot: list[Message], window_size: int) -> None:
        self.live = list(snapshot)
        if not snapshot:
            if window_size > 0:
                # Empty window: the whole conversation is gone.
                self.history.clear()
            return
        floor, ceiling = snapshot[0].sort_key, snapshot[-1].sort_key
        live_ids = {m.id for m in snapshot}
        for message_id, message in list(self.history.items()):
            if floor <= message.sort_key <= ceiling and message_id not in live_ids:
                del self.history[message_id]
            elif message_id in live_ids:
                # The live copy is fresher; keep a single source per id.
                del self.history[message_id]

    def add_history(self, page: list[Message]) -> None:
        live_ids = {m.id for m in self.live}
        for message in page:
            if message.id not in live_ids:
                self.history[message.id] = message

    def upsert_local(self, message: Message) -> None:
        """Apply an optimistic local write."""
        self.live = [m for m in self.live if m.id != message.id]
        self.history[message.id] = message

    def remove_local(self, message_id: str) -> None:
        self.history.pop(message_id, None)
        self.live = [m for m in self.live if m.id != message_id]
