"""Local conversation cache — paints a view before the first store round trip."""

from __future__ import annotations

import json
import logging
from pathlib import Path

from clinicrelay.conversation.models import Message

logger = logging.getLogger(__name__)


class ConversationCache:
    """One JSON file per patient holding the last rendered window.

    Stale by nature: callers revalidate against the store right after
    seeding from it.
    """

    def __init__(self, cache_dir: str | Path) -> None:
        self.cache_dir = Path(cache_dir)

    def _path(self, patient_id: str) -> Path:
        safe = "".join(c for c in patient_id if c.isalnum() or c in "-_")
        return self.cache_dir / f"{safe or 'patient'}.json"

    def load(self, patient_id: str) -> list[Message]:
        path = self._path(patient_id)
        if not path.exists():
            return []
        try:
            with open(path) as f:
                data = json.load(f)
            return [Message.from_dict(item) for item in data.get("messages", [])]
        except (OSError, ValueError, KeyError) as e:
            logger.warning(f"Ignoring unreadable cache {path}: {e}")
            return []

    def save(self, patient_id: str, messages: list[Message]) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(patient_id)
        tmp = path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump({"messages": [m.to_dict() for m in messages]}, f)
        tmp.replace(path)

    def clear(self, patient_id: str) -> None:
        self._path(patient_id).unlink(missing_ok=True)
