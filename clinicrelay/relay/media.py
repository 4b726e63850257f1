"""Durable media publishing for inbound attachments.

Channel file references expire, so attachments are copied to durable
storage before a message pointing at them is persisted.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
import uuid
from abc import ABC, abstractmethod
from pathlib import Path

from clinicrelay.errors import ChannelError, MediaPublishError
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.gateway.message import Media

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]")


class MediaStorage(ABC):
    """Somewhere attachments can live for as long as the conversation does."""

    @abstractmethod
    async def publish(
        self, patient_id: str, filename: str, data: bytes, content_type: str = ""
    ) -> str:
        """Store `data` and return a URL the dashboard and channel can load."""
        ...


class LocalMediaStorage(MediaStorage):
    """Writes attachments under a local directory."""

    def __init__(self, root: str | Path, public_base_url: str = "") -> None:
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")

    async def publish(
        self, patient_id: str, filename: str, data: bytes, content_type: str = ""
    ) -> str:
        name = _UNSAFE_NAME_RE.sub("_", Path(filename).name) if filename else ""
        if not Path(name).suffix:
            name += mimetypes.guess_extension(content_type or "") or ".bin"
        name = f"{uuid.uuid4().hex[:12]}_{name.lstrip('_.') or 'file'}"

        target = self.root / patient_id / name
        await asyncio.to_thread(self._write, target, data)

        if self.public_base_url:
            return f"{self.public_base_url}/{patient_id}/{name}"
        return target.resolve().as_uri()

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)


class MediaPublisher:
    """Moves an attachment from channel storage into durable storage."""

    def __init__(self, storage: MediaStorage) -> None:
        self.storage = storage

    async def publish_attachment(
        self, channel: BaseChannel, patient_id: str, media: Media
    ) -> str:
        try:
            data = await channel.fetch_file(media.file_ref)
        except ChannelError as e:
            raise MediaPublishError(f"Could not fetch {media.type} {media.file_ref}: {e}") from e
        if not data:
            raise MediaPublishError(f"Channel returned an empty {media.type} for {media.file_ref}")

        try:
            url = await self.storage.publish(patient_id, media.filename, data, media.mime_type)
        except OSError as e:
            raise MediaPublishError(f"Could not store {media.type}: {e}") from e

        logger.debug(f"Published {media.type} for patient {patient_id} ({len(data)} bytes) → {url}")
        return url
