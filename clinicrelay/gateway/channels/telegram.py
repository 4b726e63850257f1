"""Telegram channel — Bot API over httpx.

Inbound updates arrive by long-polling `getUpdates`; outbound operations map
one-to-one onto Bot API methods. Every HTTP failure is classified so the
delivery loop knows whether to retry.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import AsyncIterator, Iterable

import httpx

from clinicrelay.errors import (
    ChannelError,
    RetryableChannelError,
    TargetNotFoundError,
    TerminalChannelError,
)
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.gateway.message import InboundEvent, Media

logger = logging.getLogger(__name__)

_NOT_FOUND_MARKERS = (
    "message to edit not found",
    "message to delete not found",
    "message can't be deleted",
    "message can't be edited",
)


def classify_error(method: str, status_code: int, description: str) -> ChannelError:
    """Map a failed Bot API response onto the channel error taxonomy."""
    text = f"{method} failed ({status_code}): {description}"
    if status_code == 429 or status_code >= 500:
        return RetryableChannelError(text, status_code=status_code)
    if any(marker in description.lower() for marker in _NOT_FOUND_MARKERS):
        return TargetNotFoundError(text, status_code=status_code)
    return TerminalChannelError(text, status_code=status_code)


class TelegramChannel(BaseChannel):
    """Telegram Bot API channel."""

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.telegram.org",
        poll_timeout: int = 30,
        transport: httpx.AsyncBaseTransport | None = None,
        menu_buttons: Iterable[str] = (),
    ) -> None:
        if not token:
            raise ValueError("Telegram channel requires a bot token")
        self.token = token
        self.poll_timeout = poll_timeout
        self.menu_buttons = frozenset(menu_buttons)
        self._offset: int | None = None
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(30.0, read=poll_timeout + 10.0),
            transport=transport,
        )

    @property
    def name(self) -> str:
        return "telegram"

    async def stop(self) -> None:
        await self._client.aclose()

    # ─── HTTP ────────────────────────────────────────────────────

    async def _call(self, method: str, payload: dict | None = None):
        """POST a Bot API method and return its `result`."""
        try:
            resp = await self._client.post(f"/bot{self.token}/{method}", json=payload or {})
        except httpx.TimeoutException as e:
            raise RetryableChannelError(f"{method} timed out") from e
        except httpx.TransportError as e:
            raise RetryableChannelError(f"{method} network error: {e}") from e

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code == 200 and data.get("ok"):
            return data.get("result")
        raise classify_error(method, resp.status_code, data.get("description") or resp.text)

    # ─── Inbound ─────────────────────────────────────────────────

    async def receive(self) -> AsyncIterator[InboundEvent]:
        """Long-poll getUpdates forever, yielding events in update order."""
        delay = 1.0
        while True:
            payload: dict = {"timeout": self.poll_timeout}
            if self._offset is not None:
                payload["offset"] = self._offset
            try:
                updates = await self._call("getUpdates", payload)
            except RetryableChannelError as e:
                logger.warning(f"Polling failed, retrying in {delay:.0f}s: {e}")
                await asyncio.sleep(delay)
                delay = min(delay * 2, 30.0)
                continue
            delay = 1.0

            for update in updates or []:
                self._offset = update["update_id"] + 1
                event = self.parse_update(update)
                if event is not None:
                    yield event

    def parse_update(self, update: dict) -> InboundEvent | None:
        """Normalize one Bot API update. Returns None for unsupported updates."""
        msg = update.get("message")
        if not msg:
            return None

        identity = str(msg["chat"]["id"])
        sender = msg.get("from") or {}
        timestamp = datetime.fromtimestamp(msg.get("date", 0), tz=timezone.utc)
        base = dict(
            sender_identity=identity,
            external_message_id=str(msg["message_id"]),
            timestamp=timestamp,
            metadata={"update_id": update["update_id"], "username": sender.get("username", "")},
        )

        if contact := msg.get("contact"):
            # Only a user's own contact may link their chat to a patient.
            if contact.get("user_id") != sender.get("id"):
                logger.info(f"Ignoring foreign contact card from chat {identity}")
                return None
            return InboundEvent(kind="contact", contact_phone=contact.get("phone_number", ""), **base)

        text = msg.get("text", "")
        if text.startswith("/") or text in self.menu_buttons:
            logger.debug(f"Ignoring bot command {text!r} from chat {identity}")
            return None

        media: list[Media] = []
        if photos := msg.get("photo"):
            largest = max(photos, key=lambda p: p.get("file_size", 0) or p.get("width", 0))
            media.append(Media(
                type="image",
                file_ref=largest["file_id"],
                mime_type="image/jpeg",
                filename=f"{largest.get('file_unique_id', largest['file_id'])}.jpg",
                size_bytes=largest.get("file_size", 0),
            ))
        if voice := msg.get("voice"):
            media.append(Media(
                type="voice",
                file_ref=voice["file_id"],
                mime_type=voice.get("mime_type", "audio/ogg"),
                filename=f"{voice.get('file_unique_id', voice['file_id'])}.ogg",
                size_bytes=voice.get("file_size", 0),
            ))
        if document := msg.get("document"):
            media.append(Media(
                type="document",
                file_ref=document["file_id"],
                mime_type=document.get("mime_type", ""),
                filename=document.get("file_name", ""),
                size_bytes=document.get("file_size", 0),
            ))

        origin = msg.get("forward_origin") or {}
        event = InboundEvent(
            text=text,
            caption=msg.get("caption", ""),
            media=media,
            forwarded=bool(msg.get("forward_from_chat")) or origin.get("type") in ("channel", "chat"),
            **base,
        )
        return None if event.is_empty else event

    async def fetch_file(self, file_ref: str) -> bytes:
        info = await self._call("getFile", {"file_id": file_ref})
        file_path = (info or {}).get("file_path")
        if not file_path:
            raise TerminalChannelError(f"File {file_ref} is no longer available")
        try:
            resp = await self._client.get(f"/file/bot{self.token}/{file_path}")
        except httpx.TimeoutException as e:
            raise RetryableChannelError(f"Download of {file_ref} timed out") from e
        except httpx.TransportError as e:
            raise RetryableChannelError(f"Download of {file_ref} failed: {e}") from e
        if resp.status_code != 200:
            raise classify_error("download", resp.status_code, resp.text)
        return resp.content

    # ─── Outbound ────────────────────────────────────────────────

    async def send_text(self, identity: str, text: str, reply_to: str | None = None) -> str:
        payload: dict = {"chat_id": identity, "text": text}
        if reply_to:
            payload["reply_parameters"] = {
                "message_id": int(reply_to),
                "allow_sending_without_reply": True,
            }
        result = await self._call("sendMessage", payload)
        return str(result["message_id"])

    async def send_image(self, identity: str, url: str, caption: str | None = None) -> str:
        payload: dict = {"chat_id": identity, "photo": url}
        if caption:
            payload["caption"] = caption
        result = await self._call("sendPhoto", payload)
        return str(result["message_id"])

    async def send_voice(self, identity: str, url: str) -> str:
        result = await self._call("sendVoice", {"chat_id": identity, "voice": url})
        return str(result["message_id"])

    async def edit_text(self, identity: str, external_message_id: str, text: str) -> None:
        try:
            await self._call("editMessageText", {
                "chat_id": identity,
                "message_id": int(external_message_id),
                "text": text,
            })
        except TerminalChannelError as e:
            # Re-applying the same text is already the desired end state.
            if "message is not modified" in str(e).lower():
                return
            raise

    async def delete_message(self, identity: str, external_message_id: str) -> None:
        await self._call("deleteMessage", {
            "chat_id": identity,
            "message_id": int(external_message_id),
        })
