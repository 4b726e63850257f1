"""Base channel interface — all channel implementations inherit from this."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import AsyncIterator

from clinicrelay.gateway.message import InboundEvent


class BaseChannel(ABC):
    """Abstract base for external chat channels.

    Each channel must:
    1. Convert its native updates to InboundEvent (receive)
    2. Execute outbound operations against a target identity

    Every outbound operation is fallible and raises a ChannelError subclass:
    RetryableChannelError for transient failures, TerminalChannelError
    otherwise, TargetNotFoundError when the message to edit/delete is gone.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the channel identifier (e.g., 'console', 'telegram')."""
        ...

    @abstractmethod
    async def receive(self) -> AsyncIterator[InboundEvent]:
        """Yield normalized events from the channel, in delivery order."""
        ...
        yield  # type: ignore  # Make this a generator

    @abstractmethod
    async def send_text(
        self, identity: str, text: str, reply_to: str | None = None
    ) -> str:
        """Send a text message. Returns the channel's message id."""
        ...

    @abstractmethod
    async def send_image(self, identity: str, url: str, caption: str | None = None) -> str:
        """Send an image by URL. Returns the channel's message id."""
        ...

    @abstractmethod
    async def send_voice(self, identity: str, url: str) -> str:
        """Send a voice note by URL. Returns the channel's message id."""
        ...

    @abstractmethod
    async def edit_text(self, identity: str, external_message_id: str, text: str) -> None:
        """Replace the text of a previously sent message."""
        ...

    @abstractmethod
    async def delete_message(self, identity: str, external_message_id: str) -> None:
        """Delete a message from the conversation."""
        ...

    @abstractmethod
    async def fetch_file(self, file_ref: str) -> bytes:
        """Download an attachment from the channel's transient storage."""
        ...

    async def start(self) -> None:
        """Start the channel (e.g., connect to API, open socket). Override if needed."""

    async def stop(self) -> None:
        """Stop the channel gracefully. Override if needed."""
