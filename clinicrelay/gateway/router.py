"""Gateway router — builds the configured external channel."""

from __future__ import annotations

import httpx

from clinicrelay.config import RelayConfig
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.gateway.channels.console import ConsoleChannel
from clinicrelay.gateway.channels.telegram import TelegramChannel


class Gateway:
    """Gateway owns the channel the relay worker talks to.

    Exactly one channel is enabled at a time; `channel.type` in the config
    selects it.
    """

    def __init__(
        self,
        config: RelayConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.channels: dict[str, BaseChannel] = {}
        self._init_channels(transport)

    def _init_channels(self, transport: httpx.AsyncBaseTransport | None) -> None:
        """Initialize the enabled channel based on config."""
        kind = self.config.channel.type
        if kind == "console":
            self.channels["console"] = ConsoleChannel(self.config.channel.console_identity)
        elif kind == "telegram":
            self.channels["telegram"] = TelegramChannel(
                token=self.config.channel.token,
                base_url=self.config.channel.base_url,
                poll_timeout=self.config.channel.poll_timeout,
                transport=transport,
                menu_buttons=self.config.channel.menu_buttons,
            )
        else:
            raise ValueError(f"Unknown channel type '{kind}'. Use 'console' or 'telegram'.")

    def get_channel(self, name: str) -> BaseChannel | None:
        """Get a channel by name."""
        return self.channels.get(name)

    @property
    def primary(self) -> BaseChannel:
        """The channel outbound tasks are delivered through."""
        return self.channels[self.config.channel.type]
