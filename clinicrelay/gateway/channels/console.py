"""Console channel — plays the patient side of a conversation in the terminal.

Useful for running the relay worker locally without a bot token. Lines
typed at the prompt become inbound messages from a fixed identity; outbound
operations are printed with Rich.
"""

from __future__ import annotations

import asyncio
import itertools
import mimetypes
from pathlib import Path
from typing import AsyncIterator

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.text import Text

from clinicrelay.errors import TargetNotFoundError, TerminalChannelError
from clinicrelay.gateway.channels.base import BaseChannel
from clinicrelay.gateway.message import InboundEvent, Media

console = Console()

_HELP = (
    "Type a message as the patient. Commands: "
    "[bold]/image PATH [caption][/], [bold]/voice PATH[/], [bold]/file PATH[/], "
    "[bold]/typing[/], [bold]/read ID[/], [bold]/contact PHONE[/], [bold]exit[/]."
)


class ConsoleChannel(BaseChannel):
    """Terminal channel for local development."""

    def __init__(self, identity: str = "console:local") -> None:
        self.identity = identity
        self._ids = itertools.count(1)
        self._sent: dict[str, str] = {}

    @property
    def name(self) -> str:
        return "console"

    async def receive(self) -> AsyncIterator[InboundEvent]:
        """Read patient input from stdin in a loop."""
        console.print(
            Panel(
                Text.from_markup(f"[bold cyan]🩺 ClinicRelay[/] console channel — {_HELP}"),
                border_style="cyan",
            )
        )
        while True:
            try:
                line = await asyncio.to_thread(console.input, "[bold green]patient >[/] ")
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Console channel closed.[/]")
                break

            line = line.strip()
            if not line:
                continue
            if line.lower() in ("exit", "quit", "/exit", "/quit"):
                console.print("[dim]Console channel closed.[/]")
                break

            event = self._parse(line)
            if event is not None:
                yield event

    def _parse(self, line: str) -> InboundEvent | None:
        external_id = str(next(self._ids))
        if not line.startswith("/"):
            return InboundEvent(
                sender_identity=self.identity, text=line, external_message_id=external_id
            )

        command, _, rest = line.partition(" ")
        rest = rest.strip()
        if command == "/typing":
            return InboundEvent(kind="typing", sender_identity=self.identity)
        if command == "/read" and rest:
            return InboundEvent(kind="read", sender_identity=self.identity, external_message_id=rest)
        if command == "/contact" and rest:
            return InboundEvent(kind="contact", sender_identity=self.identity, contact_phone=rest)
        if command in ("/image", "/voice", "/file") and rest:
            path, _, caption = rest.partition(" ")
            media_type = {"/image": "image", "/voice": "voice", "/file": "document"}[command]
            mime, _ = mimetypes.guess_type(path)
            return InboundEvent(
                sender_identity=self.identity,
                caption=caption.strip(),
                media=[Media(type=media_type, file_ref=path, mime_type=mime or "",
                             filename=Path(path).name)],
                external_message_id=external_id,
            )
        console.print(f"[yellow]Unknown command.[/] {_HELP}")
        return None

    def _record(self, text: str) -> str:
        external_id = f"out-{next(self._ids)}"
        self._sent[external_id] = text
        return external_id

    async def send_text(self, identity: str, text: str, reply_to: str | None = None) -> str:
        external_id = self._record(text)
        title = f"[bold cyan]🩺 Clinic → {identity}[/] [dim]#{external_id}[/]"
        if reply_to:
            title += f" [dim](reply to #{reply_to})[/]"
        console.print(Panel(Markdown(text), title=title, border_style="blue", padding=(0, 2)))
        return external_id

    async def send_image(self, identity: str, url: str, caption: str | None = None) -> str:
        external_id = self._record(caption or "")
        console.print(f"  🖼 [link={url}]{url}[/link] {caption or ''} [dim]#{external_id}[/]")
        return external_id

    async def send_voice(self, identity: str, url: str) -> str:
        external_id = self._record("")
        console.print(f"  🎤 [link={url}]{url}[/link] [dim]#{external_id}[/]")
        return external_id

    async def edit_text(self, identity: str, external_message_id: str, text: str) -> None:
        if external_message_id not in self._sent:
            raise TargetNotFoundError(f"message #{external_message_id} not found")
        self._sent[external_message_id] = text
        console.print(f"  ✏️  [dim]#{external_message_id} edited:[/] {text}")

    async def delete_message(self, identity: str, external_message_id: str) -> None:
        if self._sent.pop(external_message_id, None) is None:
            raise TargetNotFoundError(f"message #{external_message_id} not found")
        console.print(f"  🗑  [dim]#{external_message_id} deleted[/]")

    async def fetch_file(self, file_ref: str) -> bytes:
        path = Path(file_ref).expanduser()
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise TerminalChannelError(f"Cannot read {path}: {e}") from e
