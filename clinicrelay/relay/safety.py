"""Content-safety gate — pass/fail screening of inbound patient content.

Heuristic only: a scam/phishing text pattern, a list of executable
attachment extensions, and posts forwarded from channels. All three can be
tuned from SafetyConfig.
"""

from __future__ import annotations

import re
from pathlib import PurePath

from clinicrelay.config import SafetyConfig

# Gambling spam, crypto scams and invite links to other messengers
_DEFAULT_SCAM_RE = re.compile(
    r"(tonplay|free\s*spin|bonus\s*\d+|crypto\s*giveaway|bitcoin|usdt|invest|airdrop"
    r"|http.*telegram\.me|http.*t\.me|http.*whatsapp|click\s*here|virus)",
    re.IGNORECASE,
)

_DEFAULT_DANGEROUS_EXTENSIONS = frozenset({
    "exe", "bat", "cmd", "vbs", "vbe", "js", "jse", "wsf", "wsh",
    "msc", "scr", "reg", "pif", "apk", "dll", "msi",
})


class ContentSafetyGate:
    """Decides whether an inbound event may enter the conversation."""

    def __init__(self, config: SafetyConfig | None = None) -> None:
        config = config or SafetyConfig()
        self._scam_re = (
            re.compile(config.scam_pattern, re.IGNORECASE)
            if config.scam_pattern
            else _DEFAULT_SCAM_RE
        )
        self._extensions = (
            frozenset(ext.lower().lstrip(".") for ext in config.dangerous_extensions)
            if config.dangerous_extensions
            else _DEFAULT_DANGEROUS_EXTENSIONS
        )
        self.block_forwarded = config.block_forwarded_posts

    def is_unsafe_text(self, text: str) -> bool:
        return bool(text) and self._scam_re.search(text) is not None

    def is_dangerous_attachment(self, filename: str) -> bool:
        suffix = PurePath(filename or "").suffix.lower().lstrip(".")
        return suffix in self._extensions

    def is_unsafe(
        self, text: str, filenames: list[str] | None = None, forwarded: bool = False
    ) -> bool:
        """True if the text, any attachment name, or a forwarded post fails the gate."""
        if forwarded and self.block_forwarded:
            return True
        if self.is_unsafe_text(text):
            return True
        return any(self.is_dangerous_attachment(name) for name in filenames or [])
