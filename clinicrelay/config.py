"""Configuration management for ClinicRelay.

Loads config from ~/.clinicrelay/config.json, environment variables, or defaults.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path


DEFAULT_MENU_BUTTONS = (
    "📅 Jadvalni ko'rish",
    "📅 Проверить график",
    "📅 Check Schedule",
)


def _default_config_dir() -> Path:
    """Return the default ClinicRelay config directory."""
    return Path.home() / ".clinicrelay"


@dataclass
class StoreConfig:
    """Shared document store settings."""

    database: str = ""
    busy_timeout: float = 30.0


@dataclass
class ChannelConfig:
    """Configuration for the external chat channel."""

    type: str = "console"              # "console" or "telegram"
    token: str = ""
    base_url: str = "https://api.telegram.org"
    poll_timeout: int = 30             # long-polling seconds for getUpdates
    console_identity: str = "console:local"
    # Reply-keyboard labels; pressing one is a bot command, not a chat message
    menu_buttons: list[str] = field(default_factory=lambda: list(DEFAULT_MENU_BUTTONS))
    link_success_text: str = "✅ Welcome, {name}! Your chat is now connected to the clinic."
    link_not_found_text: str = "❌ Number not found. Contact admin."


@dataclass
class DeliveryConfig:
    """Outbound task delivery settings."""

    max_attempts: int = 5
    backoff_base: float = 1.0
    backoff_max: float = 60.0
    attempt_timeout: float = 30.0
    poll_interval: float = 1.0
    lease_seconds: float = 60.0
    batch_size: int = 20


@dataclass
class ConversationConfig:
    """Dashboard conversation view settings."""

    live_window: int = 30
    page_size: int = 30
    live_poll_interval: float = 1.0
    typing_quiet_period: float = 3.0
    typing_stale_after: float = 8.0
    cache_dir: str = ""
    timezone: str = "UTC"              # IANA zone for display times, e.g. "Asia/Tashkent"


@dataclass
class MediaConfig:
    """Durable media storage settings."""

    storage_dir: str = ""
    public_base_url: str = ""


@dataclass
class SafetyConfig:
    """Content-safety gate overrides (empty means built-in defaults)."""

    scam_pattern: str = ""
    dangerous_extensions: list[str] = field(default_factory=list)
    block_forwarded_posts: bool = True


@dataclass
class RelayConfig:
    """Root configuration for ClinicRelay."""

    name: str = "ClinicRelay"
    version: str = "0.1.0"

    store: StoreConfig = field(default_factory=StoreConfig)
    channel: ChannelConfig = field(default_factory=ChannelConfig)
    delivery: DeliveryConfig = field(default_factory=DeliveryConfig)
    conversation: ConversationConfig = field(default_factory=ConversationConfig)
    media: MediaConfig = field(default_factory=MediaConfig)
    safety: SafetyConfig = field(default_factory=SafetyConfig)

    # Config directory
    config_dir: Path = field(default_factory=_default_config_dir)

    def __post_init__(self) -> None:
        """Set computed defaults after initialization."""
        self._fill_paths()

    def _fill_paths(self) -> None:
        if not self.store.database:
            self.store.database = str(self.config_dir / "relay.db")
        if not self.conversation.cache_dir:
            self.conversation.cache_dir = str(self.config_dir / "cache")
        if not self.media.storage_dir:
            self.media.storage_dir = str(self.config_dir / "media")

    @property
    def database_path(self) -> Path:
        """Return the resolved database path."""
        return Path(self.store.database)

    @property
    def cache_path(self) -> Path:
        """Return the local conversation cache directory."""
        return Path(self.conversation.cache_dir)

    @property
    def media_path(self) -> Path:
        """Return the durable media directory."""
        return Path(self.media.storage_dir)

    @property
    def log_dir(self) -> Path:
        """Return the log directory."""
        return self.config_dir / "logs"


def _load_env_overrides(config: RelayConfig) -> None:
    """Override config values from environment variables."""
    if db := os.getenv("CLINICRELAY_DB"):
        config.store.database = db
    if token := os.getenv("CLINICRELAY_TELEGRAM_TOKEN"):
        config.channel.token = token
    if channel := os.getenv("CLINICRELAY_CHANNEL"):
        config.channel.type = channel
    if attempts := os.getenv("CLINICRELAY_MAX_ATTEMPTS"):
        config.delivery.max_attempts = int(attempts)
    if tz := os.getenv("CLINICRELAY_TIMEZONE"):
        config.conversation.timezone = tz


def _update_section(section: object, data: dict) -> None:
    """Copy known keys from a JSON dict onto a config section."""
    for key, value in data.items():
        if hasattr(section, key):
            setattr(section, key, value)


def _dict_to_config(data: dict, config_dir: Path | None = None) -> RelayConfig:
    """Convert a JSON dict to a RelayConfig."""
    config = RelayConfig(config_dir=config_dir or _default_config_dir())

    agent = data.get("agent", {})
    config.name = agent.get("name", config.name)
    config.version = agent.get("version", config.version)

    for section_name in ("store", "channel", "delivery", "conversation", "media", "safety"):
        if section_data := data.get(section_name):
            _update_section(getattr(config, section_name), section_data)

    return config


def _config_to_dict(config: RelayConfig) -> dict:
    """Convert a RelayConfig to a JSON-serializable dict."""
    return {
        "agent": {
            "name": config.name,
            "version": config.version,
        },
        "store": {
            "database": config.store.database,
            "busy_timeout": config.store.busy_timeout,
        },
        "channel": {
            "type": config.channel.type,
            "token": config.channel.token,
            "base_url": config.channel.base_url,
            "poll_timeout": config.channel.poll_timeout,
            "console_identity": config.channel.console_identity,
            "menu_buttons": config.channel.menu_buttons,
            "link_success_text": config.channel.link_success_text,
            "link_not_found_text": config.channel.link_not_found_text,
        },
        "delivery": {
            "max_attempts": config.delivery.max_attempts,
            "backoff_base": config.delivery.backoff_base,
            "backoff_max": config.delivery.backoff_max,
            "attempt_timeout": config.delivery.attempt_timeout,
            "poll_interval": config.delivery.poll_interval,
            "lease_seconds": config.delivery.lease_seconds,
            "batch_size": config.delivery.batch_size,
        },
        "conversation": {
            "live_window": config.conversation.live_window,
            "page_size": config.conversation.page_size,
            "live_poll_interval": config.conversation.live_poll_interval,
            "typing_quiet_period": config.conversation.typing_quiet_period,
            "typing_stale_after": config.conversation.typing_stale_after,
            "cache_dir": config.conversation.cache_dir,
            "timezone": config.conversation.timezone,
        },
        "media": {
            "storage_dir": config.media.storage_dir,
            "public_base_url": config.media.public_base_url,
        },
        "safety": {
            "scam_pattern": config.safety.scam_pattern,
            "dangerous_extensions": config.safety.dangerous_extensions,
            "block_forwarded_posts": config.safety.block_forwarded_posts,
        },
    }


def load_config(config_path: Path | None = None) -> RelayConfig:
    """Load ClinicRelay configuration from file, env vars, and defaults.

    Priority: env vars > config file > defaults.
    Creates default config file if it doesn't exist.
    """
    config_dir = config_path.parent if config_path else _default_config_dir()
    config_file = config_path or (config_dir / "config.json")

    if config_file.exists():
        with open(config_file) as f:
            data = json.load(f)
        config = _dict_to_config(data, config_dir)
    else:
        config = RelayConfig(config_dir=config_dir)

    config.config_dir = config_dir
    config._fill_paths()

    _load_env_overrides(config)

    config.config_dir.mkdir(parents=True, exist_ok=True)
    config.cache_path.mkdir(parents=True, exist_ok=True)
    config.media_path.mkdir(parents=True, exist_ok=True)
    config.log_dir.mkdir(parents=True, exist_ok=True)

    if not config_file.exists():
        save_config(config, config_file)

    return config


def save_config(config: RelayConfig, config_path: Path | None = None) -> None:
    """Save configuration to JSON file."""
    config_file = config_path or (config.config_dir / "config.json")
    config_file.parent.mkdir(parents=True, exist_ok=True)
    with open(config_file, "w") as f:
        json.dump(_config_to_dict(config), f, indent=2)
