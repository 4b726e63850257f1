"""ClinicRelay — dashboard ↔ chat-channel message synchronization."""

__version__ = "0.1.0"
