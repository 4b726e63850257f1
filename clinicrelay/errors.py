"""Error taxonomy shared by the dashboard and the relay worker."""

from __future__ import annotations


class RelayError(Exception):
    """Base class for all ClinicRelay errors."""


class ChannelError(RelayError):
    """An external channel operation failed.

    `retryable` tells the delivery loop whether another attempt may succeed.
    """

    retryable: bool = False

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class RetryableChannelError(ChannelError):
    """Transient failure: network error, timeout, rate limit, 5xx."""

    retryable = True


class TerminalChannelError(ChannelError):
    """Permanent failure: bad request, blocked bot, unreachable target."""

    retryable = False


class TargetNotFoundError(TerminalChannelError):
    """The external message to edit or delete no longer exists."""


class MissingConnectionError(RelayError):
    """The patient has no resolved external channel identity."""

    def __init__(self, patient_id: str) -> None:
        super().__init__(f"Patient {patient_id} has no channel connection")
        self.patient_id = patient_id


class InvalidStatusTransition(RelayError):
    """A message status was asked to move backwards."""


class MediaPublishError(RelayError):
    """An inbound attachment could not be moved to durable storage."""
