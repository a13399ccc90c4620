"""Custom exception hierarchy for feverwatch."""

from __future__ import annotations


class FeverWatchError(Exception):
    """Base exception for all feverwatch errors."""


class FeverWatchConfigError(FeverWatchError):
    """Invalid or missing configuration."""


class InvalidReadingError(FeverWatchError):
    """Reading rejected by the classifier.

    The reading is discarded: it is neither stored nor alerted on.
    """

    def __init__(
        self,
        message: str,
        *,
        device_id: str = "",
        temperature: float | None = None,
        reason: str = "",
    ) -> None:
        self.device_id = device_id
        self.temperature = temperature
        self.reason = reason
        super().__init__(message)


class DeliveryFailure(FeverWatchError):
    """A single delivery attempt on one channel failed.

    Recoverable: the dispatcher retries the channel with backoff.
    """

    def __init__(self, message: str, *, channel: str = "") -> None:
        self.channel = channel
        super().__init__(message)


class DeliveryExhausted(DeliveryFailure):
    """A channel spent all of its delivery attempts.

    Reported and recorded on the notification, never fatal for the
    pipeline.
    """

    def __init__(self, message: str, *, channel: str = "", attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message, channel=channel)


class AuthFailure(FeverWatchError):
    """Session token rejected or authentication window expired.

    Unrecoverable for the current connection attempt; a fresh token is
    required before retrying.
    """

    def __init__(self, message: str, *, reason: str = "") -> None:
        self.reason = reason or message
        super().__init__(message)


class ConnectionExhausted(FeverWatchError):
    """Client reconnect budget spent.

    Surfaced to the holding application; no further automatic attempt is
    made without explicit user action.
    """

    def __init__(self, message: str, *, attempts: int = 0) -> None:
        self.attempts = attempts
        super().__init__(message)


class TransportError(FeverWatchError):
    """Network-level failure (WebSocket or HTTP)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class UnknownEventError(FeverWatchError):
    """Wire message that does not decode to a known event kind."""
