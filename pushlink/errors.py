"""Relay exceptions.

These exception types let the session layer and its owner react to failures
by kind (retry, drop, log, exit) without scraping strings.
"""

from __future__ import annotations


class RelayError(RuntimeError):
    """Base class for relay session errors."""


class TransportError(RelayError):
    """Connect, login or send failed at the transport level. Retryable."""


class ProtocolError(RelayError):
    """Malformed frame or missing required attribute. Never retried."""

    def __init__(self, message: str, *, payload_preview: str | None = None):
        self.message = message
        self.payload_preview = payload_preview
        super().__init__(self.__str__())

    def __str__(self) -> str:
        if self.payload_preview:
            return f"Protocol error: {self.message} (payload={self.payload_preview!r})"
        return f"Protocol error: {self.message}"


class NackError(RelayError):
    """A nack received from the server for a downstream message."""

    kind = "nack"

    def __init__(
        self,
        code: str,
        *,
        message_id: str | None = None,
        description: str | None = None,
    ):
        self.code = code
        self.message_id = message_id
        self.description = description
        super().__init__(self.__str__())

    def __str__(self) -> str:
        detail = (self.description or "").strip()
        if detail:
            return f"{self.kind} error {self.code} (message_id={self.message_id}): {detail}"
        return f"{self.kind} error {self.code} (message_id={self.message_id})"


class DeviceError(NackError):
    """The target device or request is permanently bad; the message is not requeued."""

    kind = "Device"


class ServerError(NackError):
    """Transient trouble on the server side."""

    kind = "Server"


class RetryExhausted(RelayError):
    """Every attempt of a retry policy failed."""

    def __init__(self, attempts: int, waited_ms: float):
        self.attempts = attempts
        self.waited_ms = waited_ms
        super().__init__(
            f"Retry failed: total of attempts: {attempts}. Total waited time: {waited_ms:.0f}ms."
        )


class ReconnectExhausted(RelayError):
    """The reconnect backoff is exhausted; the session is down for good."""
