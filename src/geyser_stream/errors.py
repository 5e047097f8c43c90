"""
Errors
======

Exception taxonomy for the streaming core.

    GeyserStreamError
        ValidationError        malformed filter input, raised by the builder
        AuthError              credentials rejected, never retried
        TransportError         connection refused/reset, TLS failure
            StreamTimeout          no frames within the keepalive window
            RetriesExhaustedError  configured reconnect cap reached
        ProtocolError          frame that cannot be decoded
        ChannelClosed          consumer channel closed without an error

ProtocolError is absorbed by the UpdateDemultiplexer and never reaches the
consumer; TransportError is absorbed by the ReconnectSupervisor unless a
reconnect cap is configured.
"""

from typing import Optional


class GeyserStreamError(Exception):
    """Base class for all errors raised by geyser_stream."""
    pass


class ValidationError(GeyserStreamError):
    """Raised when a filter or request fails validation."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field


class AuthError(GeyserStreamError):
    """Raised when the remote service rejects the credentials."""
    pass


class TransportError(GeyserStreamError):
    """Raised on connection-level failures."""
    pass


class StreamTimeout(TransportError):
    """Raised when no frame arrives within the keepalive window."""
    pass


class RetriesExhaustedError(TransportError):
    """Raised when the supervisor gives up after the configured attempts."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class ProtocolError(GeyserStreamError):
    """Raised when a frame cannot be decoded."""
    pass


class ChannelClosed(GeyserStreamError):
    """Raised to consumers of an update channel that was closed cleanly."""
    pass
