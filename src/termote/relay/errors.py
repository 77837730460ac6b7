"""Error taxonomy for the relay client.

Retryable transport failures never show up here: they are plain
``OSError``/``websockets`` exceptions that the transport swallows and turns
into a reconnect. Everything below is either terminal for the session or a
local bug.
"""

from __future__ import annotations

LOGIN_HINT = 'Authentication failed. Please run "termote login" again.'


class TermoteError(Exception):
    """Base class for termote errors."""


class FatalError(TermoteError):
    """An unrecoverable failure; the message is meant for the user."""


class HandshakeRejected(FatalError):
    """The relay answered the WebSocket upgrade with an HTTP error status."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(describe_handshake_status(status_code))


class ProtocolError(TermoteError, ValueError):
    """An inbound frame could not be decoded into a protocol message."""


class ApiError(TermoteError):
    """A REST call against the relay server failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class TransportStateError(TermoteError, RuntimeError):
    """A transport state transition that the state machine does not allow."""


def describe_handshake_status(status_code: int) -> str:
    """Map a rejected-handshake HTTP status to a user-facing message."""
    if status_code == 400:
        return "Invalid request parameters. Please check your session configuration."
    if status_code == 401:
        return LOGIN_HINT
    if status_code == 404:
        return "Session not found. The session may have been deleted or expired."
    if status_code in (500, 502, 503):
        return "Server error. Please try again later."
    return f"Connection failed (HTTP {status_code}). Please try again."
