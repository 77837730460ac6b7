"""Relay client: wire protocol, resilient transport, and REST collaborators."""

from termote.relay.backoff import Backoff
from termote.relay.errors import (
    ApiError,
    FatalError,
    HandshakeRejected,
    ProtocolError,
    TermoteError,
    TransportStateError,
)
from termote.relay.transport import (
    ConnectionState,
    RelayTransport,
    TransportCallbacks,
    build_relay_url,
)

__all__ = [
    "Backoff",
    "ApiError",
    "FatalError",
    "HandshakeRejected",
    "ProtocolError",
    "TermoteError",
    "TransportStateError",
    "ConnectionState",
    "RelayTransport",
    "TransportCallbacks",
    "build_relay_url",
]
