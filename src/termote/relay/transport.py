"""Resilient relay transport: one logical, self-healing WebSocket link.

The transport hides physical reconnects from the orchestrator. All it
reports are lifecycle callbacks: open, reconnecting, reconnected, fatal
error, close. A single runner task drives the state machine below; every
state change goes through ``_transition()``, which checks it against the
allowed-transition table.

    IDLE -> CONNECTING -> CONNECTED -> RECONNECTING -> CONNECTING ...
                 \\            \\
                  +------------+--> FATAL_ERROR (handshake rejected)
    any live state --close()--> CLOSED

The connection itself is opened by an injectable ``connector`` so the whole
machine runs against an in-memory fake in tests.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import AsyncIterator, Awaitable, Callable, Protocol
from urllib.parse import urlencode, urlsplit, urlunsplit

from websockets.asyncio.client import connect as ws_connect
from websockets.exceptions import InvalidStatus, InvalidURI, WebSocketException

from termote.config import RelayConfig
from termote.relay.backoff import Backoff
from termote.relay.errors import (
    FatalError,
    HandshakeRejected,
    ProtocolError,
    TransportStateError,
)
from termote.relay.protocol import BaseMessage, Ping, Pong, decode, encode

logger = logging.getLogger(__name__)

WS_PATH = "/api/terminal/ws"
AGENT_ROLE = "agent"

# Failures that mean "try again later" rather than "give up".
_RETRYABLE = (OSError, asyncio.TimeoutError, WebSocketException)


class ConnectionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    FATAL_ERROR = "fatal_error"


_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.IDLE: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.CLOSED}
    ),
    ConnectionState.CONNECTING: frozenset(
        {
            ConnectionState.CONNECTED,
            ConnectionState.RECONNECTING,
            ConnectionState.FATAL_ERROR,
            ConnectionState.CLOSED,
        }
    ),
    ConnectionState.CONNECTED: frozenset(
        {
            ConnectionState.RECONNECTING,
            ConnectionState.FATAL_ERROR,
            ConnectionState.CLOSED,
        }
    ),
    ConnectionState.RECONNECTING: frozenset(
        {ConnectionState.CONNECTING, ConnectionState.CLOSED}
    ),
    ConnectionState.CLOSED: frozenset(),
    ConnectionState.FATAL_ERROR: frozenset(),
}


def can_transition(current: ConnectionState, target: ConnectionState) -> bool:
    return target in _TRANSITIONS[current]


class Connection(Protocol):
    """The slice of a WebSocket connection the transport relies on."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> AsyncIterator[str | bytes]: ...


Connector = Callable[[str, dict[str, str]], Awaitable[Connection]]


def build_relay_url(server_url: str, session_id: str, role: str = AGENT_ROLE) -> str:
    """``<base>/api/terminal/ws?sessionId=<id>&role=<role>`` on a ws(s) scheme."""
    parts = urlsplit(server_url.rstrip("/"))
    scheme = {"http": "ws", "https": "wss"}.get(parts.scheme, parts.scheme)
    query = urlencode({"sessionId": session_id, "role": role})
    return urlunsplit((scheme, parts.netloc, parts.path + WS_PATH, query, ""))


def make_connector(open_timeout: float = 10.0) -> Connector:
    """Connector opening real WebSocket connections with ``websockets``.

    The library's own keepalive pings are disabled: liveness is handled by
    the protocol-level PING/PONG heartbeat.
    """

    async def _open(url: str, headers: dict[str, str]) -> Connection:
        try:
            return await ws_connect(
                url,
                additional_headers=headers,
                open_timeout=open_timeout,
                ping_interval=None,
            )
        except InvalidStatus as e:
            raise HandshakeRejected(e.response.status_code) from e
        except InvalidURI as e:
            raise FatalError(f"Invalid relay URL: {url}") from e

    return _open


@dataclass
class TransportCallbacks:
    """Lifecycle and message hooks. All optional, all called on the loop."""

    on_message: Callable[[BaseMessage], None] | None = None
    on_open: Callable[[], None] | None = None
    on_close: Callable[[], None] | None = None
    on_reconnecting: Callable[[int, float], None] | None = None
    on_reconnected: Callable[[], None] | None = None
    on_fatal_error: Callable[[str], None] | None = None


class RelayTransport:
    """Persistent connection to the relay with reconnect and heartbeat.

    ``send()`` is best-effort: while not connected, messages are dropped,
    never queued. Re-establishing viewer state after a reconnect is the
    orchestrator's job, through ``on_open``/``on_reconnected``.
    """

    def __init__(
        self,
        url: str,
        token: str,
        callbacks: TransportCallbacks | None = None,
        config: RelayConfig | None = None,
        connector: Connector | None = None,
    ) -> None:
        self._url = url
        self._token = token
        self._callbacks = callbacks or TransportCallbacks()
        self._config = config or RelayConfig()
        self._connector = connector or make_connector(self._config.open_timeout)
        self._backoff = Backoff(
            initial=self._config.initial_delay,
            maximum=self._config.max_delay,
            factor=self._config.backoff_factor,
        )
        self._state = ConnectionState.IDLE
        self._has_connected = False
        self._parse_error_logged = False
        self._runner: asyncio.Task | None = None
        self._conn: Connection | None = None
        self._outbox: asyncio.Queue[str] | None = None
        self._last_seen: float = 0.0

    # -- public API --------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._backoff.attempt

    def set_callbacks(self, callbacks: TransportCallbacks) -> None:
        self._callbacks = callbacks

    def connect(self) -> None:
        """Start connecting in the background. Must run inside an event loop.

        A call while an attempt is in flight or a link is open does nothing.
        """
        if self._state is not ConnectionState.IDLE:
            logger.debug("connect() ignored in state %s", self._state.value)
            return
        self._transition(ConnectionState.CONNECTING)
        self._runner = asyncio.create_task(self._run())

    def send(self, message: BaseMessage) -> bool:
        """Queue a message on the live connection; False if it was dropped."""
        if self._state is not ConnectionState.CONNECTED or self._outbox is None:
            logger.debug(
                "Dropping %s: transport %s", message.type, self._state.value
            )
            return False
        self._outbox.put_nowait(encode(message))
        return True

    async def close(self) -> None:
        """Close for good: cancel pending retries and heartbeat, drop the link.

        Idempotent. After a fatal error the transport is already finished
        and this is a no-op.
        """
        if self._state in (ConnectionState.CLOSED, ConnectionState.FATAL_ERROR):
            return
        self._transition(ConnectionState.CLOSED)
        logger.info("Relay transport closed")

        runner, self._runner = self._runner, None
        if runner is not None and not runner.done():
            runner.cancel()
            if runner is not asyncio.current_task():
                try:
                    await runner
                except asyncio.CancelledError:
                    pass
        self._fire(self._callbacks.on_close)

    async def wait_closed(self) -> ConnectionState:
        """Wait for the runner to finish; returns the final state."""
        runner = self._runner
        if runner is not None:
            await asyncio.wait({runner})
        return self._state

    # -- state machine -----------------------------------------------------

    def _transition(self, target: ConnectionState) -> None:
        if not can_transition(self._state, target):
            raise TransportStateError(
                f"illegal transport transition {self._state.value} -> {target.value}"
            )
        logger.debug("Transport %s -> %s", self._state.value, target.value)
        self._state = target

    async def _run(self) -> None:
        while self._state is ConnectionState.CONNECTING:
            try:
                conn = await self._connector(self._url, self._headers())
            except FatalError as e:
                self._enter_fatal(str(e))
                return
            except _RETRYABLE as e:
                logger.debug("Connection attempt failed: %s", e)
            else:
                await self._serve(conn)

            if self._state not in (
                ConnectionState.CONNECTING,
                ConnectionState.CONNECTED,
            ):
                return
            await self._wait_and_retry()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token}"}

    async def _serve(self, conn: Connection) -> None:
        """Run one physical connection until it drops or is closed."""
        loop = asyncio.get_running_loop()
        self._conn = conn
        self._outbox = asyncio.Queue()
        self._transition(ConnectionState.CONNECTED)
        self._backoff.reset()
        self._parse_error_logged = False
        self._last_seen = loop.time()

        writer = asyncio.create_task(self._write_loop(conn, self._outbox))
        heartbeat = asyncio.create_task(self._heartbeat_loop(conn))

        reconnected = self._has_connected
        self._has_connected = True
        logger.info("Relay connected%s", " again" if reconnected else "")
        if reconnected:
            self._fire(self._callbacks.on_reconnected)
        else:
            self._fire(self._callbacks.on_open)

        try:
            async for frame in conn:
                self._handle_frame(frame)
        except _RETRYABLE as e:
            logger.info("Relay connection lost: %s", e)
        finally:
            writer.cancel()
            heartbeat.cancel()
            await asyncio.gather(writer, heartbeat, return_exceptions=True)
            self._conn = None
            self._outbox = None
            try:
                await conn.close()
            except _RETRYABLE as e:
                logger.debug("Error closing relay connection: %s", e)

    async def _wait_and_retry(self) -> None:
        attempt, delay = self._backoff.next()
        self._transition(ConnectionState.RECONNECTING)
        logger.info("Reconnecting in %.1fs (attempt %d)", delay, attempt)
        self._fire(self._callbacks.on_reconnecting, attempt, delay)
        await asyncio.sleep(delay)
        if self._state is ConnectionState.RECONNECTING:
            self._transition(ConnectionState.CONNECTING)

    def _enter_fatal(self, reason: str) -> None:
        self._transition(ConnectionState.FATAL_ERROR)
        logger.error("Relay rejected the connection: %s", reason)
        self._fire(self._callbacks.on_fatal_error, reason)

    # -- per-connection tasks ----------------------------------------------

    def _handle_frame(self, frame: str | bytes) -> None:
        self._last_seen = asyncio.get_running_loop().time()
        try:
            message = decode(frame)
        except ProtocolError as e:
            # Only the first bad frame of a clean connection is worth a log line
            if self._backoff.attempt == 0 and not self._parse_error_logged:
                self._parse_error_logged = True
                logger.warning("Dropping malformed relay frame: %s", e)
            return

        self._backoff.reset()
        if isinstance(message, Ping):
            self.send(Pong())
            return
        if isinstance(message, Pong):
            return
        self._fire(self._callbacks.on_message, message)

    async def _write_loop(self, conn: Connection, outbox: asyncio.Queue[str]) -> None:
        while True:
            frame = await outbox.get()
            try:
                await conn.send(frame)
            except _RETRYABLE as e:
                logger.debug("Send failed, waiting for reconnect: %s", e)
                return

    async def _heartbeat_loop(self, conn: Connection) -> None:
        """PING every interval; drop the link if a PING goes unanswered.

        Any inbound frame after the PING counts as an answer. The answer
        deadline never exceeds the interval, so a link is judged before
        the next PING is due.
        """
        loop = asyncio.get_running_loop()
        interval = self._config.heartbeat_interval
        timeout = self._config.heartbeat_timeout
        deadline = None if timeout is None else min(timeout, interval)
        next_ping = loop.time() + interval
        while True:
            await asyncio.sleep(max(next_ping - loop.time(), 0))
            sent_at = loop.time()
            next_ping = sent_at + interval
            self.send(Ping())
            if deadline is None:
                continue
            await asyncio.sleep(deadline)
            if self._last_seen >= sent_at:
                continue
            logger.warning(
                "No answer from relay %.1fs after PING, dropping connection",
                loop.time() - sent_at,
            )
            try:
                await conn.close()
            except _RETRYABLE as e:
                logger.debug("Error closing stale connection: %s", e)
            return

    # -- helpers -----------------------------------------------------------

    def _fire(self, callback: Callable[..., None] | None, *args: object) -> None:
        if callback is None:
            return
        try:
            callback(*args)
        except Exception:
            logger.exception("Error in transport callback %s", callback)
