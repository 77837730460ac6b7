"""Session orchestrator: binds the local shell, replay buffer and relay link.

Event sources are the shell (output, exit), the transport (messages and
lifecycle callbacks) and the local terminal (keystrokes, SIGWINCH, SIGINT
and SIGTERM). They all run on one event loop; callbacks never block, and
anything that has to await is scheduled as a task. ``run()`` resolves
with the process exit status once one of the shutdown paths completes.
"""

from __future__ import annotations

import asyncio
import codecs
import logging
import signal
from dataclasses import dataclass
from typing import Coroutine, Sequence

from termote.config import SESSION_ID_ENV, TermoteConfig
from termote.pty.buffer import ReplayBuffer
from termote.pty.manager import PtyHost
from termote.relay.protocol import (
    BaseMessage,
    HistoryRequest,
    SessionEnd,
    SessionReady,
    TerminalInput,
    TerminalOutput,
    TerminalResize,
)
from termote.relay.transport import RelayTransport, TransportCallbacks, build_relay_url
from termote.session.terminal import LocalTerminal
from termote.session.wire import Wire

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Session:
    """Identity of a relay session, as handed out by the server."""

    id: str
    token: str
    server_url: str


class SessionOrchestrator:
    """Runs one shared terminal session from spawn to shutdown.

    Collaborators can be injected; anything left out is built from
    ``config``. Notices for the user are published on ``wire``.
    """

    def __init__(
        self,
        session: Session,
        config: TermoteConfig | None = None,
        host: PtyHost | None = None,
        transport: RelayTransport | None = None,
        terminal: LocalTerminal | None = None,
        wire: Wire | None = None,
        buffer: ReplayBuffer | None = None,
        handle_signals: bool = True,
    ) -> None:
        self._session = session
        self._config = config or TermoteConfig()
        term_cfg = self._config.terminal

        self._terminal = terminal or LocalTerminal(
            default_cols=term_cfg.default_cols, default_rows=term_cfg.default_rows
        )
        self._wire = wire or Wire()
        self._buffer = buffer or ReplayBuffer(term_cfg.replay_bytes)
        if host is None:
            cols, rows = self._terminal.geometry()
            host = PtyHost(
                cols=cols,
                rows=rows,
                env={SESSION_ID_ENV: session.id},
                settle_delay=term_cfg.command_delay,
            )
        self._host = host
        self._transport = transport or RelayTransport(
            build_relay_url(session.server_url, session.id),
            session.token,
            config=self._config.relay,
        )
        self._handle_signals = handle_signals

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._done: asyncio.Future[int] | None = None
        self._stopping = False
        self._tasks: set[asyncio.Task] = set()
        self._signals: list[int] = []

    @property
    def session(self) -> Session:
        return self._session

    @property
    def wire(self) -> Wire:
        return self._wire

    @property
    def buffer(self) -> ReplayBuffer:
        return self._buffer

    @property
    def stopping(self) -> bool:
        return self._stopping

    # -- main entry --------------------------------------------------------

    async def run(self, command_args: Sequence[str] = ()) -> int:
        """Spawn the shell, connect to the relay and serve until shutdown.

        ``command_args`` are typed into the shell after it settles. Returns
        0 for a normal end (shell exit, session end, interrupt) and 1 when
        the relay rejected the connection.
        """
        loop = asyncio.get_running_loop()
        self._done = loop.create_future()

        self._host.on_data(self._on_output)
        self._host.on_exit(self._on_process_exit)
        self._transport.set_callbacks(
            TransportCallbacks(
                on_message=self._on_message,
                on_open=self._on_open,
                on_reconnecting=self._on_reconnecting,
                on_reconnected=self._on_reconnected,
                on_fatal_error=self._on_fatal_error,
            )
        )

        await self._host.spawn(self._config.terminal.shell, command_args)
        logger.info(
            "Session %s: shell %s started (%s backend)",
            self._session.id,
            self._config.terminal.shell,
            self._host.backend,
        )
        self._transport.connect()

        with self._terminal.raw_mode():
            self._terminal.start_reading(self._host.write)
            self._install_signal_handlers(loop)
            try:
                return await self._done
            finally:
                self._remove_signal_handlers(loop)
                self._terminal.stop_reading()
                await self._transport.close()
                if self._tasks:
                    await asyncio.gather(*self._tasks, return_exceptions=True)

    # -- shell side --------------------------------------------------------

    def _on_output(self, data: bytes) -> None:
        text = self._decoder.decode(data)
        if text:
            self._buffer.write(text.encode())
            self._transport.send(TerminalOutput(data=text))
        self._terminal.write(data)

    def _on_process_exit(self, returncode: int | None) -> None:
        tail = self._decoder.decode(b"", final=True)
        if tail:
            self._buffer.write(tail.encode())
            self._transport.send(TerminalOutput(data=tail))
        if self._stopping:
            return
        logger.info("Shell exited with code %s", returncode)
        self._wire.send_process_exit(returncode)
        self._stopping = True
        self._spawn(self._close_and_finish(0))

    # -- relay side --------------------------------------------------------

    def _on_message(self, message: BaseMessage) -> None:
        if isinstance(message, TerminalInput):
            self._host.write(message.data)
        elif isinstance(message, TerminalResize):
            # A real local terminal owns the size; viewers follow it
            if self._terminal.output_is_tty:
                logger.debug("Ignoring remote resize %dx%d", message.cols, message.rows)
            else:
                self._host.resize(message.cols, message.rows)
        elif isinstance(message, SessionReady):
            self._send_snapshot()
            self._send_geometry()
        elif isinstance(message, HistoryRequest):
            self._send_snapshot()
        elif isinstance(message, SessionEnd):
            logger.info("Session ended by server: %s", message.reason)
            self._wire.send_session_end(message.reason)
            self._shutdown(0)
        else:
            logger.debug("Ignoring %s from relay", message.type)

    def _on_open(self) -> None:
        self._wire.send_connected(self._session.id)
        if self._terminal.output_is_tty:
            self._send_geometry()

    def _on_reconnecting(self, attempt: int, delay: float) -> None:
        self._wire.send_reconnecting(attempt, delay)

    def _on_reconnected(self) -> None:
        self._wire.send_reconnected()
        if self._terminal.output_is_tty:
            self._send_geometry()

    def _on_fatal_error(self, reason: str) -> None:
        self._wire.send_fatal_error(reason)
        self._shutdown(1)

    def _send_snapshot(self) -> None:
        snapshot = self._buffer.snapshot()
        if snapshot:
            self._transport.send(
                TerminalOutput(data=snapshot.decode("utf-8", errors="replace"))
            )

    def _send_geometry(self) -> None:
        cols, rows = self._terminal.geometry()
        self._transport.send(TerminalResize(cols=cols, rows=rows))

    # -- local terminal side -----------------------------------------------

    def _on_local_resize(self) -> None:
        cols, rows = self._terminal.geometry()
        self._host.resize(cols, rows)
        if self._transport.is_connected:
            self._transport.send(TerminalResize(cols=cols, rows=rows))

    def _on_interrupt(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        self._spawn(self._interrupt())

    def _install_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        if not self._handle_signals:
            return
        handlers = [
            (signal.SIGINT, self._on_interrupt),
            (signal.SIGTERM, self._on_interrupt),
        ]
        if hasattr(signal, "SIGWINCH") and self._terminal.output_is_tty:
            handlers.append((signal.SIGWINCH, self._on_local_resize))
        for sig, handler in handlers:
            try:
                loop.add_signal_handler(sig, handler)
            except (NotImplementedError, RuntimeError, ValueError) as e:
                logger.debug("Cannot handle signal %s: %s", sig, e)
                continue
            self._signals.append(sig)

    def _remove_signal_handlers(self, loop: asyncio.AbstractEventLoop) -> None:
        for sig in self._signals:
            loop.remove_signal_handler(sig)
        self._signals.clear()

    # -- shutdown paths ----------------------------------------------------

    def _shutdown(self, status: int) -> None:
        if self._stopping:
            return
        self._stopping = True
        self._spawn(self._end(status))

    async def _end(self, status: int) -> None:
        """Session end or fatal error: short grace period, then tear down."""
        await asyncio.sleep(self._config.terminal.exit_grace)
        await self._teardown()
        self._finish(status)

    async def _interrupt(self) -> None:
        logger.info("Interrupted, shutting down")
        await self._teardown()
        self._finish(0)

    async def _teardown(self) -> None:
        await self._transport.close()
        self._host.kill()
        try:
            await asyncio.wait_for(
                self._host.wait_exit(), timeout=self._config.terminal.kill_timeout
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Shell did not exit within %.1fs", self._config.terminal.kill_timeout
            )

    async def _close_and_finish(self, status: int) -> None:
        await self._transport.close()
        self._finish(status)

    def _finish(self, status: int) -> None:
        if self._done is not None and not self._done.done():
            self._done.set_result(status)

    def _spawn(self, coro: Coroutine[object, object, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
