"""PTY host: owns the one local shell shared through the relay."""

from __future__ import annotations

import asyncio
import logging
import os
from typing import Sequence

from termote.pty.session import (
    DataCallback,
    ExitCallback,
    PipeProcess,
    PtyProcess,
    PtyUnavailableError,
    TerminalProcess,
)

logger = logging.getLogger(__name__)

DEFAULT_TERM = "xterm-256color"
COMMAND_SETTLE_DELAY = 0.3


class PtyHost:
    """Spawns and owns the local interactive process.

    The host tries a real pseudo-terminal first. If the system cannot
    allocate one it substitutes a pipe-based process with the same
    surface, once, at spawn time; the only visible difference afterwards
    is that ``resize()`` does nothing.

    Data and exit callbacks are registered on the host, not on the
    backend, so they can be attached before the process exists.
    """

    def __init__(
        self,
        cols: int = 80,
        rows: int = 24,
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        settle_delay: float = COMMAND_SETTLE_DELAY,
        prefer_pty: bool = True,
    ) -> None:
        self._cols = cols
        self._rows = rows
        self._extra_env = dict(env or {})
        self._cwd = cwd
        self._settle_delay = settle_delay
        self._prefer_pty = prefer_pty
        self._process: TerminalProcess | None = None
        self._data_callbacks: list[DataCallback] = []
        self._exit_callbacks: list[ExitCallback] = []
        self._exited: asyncio.Event | None = None
        self._inject_handle: asyncio.TimerHandle | None = None

    # -- callbacks ---------------------------------------------------------

    def on_data(self, callback: DataCallback) -> None:
        """Register a sink for all process output (one merged stream)."""
        self._data_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        """Register a callback fired once with the exit code.

        Registering after the process already exited calls it right away.
        """
        if self._process is not None and self._exited and self._exited.is_set():
            callback(self._process.returncode)
            return
        self._exit_callbacks.append(callback)

    # -- lifecycle ---------------------------------------------------------

    async def spawn(self, command: str, args: Sequence[str] = ()) -> TerminalProcess:
        """Start the shell, then type ``args`` into it after a short delay.

        The extra arguments are injected as input rather than executed
        directly, so the shell stays interactive and user aliases and
        functions apply.
        """
        if self._process is not None:
            raise RuntimeError("PTY host already has a process")

        self._exited = asyncio.Event()
        env = self._build_env()
        process: TerminalProcess | None = None

        if self._prefer_pty:
            candidate = PtyProcess(
                [command], env=env, cwd=self._cwd, cols=self._cols, rows=self._rows
            )
            self._attach(candidate)
            try:
                await candidate.start()
                process = candidate
            except PtyUnavailableError as e:
                logger.warning("%s; falling back to a pipe-based process", e)

        if process is None:
            process = PipeProcess(
                [command], env=env, cwd=self._cwd, cols=self._cols, rows=self._rows
            )
            self._attach(process)
            await process.start()

        self._process = process

        if args:
            line = " ".join(args) + "\n"
            loop = asyncio.get_running_loop()
            self._inject_handle = loop.call_later(
                self._settle_delay, self._inject, line.encode()
            )
        return process

    def _attach(self, process: TerminalProcess) -> None:
        process.set_on_data(self._dispatch_data)
        process.set_on_exit(self._dispatch_exit)

    def _build_env(self) -> dict[str, str]:
        env = {k: v for k, v in os.environ.items() if v}
        env.setdefault("TERM", DEFAULT_TERM)
        env["COLUMNS"] = str(self._cols)
        env["LINES"] = str(self._rows)
        env.update(self._extra_env)
        return env

    def _inject(self, data: bytes) -> None:
        self._inject_handle = None
        logger.debug("Injecting startup command (%d bytes)", len(data))
        self.write(data)

    def _cancel_injection(self) -> None:
        if self._inject_handle is not None:
            self._inject_handle.cancel()
            self._inject_handle = None

    def _dispatch_data(self, data: bytes) -> None:
        for callback in list(self._data_callbacks):
            try:
                callback(data)
            except Exception:
                logger.exception("Error in PTY data callback")

    def _dispatch_exit(self, returncode: int | None) -> None:
        self._cancel_injection()
        if self._exited is not None:
            self._exited.set()
        callbacks, self._exit_callbacks = self._exit_callbacks, []
        for callback in callbacks:
            try:
                callback(returncode)
            except Exception:
                logger.exception("Error in PTY exit callback")

    # -- commands ----------------------------------------------------------

    def write(self, data: bytes | str) -> None:
        if isinstance(data, str):
            data = data.encode()
        if self._process is None:
            logger.debug("Dropping input: no process spawned")
            return
        self._process.write(data)

    def resize(self, cols: int, rows: int) -> None:
        self._cols, self._rows = cols, rows
        if self._process is not None:
            self._process.resize(cols, rows)

    def kill(self, sig: int | None = None) -> None:
        self._cancel_injection()
        if self._process is not None:
            self._process.kill(sig)

    async def wait_exit(self) -> int | None:
        """Wait until the process has exited and return its exit code."""
        if self._process is None or self._exited is None:
            raise RuntimeError("PTY host has no process")
        await self._exited.wait()
        return self._process.returncode

    # -- introspection -----------------------------------------------------

    @property
    def process(self) -> TerminalProcess | None:
        return self._process

    @property
    def backend(self) -> str | None:
        return self._process.backend if self._process else None

    @property
    def resizable(self) -> bool:
        return bool(self._process and self._process.resizable)

    @property
    def alive(self) -> bool:
        return bool(self._process and self._process.alive)

    @property
    def geometry(self) -> tuple[int, int]:
        return self._cols, self._rows
