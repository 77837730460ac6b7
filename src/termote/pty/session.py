"""Terminal processes: a real pseudo-terminal and a pipe-based stand-in.

Both backends expose the same surface (``start``, ``write``, ``resize``,
``kill`` plus data/exit callbacks) so the host can pick one at spawn time
and callers never care which is running. Only ``resize`` differs: pipes
have no notion of terminal size, so it does nothing there.
"""

from __future__ import annotations

import abc
import asyncio
import enum
import logging
import os
import select
import signal
import struct
import subprocess
from typing import Callable, ClassVar, Sequence

logger = logging.getLogger(__name__)

READ_SIZE = 4096
_POLL_INTERVAL = 0.1

DataCallback = Callable[[bytes], None]
ExitCallback = Callable[[int | None], None]


class PtyUnavailableError(OSError):
    """A pseudo-terminal could not be allocated on this system."""


class ProcessStatus(enum.Enum):
    """Lifecycle states for a terminal process."""

    PENDING = "pending"
    RUNNING = "running"
    KILLING = "killing"  # Signal sent, waiting for the reader to see EOF
    EXITED = "exited"


def _set_winsize(fd: int, cols: int, rows: int) -> None:
    import fcntl
    import termios

    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class TerminalProcess(abc.ABC):
    """One child process with a single merged output stream."""

    backend: ClassVar[str]
    resizable: ClassVar[bool]

    def __init__(
        self,
        command: Sequence[str],
        env: dict[str, str] | None = None,
        cwd: str | None = None,
        cols: int = 80,
        rows: int = 24,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.env = dict(env) if env is not None else dict(os.environ)
        self.cwd = cwd or os.getcwd()
        self.cols = cols
        self.rows = rows
        self._status = ProcessStatus.PENDING
        self._returncode: int | None = None
        self._reader_task: asyncio.Task | None = None
        self._on_data: DataCallback | None = None
        self._on_exit: ExitCallback | None = None

    def set_on_data(self, callback: DataCallback) -> None:
        self._on_data = callback

    def set_on_exit(self, callback: ExitCallback) -> None:
        """Set the callback fired once, with the exit code, when the process ends.

        Unlike a plain "unexpected exit" hook this also fires after
        ``kill()``; the code is then the negative signal number.
        """
        self._on_exit = callback

    @abc.abstractmethod
    async def start(self) -> None: ...

    @abc.abstractmethod
    def write(self, data: bytes) -> None: ...

    @abc.abstractmethod
    def resize(self, cols: int, rows: int) -> None: ...

    @abc.abstractmethod
    def kill(self, sig: int | None = None) -> None: ...

    @property
    @abc.abstractmethod
    def pid(self) -> int | None: ...

    @property
    def status(self) -> ProcessStatus:
        return self._status

    @property
    def alive(self) -> bool:
        return self._status == ProcessStatus.RUNNING

    @property
    def returncode(self) -> int | None:
        return self._returncode

    def _emit(self, data: bytes) -> None:
        if self._on_data is None:
            return
        try:
            self._on_data(data)
        except Exception:
            logger.exception("Error in on_data callback (%s backend)", self.backend)

    def _finish(self, returncode: int | None) -> None:
        if self._status == ProcessStatus.EXITED:
            return
        self._status = ProcessStatus.EXITED
        self._returncode = returncode
        logger.info(
            "%s process %s exited (code=%s)", self.backend, self.pid, returncode
        )
        if self._on_exit:
            try:
                self._on_exit(returncode)
            except Exception:
                logger.exception("Error in on_exit callback (%s backend)", self.backend)


class PtyProcess(TerminalProcess):
    """A child running on a real pseudo-terminal.

    The child gets its own session with the PTY slave as controlling
    terminal, so job control and ``SIGWINCH`` behave as in a normal
    terminal emulator. Output is read from the master side.

    Uses subprocess.Popen (not os.fork) to avoid deadlocks when spawned
    from within a running asyncio event loop.
    """

    backend: ClassVar[str] = "pty"
    resizable: ClassVar[bool] = True

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._master_fd: int = -1
        self._proc: subprocess.Popen | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def start(self) -> None:
        try:
            import fcntl
            import pty
            import termios

            master_fd, slave_fd = pty.openpty()
        except (ImportError, OSError) as e:
            raise PtyUnavailableError(f"cannot allocate a pseudo-terminal: {e}") from e

        def _acquire_controlling_tty() -> None:
            # Runs in the child after setsid(); fd 0 is the slave.
            fcntl.ioctl(0, termios.TIOCSCTTY, 0)

        try:
            _set_winsize(slave_fd, self.cols, self.rows)
            self._proc = subprocess.Popen(
                self.command,
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                start_new_session=True,
                preexec_fn=_acquire_controlling_tty,
                env=self.env,
                cwd=self.cwd,
            )
        except BaseException:
            os.close(master_fd)
            raise
        finally:
            # Parent always closes slave fd
            os.close(slave_fd)

        self._master_fd = master_fd
        self._status = ProcessStatus.RUNNING
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(
            "PTY process started: pid=%d cmd=%s (%dx%d)",
            self._proc.pid,
            " ".join(self.command),
            self.cols,
            self.rows,
        )

    def _read_chunk(self) -> bytes | None:
        """Blocking read from the master fd; run in an executor.

        Returns None when nothing arrived within the poll interval and
        ``b""`` once the slave side is gone (EIO on Linux).
        """
        try:
            ready, _, _ = select.select([self._master_fd], [], [], _POLL_INTERVAL)
            if not ready:
                return None
            return os.read(self._master_fd, READ_SIZE)
        except (OSError, ValueError):
            return b""

    async def _read_loop(self) -> None:
        assert self._proc is not None
        loop = asyncio.get_running_loop()
        while True:
            data = await loop.run_in_executor(None, self._read_chunk)
            if data is None:
                if self._proc.poll() is not None:
                    break
                continue
            if not data:
                break
            self._emit(data)

        returncode = await loop.run_in_executor(None, self._proc.wait)
        try:
            os.close(self._master_fd)
        except OSError:
            pass
        self._master_fd = -1
        self._finish(returncode)

    def write(self, data: bytes) -> None:
        if not self.alive or self._master_fd < 0:
            logger.debug("Dropping %d bytes of input: process not running", len(data))
            return
        view = memoryview(data)
        try:
            while view:
                written = os.write(self._master_fd, view)
                view = view[written:]
        except OSError as e:
            logger.debug("Write to PTY failed: %s", e)

    def resize(self, cols: int, rows: int) -> None:
        if not self.alive or self._master_fd < 0:
            return
        try:
            _set_winsize(self._master_fd, cols, rows)
        except OSError as e:
            logger.debug("Resize to %dx%d failed: %s", cols, rows, e)
            return
        self.cols, self.rows = cols, rows

    def kill(self, sig: int | None = None) -> None:
        """Hang up the child's whole process group."""
        if self._status != ProcessStatus.RUNNING or self._proc is None:
            return
        self._status = ProcessStatus.KILLING
        try:
            os.killpg(self._proc.pid, sig if sig is not None else signal.SIGHUP)
            logger.info("Sent hangup to PTY process group %d", self._proc.pid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._proc.pid)


class PipeProcess(TerminalProcess):
    """Fallback: a plain child process wired through anonymous pipes.

    stderr is merged into stdout at the OS level because the relay
    protocol carries a single output stream.
    """

    backend: ClassVar[str] = "pipe"
    resizable: ClassVar[bool] = False

    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._proc: asyncio.subprocess.Process | None = None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def start(self) -> None:
        self._proc = await asyncio.create_subprocess_exec(
            *self.command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
            env=self.env,
            cwd=self.cwd,
        )
        self._status = ProcessStatus.RUNNING
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(
            "Pipe process started: pid=%d cmd=%s", self._proc.pid, " ".join(self.command)
        )

    async def _read_loop(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        while True:
            data = await self._proc.stdout.read(READ_SIZE)
            if not data:
                break
            self._emit(data)
        returncode = await self._proc.wait()
        self._finish(returncode)

    def write(self, data: bytes) -> None:
        if not self.alive or self._proc is None or self._proc.stdin is None:
            logger.debug("Dropping %d bytes of input: process not running", len(data))
            return
        try:
            self._proc.stdin.write(data)
        except (BrokenPipeError, ConnectionResetError, RuntimeError) as e:
            logger.debug("Write to pipe failed: %s", e)

    def resize(self, cols: int, rows: int) -> None:
        pass

    def kill(self, sig: int | None = None) -> None:
        if self._status != ProcessStatus.RUNNING or self._proc is None:
            return
        self._status = ProcessStatus.KILLING
        try:
            os.killpg(self._proc.pid, sig if sig is not None else signal.SIGTERM)
            logger.info("Sent terminate to pipe process group %d", self._proc.pid)
        except ProcessLookupError:
            logger.debug("Process group already gone: %d", self._proc.pid)
