"""The user's own terminal: TTY detection, geometry, raw mode, keystrokes."""

from __future__ import annotations

import asyncio
import logging
import os
import sys
from contextlib import contextmanager
from typing import Callable, Iterator, TextIO

logger = logging.getLogger(__name__)

DEFAULT_COLS = 80
DEFAULT_ROWS = 24
_READ_SIZE = 1024


def _isatty(stream: TextIO | None) -> bool:
    try:
        return bool(stream is not None and stream.isatty())
    except (AttributeError, ValueError):
        return False


class LocalTerminal:
    """Wraps the agent's stdin/stdout.

    When stdout is not a TTY (piped, CI, tests) the geometry falls back to
    a fixed 80x24 and the remote side is allowed to set the shell's size.
    """

    def __init__(
        self,
        stdin: TextIO | None = None,
        stdout: TextIO | None = None,
        default_cols: int = DEFAULT_COLS,
        default_rows: int = DEFAULT_ROWS,
    ) -> None:
        self._stdin = stdin if stdin is not None else sys.stdin
        self._stdout = stdout if stdout is not None else sys.stdout
        self._default = (default_cols, default_rows)
        self._reading_fd: int | None = None
        self._raw = False

    @property
    def input_is_tty(self) -> bool:
        return _isatty(self._stdin)

    @property
    def output_is_tty(self) -> bool:
        return _isatty(self._stdout)

    @property
    def raw(self) -> bool:
        return self._raw

    def geometry(self) -> tuple[int, int]:
        """Current ``(cols, rows)``, or the default when not on a TTY."""
        if self.output_is_tty:
            try:
                size = os.get_terminal_size(self._stdout.fileno())
                if size.columns > 0 and size.lines > 0:
                    return size.columns, size.lines
            except (OSError, ValueError):
                pass
        return self._default

    def write(self, data: bytes) -> None:
        """Mirror shell output locally, unmodified."""
        try:
            buffer = getattr(self._stdout, "buffer", None)
            if buffer is not None:
                buffer.write(data)
                buffer.flush()
            else:
                self._stdout.write(data.decode("utf-8", errors="replace"))
                self._stdout.flush()
        except (OSError, ValueError) as e:
            logger.debug("Local output write failed: %s", e)

    @contextmanager
    def raw_mode(self) -> Iterator[None]:
        """Put stdin in raw mode for the duration; no-op when not a TTY."""
        if not self.input_is_tty:
            yield
            return

        import termios
        import tty

        fd = self._stdin.fileno()
        saved = termios.tcgetattr(fd)
        tty.setraw(fd)
        self._raw = True
        try:
            yield
        finally:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)
            self._raw = False

    def start_reading(self, callback: Callable[[bytes], None]) -> bool:
        """Forward raw keystrokes to ``callback``; False when stdin is not a TTY."""
        if not self.input_is_tty or self._reading_fd is not None:
            return False
        fd = self._stdin.fileno()
        asyncio.get_running_loop().add_reader(fd, self._on_readable, fd, callback)
        self._reading_fd = fd
        return True

    def stop_reading(self) -> None:
        if self._reading_fd is None:
            return
        try:
            asyncio.get_running_loop().remove_reader(self._reading_fd)
        except RuntimeError:
            pass
        self._reading_fd = None

    def _on_readable(self, fd: int, callback: Callable[[bytes], None]) -> None:
        try:
            data = os.read(fd, _READ_SIZE)
        except BlockingIOError:
            return
        except OSError as e:
            logger.debug("stdin read failed: %s", e)
            data = b""
        if not data:
            self.stop_reading()
            return
        callback(data)
