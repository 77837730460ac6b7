"""Local shell hosting: PTY/pipe backends and the output replay buffer."""

from termote.pty.buffer import MAX_REPLAY_BYTES, ReplayBuffer
from termote.pty.manager import PtyHost
from termote.pty.session import (
    PipeProcess,
    ProcessStatus,
    PtyProcess,
    PtyUnavailableError,
    TerminalProcess,
)

__all__ = [
    "MAX_REPLAY_BYTES",
    "ReplayBuffer",
    "PtyHost",
    "PipeProcess",
    "ProcessStatus",
    "PtyProcess",
    "PtyUnavailableError",
    "TerminalProcess",
]
