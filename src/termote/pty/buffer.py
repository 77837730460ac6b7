"""Replay buffer for shell output."""

from __future__ import annotations

import threading
from collections import deque

MAX_REPLAY_BYTES = 256_000


class ReplayBuffer:
    """Bounded FIFO of output chunks, sized in bytes rather than chunks.

    Everything the shell prints goes through ``write()``. When a viewer
    (re)joins, ``snapshot()`` hands back the retained history as one unit
    so the viewer can catch up before live output resumes.

    Eviction always drops whole chunks from the front, even when that
    frees more bytes than strictly needed. A single chunk larger than the
    ceiling is kept on its own: the snapshot is then exactly that chunk,
    never a truncated piece of it.

    Writes come from the PTY data callback and reads from viewer-ready
    handling; the lock keeps them exclusive should they ever run on
    different threads.
    """

    def __init__(self, max_bytes: int = MAX_REPLAY_BYTES) -> None:
        if max_bytes <= 0:
            raise ValueError("max_bytes must be positive")
        self._max_bytes = max_bytes
        self._chunks: deque[bytes] = deque()
        self._size: int = 0
        self._lock = threading.Lock()

    @property
    def max_bytes(self) -> int:
        return self._max_bytes

    def write(self, chunk: bytes) -> None:
        """Append a chunk, evicting the oldest chunks past the ceiling."""
        if not chunk:
            return
        with self._lock:
            self._chunks.append(bytes(chunk))
            self._size += len(chunk)
            while self._size > self._max_bytes and len(self._chunks) > 1:
                removed = self._chunks.popleft()
                self._size -= len(removed)

    def snapshot(self) -> bytes:
        """Concatenate the retained chunks in write order."""
        with self._lock:
            return b"".join(self._chunks)

    def clear(self) -> None:
        with self._lock:
            self._chunks.clear()
            self._size = 0

    @property
    def size(self) -> int:
        """Total bytes currently retained."""
        with self._lock:
            return self._size

    def __len__(self) -> int:
        return self.size
