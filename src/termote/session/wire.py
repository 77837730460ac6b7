"""Wire protocol: decouples the relay session from its UI.

The orchestrator never prints status lines itself: it emits events on the
wire and whatever UI is attached (the CLI today) subscribes and renders
them. Shell output does not travel here; it goes straight to stdout.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any


class EventType(enum.Enum):
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    RECONNECTED = "reconnected"
    SESSION_END = "session_end"
    FATAL_ERROR = "fatal_error"
    PROCESS_EXIT = "process_exit"


@dataclass
class WireEvent:
    """An event on the wire."""

    type: EventType
    data: dict[str, Any] = field(default_factory=dict)


class Wire:
    """Async message bus: session -> UI subscribers.

    Single-producer, multi-consumer broadcast.
    """

    def __init__(self) -> None:
        self._subscribers: list[asyncio.Queue[WireEvent | None]] = []
        self._closed: bool = False

    def send(self, event: WireEvent) -> None:
        """Send an event to all subscribers.

        Silently drops events after ``close()`` has been called.
        """
        if self._closed:
            return
        for q in self._subscribers:
            q.put_nowait(event)

    def send_connected(self, session_id: str) -> None:
        self.send(WireEvent(type=EventType.CONNECTED, data={"session_id": session_id}))

    def send_reconnecting(self, attempt: int, delay: float) -> None:
        self.send(
            WireEvent(
                type=EventType.RECONNECTING,
                data={"attempt": attempt, "delay": delay},
            )
        )

    def send_reconnected(self) -> None:
        self.send(WireEvent(type=EventType.RECONNECTED))

    def send_session_end(self, reason: str | None) -> None:
        self.send(WireEvent(type=EventType.SESSION_END, data={"reason": reason}))

    def send_fatal_error(self, message: str) -> None:
        self.send(WireEvent(type=EventType.FATAL_ERROR, data={"message": message}))

    def send_process_exit(self, exit_code: int | None) -> None:
        self.send(WireEvent(type=EventType.PROCESS_EXIT, data={"exit_code": exit_code}))

    def subscribe(self) -> asyncio.Queue[WireEvent | None]:
        """Subscribe to events. Returns a queue to read from."""
        q: asyncio.Queue[WireEvent | None] = asyncio.Queue()
        self._subscribers.append(q)
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        """Unsubscribe from events."""
        if q in self._subscribers:
            self._subscribers.remove(q)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Signal all subscribers that the wire is closing."""
        self._closed = True
        for q in self._subscribers:
            q.put_nowait(None)
