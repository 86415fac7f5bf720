"""
Module with utilities for coordinating events across threads.

drivebridge has several actors that act on the same session: control API handlers,
the storage backend's token refresh cycle, and the startup logic. Backend callbacks
must not restart or stop the WebDAV server themselves, because they may fire from
within a call that already holds a lock (or from a thread that the server shutdown
waits for). Instead they post an event to a queue that a single coordination loop
consumes, which serializes all reactions to backend events:

def on_tokens_expired():
    events.notify(Event.TOKENS_EXPIRED, generation)

while True:
    event, value = events.next()

    if event == Event.TOKENS_EXPIRED:
        ...

The supervisor (the main thread) uses a second queue to wait for things that it must
react to, like a failed automatic login or the control API unexpectedly stopping.
"""

from __future__ import annotations

from enum import auto, Enum
import queue
from typing import Any, Optional, Tuple, Union


class Event(Enum):
    """Types of events."""

    # Coordination loop events
    SERVER_START = auto()
    TOKENS_RENEWED = auto()
    TOKENS_EXPIRED = auto()

    # Supervisor events
    ADMIN_SERVER_STOPPED = auto()

    # Shared events
    SHUTDOWN = auto()

    EXCEPTION = auto()


class EventQueue:
    """Thread-safe queue of events that can be notified of and waited upon."""

    def __init__(self) -> None:
        """Instantiate a new EventQueue."""
        self._queue: queue.Queue[Tuple[Event, Any]] = queue.Queue()

    def notify(self, event: Event, value: Any = None) -> None:
        """Post an event and any associated value to the queue."""
        self._queue.put((event, value))

    def exception(self, exception: Union[Exception, str]) -> None:
        """Post an exception event to the queue."""
        if isinstance(exception, Exception):
            self.notify(Event.EXCEPTION, exception)
        else:
            self.notify(Event.EXCEPTION, RuntimeError(exception))

    def next(self, timeout: Optional[float] = None) -> Tuple[Event, Any]:
        """
        Wait for the next event on the queue and return it with its value.

        Exception events are returned like any other event. Raises queue.Empty if a
        timeout is specified and no event arrives in time.
        """
        return self._queue.get(timeout=timeout)

    def empty(self) -> bool:
        """Check if there are currently no pending events."""
        return self._queue.empty()
