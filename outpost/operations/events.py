"""
Module with utilities for coordinating events across threads.

Interactive operations like a remote shell depend on several threads working together:
the I/O thread of the connection delivers output and the exit of the session, a reader
thread forwards local input, and signal handlers report terminal resizes. These threads
post their events to a central queue and the main thread consumes them in order, which
keeps all decisions (like when to stop) in one place.

For example, a shell that ends when the remote session exits, and that asks the
remote session to exit when the local input is closed:

def main():
    q = EventQueue()

    # Posts SESSION_EXIT once the remote session has exited
    session.on_exit(lambda code, sig: q.notify(Event.SESSION_EXIT, code))

    # Posts INPUT_CLOSED on end of input
    start_thread(forward_input, q)

    while True:
        event, value = q.next()

        if event == Event.INPUT_CLOSED:
            session.kill()
        elif event == Event.SESSION_EXIT:
            return value

Exceptions posted to the queue are raised in the consuming thread.
"""

from __future__ import annotations

from enum import auto, Enum
import queue
from typing import Any, Optional, Tuple, Union


class Event(Enum):
    """Types of events."""

    # Client specific events
    SESSION_EXIT = auto()
    INPUT_CLOSED = auto()
    TERMINAL_RESIZE = auto()

    # Shared events
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
        Wait for the next event that is not an exception.

        Raises posted exceptions, and TimeoutError if no event arrives in time.
        """
        try:
            event, value = self._queue.get(timeout=timeout)
        except queue.Empty:
            raise TimeoutError("no event within timeout")

        if event == Event.EXCEPTION:
            raise value

        return event, value
