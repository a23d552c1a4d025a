"""Module that correlates responses of the relay with the requests that caused them."""

from concurrent.futures import Future
from dataclasses import dataclass
import itertools
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

from outpost.constants import GREETING_ID, REQUEST_TIMEOUT
from outpost.logger import log
from outpost.rpc import Message, MessageId


class RequestTimeoutError(TimeoutError):
    """Exception raised when the relay does not answer a request in time."""


class ConnectionClosedError(ConnectionError):
    """Exception raised for requests that were outstanding when the connection ended."""


class StreamHandler(Protocol):
    """Receiver of all frames that carry the id of a streaming request."""

    def handle_frame(self, message: Message) -> bool:
        """Handle a frame and return True if it was the terminal frame."""
        ...

    def connection_lost(self) -> None:
        ...


@dataclass
class PendingCall:
    """Single-shot request waiting for exactly one response."""

    method: str
    future: "Future[Any]"
    deadline: float


class PendingRequestTable:
    """
    Table of outstanding requests of a connection.

    There are two kinds of entries:

    * single-shot calls with an integer id that are resolved by the first response
      with that id, or rejected when their deadline passes
    * streaming entries keyed by a "session-N" key that receive every frame with that
      id until a terminal frame (exit or error) arrives

    The ids of both kinds are drawn from separate counters, so they can never collide
    with each other or with the greeting. An entry is always removed under the lock
    before it is resolved, which guarantees that a call is resolved exactly once even
    if its response and its timeout race.
    """

    def __init__(
        self,
        timeout: float = REQUEST_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Instantiate an empty table whose calls time out after timeout seconds."""
        self.timeout = timeout
        self._clock = clock

        self._lock = threading.Lock()

        self._call_ids = itertools.count(1)
        self._session_ids = itertools.count(1)

        self._calls: Dict[MessageId, PendingCall] = {}
        self._streams: Dict[MessageId, StreamHandler] = {}

        self._closed: Optional[Exception] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._calls) + len(self._streams)

    def __contains__(self, id: MessageId) -> bool:
        with self._lock:
            return id in self._calls or id in self._streams

    def add_call(
        self, method: str, timeout: Optional[float] = None
    ) -> Tuple[int, "Future[Any]"]:
        """Register a single-shot call and return its id and future."""
        future: "Future[Any]" = Future()
        deadline = self._clock() + (self.timeout if timeout is None else timeout)

        with self._lock:
            if self._closed is not None:
                raise self._closed

            call_id = next(self._call_ids)
            self._calls[call_id] = PendingCall(method, future, deadline)

        return call_id, future

    def next_session_key(self) -> str:
        with self._lock:
            return f"session-{next(self._session_ids)}"

    def add_stream(self, key: MessageId, handler: StreamHandler) -> None:
        """Register the receiver of the frames of a streaming request."""
        with self._lock:
            if self._closed is not None:
                raise self._closed

            self._streams[key] = handler

    def remove(self, id: MessageId) -> None:
        """Remove an entry without resolving it (the request could not be sent)."""
        with self._lock:
            self._calls.pop(id, None)
            self._streams.pop(id, None)

    def resolve(self, message: Message) -> bool:
        """
        Route a response to its entry.

        Returns False if no entry has the id of the response, in which case the
        response is dropped.
        """
        if message.id == GREETING_ID:
            log.debug("ignoring repeated greeting")
            return False

        with self._lock:
            call = self._calls.pop(message.id, None)
            handler = self._streams.get(message.id) if call is None else None

        if call is not None:
            if message.error is not None:
                call.future.set_exception(message.error.to_exception())
            else:
                call.future.set_result(message.result)

            return True

        if handler is not None:
            if handler.handle_frame(message):
                with self._lock:
                    if self._streams.get(message.id) is handler:
                        del self._streams[message.id]

            return True

        log.debug(f"dropping response for unknown request {message.id}")

        return False

    def expire_overdue(self, now: Optional[float] = None) -> int:
        """Reject all calls past their deadline and return how many were rejected."""
        if now is None:
            now = self._clock()

        with self._lock:
            overdue = [
                (call_id, call)
                for call_id, call in self._calls.items()
                if call.deadline <= now
            ]

            for call_id, _ in overdue:
                del self._calls[call_id]

        for call_id, call in overdue:
            log.warning(f"request {call_id} ({call.method}) timed out")
            call.future.set_exception(
                RequestTimeoutError(f"no response to {call.method} in time")
            )

        return len(overdue)

    def fail_all(self, exception: Exception) -> None:
        """
        Reject every outstanding call and end every stream after connection loss.

        New entries are refused from now on.
        """
        with self._lock:
            self._closed = exception

            calls: List[PendingCall] = list(self._calls.values())
            handlers: List[StreamHandler] = list(self._streams.values())

            self._calls.clear()
            self._streams.clear()

        for call in calls:
            call.future.set_exception(exception)

        for handler in handlers:
            handler.connection_lost()
