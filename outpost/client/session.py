"""Module with the client-side handle of a terminal session on the relay."""

import threading
from typing import Callable, List, Optional, Tuple

from outpost.logger import log, summarize
from outpost.rpc import Message, RpcError

DataCallback = Callable[[str], None]
ExitCallback = Callable[[int, Optional[int]], None]

# Exit code reported for sessions that end because the connection was lost
CONNECTION_LOST_EXIT_CODE = -1


class TerminalSession:
    """
    Proxy for a remote terminal session.

    The relay only accepts input for a session after it has announced it with the
    ready frame. Input and resizes that are submitted before that are queued and sent
    in order as soon as the ready frame arrives, so callers can start writing right
    after creating the session.

    Every session ends with exactly one exit notification: the exit frame of the
    relay, a synthetic exit after an error frame, or a synthetic exit with code -1
    when the connection is lost. Nothing is delivered and nothing is sent after that.
    """

    def __init__(self, key: str, send: Callable[[Message], None]) -> None:
        """Instantiate a proxy for the session with the given key."""
        self.key = key
        self._send = send

        # Guards the state below and the order of outgoing frames
        self._lock = threading.RLock()

        self._state_changed = threading.Condition(self._lock)

        self._ready = threading.Event()
        self._exited = threading.Event()

        self._queued_input: List[str] = []
        self._queued_resize: Optional[Tuple[int, int]] = None
        self._kill_requested = False
        self._kill_signal: Optional[str] = None

        self._data_callbacks: List[DataCallback] = []
        self._exit_callbacks: List[ExitCallback] = []

        self.pid: Optional[int] = None
        self.shell: Optional[str] = None
        self.backend: Optional[str] = None

        self.exit_code: Optional[int] = None
        self.signal: Optional[int] = None
        self.error: Optional[RpcError] = None

    def __repr__(self) -> str:
        return f"TerminalSession({self.key!r}, backend={self.backend!r})"

    @property
    def is_ready(self) -> bool:
        return self._ready.is_set()

    @property
    def is_closed(self) -> bool:
        return self._exited.is_set()

    def on_data(self, callback: DataCallback) -> None:
        """Register a callback for output of the session."""
        with self._lock:
            self._data_callbacks.append(callback)

    def on_exit(self, callback: ExitCallback) -> None:
        """
        Register a callback for the exit of the session.

        The callback is invoked right away if the session has already exited.
        """
        with self._lock:
            if not self._exited.is_set():
                self._exit_callbacks.append(callback)
                return

        callback(self.exit_code or 0, self.signal)

    def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the relay to announce the session.

        Returns False on timeout or if the session ended without becoming ready.
        Raises the error of the relay if the session could not be created.
        """
        self._wait_any(timeout)

        if self.error is not None:
            raise self.error.to_exception()

        return self._ready.is_set()

    def wait_exit(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait for the session to exit and return its exit code (None on timeout)."""
        if not self._exited.wait(timeout):
            return None

        return self.exit_code

    def write(self, data: str) -> None:
        """Send input to the session, queueing it until the session is ready."""
        with self._lock:
            if self._exited.is_set():
                log.debug(f"dropping input for closed session {self.key}")
                return

            if not self._ready.is_set():
                self._queued_input.append(data)
                return

            self._send_input(data)

    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal size of the session."""
        with self._lock:
            if self._exited.is_set():
                return

            if not self._ready.is_set():
                self._queued_resize = (cols, rows)
                return

            self._send_resize(cols, rows)

    def kill(self, signal: Optional[str] = None) -> None:
        """
        Ask the relay to terminate the session.

        Only the first kill is sent and it does not wait for the session to exit, the
        exit is reported through on_exit like any other exit.
        """
        with self._lock:
            if self._exited.is_set() or self._kill_requested:
                return

            self._kill_requested = True

            if not self._ready.is_set():
                self._kill_signal = signal
                return

            self._send_kill(signal)

    def handle_frame(self, message: Message) -> bool:
        """Handle a frame of the session and return True if it ended the session."""
        if message.error is not None:
            log.error(f"session {self.key} failed: {message.error}")

            self.error = message.error
            self._exit(CONNECTION_LOST_EXIT_CODE, None)

            return True

        result = message.result if isinstance(message.result, dict) else {}
        frame_type = result.get("type")

        if frame_type == "ready":
            self._handle_ready(result)
        elif frame_type == "data":
            self._handle_data(result.get("data", ""))
        elif frame_type == "exit":
            self._exit(result.get("exitCode", 0), result.get("signal"))
            return True
        else:
            log.warning(f"unknown frame for session {self.key}: {summarize(result)}")

        return False

    def connection_lost(self) -> None:
        self._exit(CONNECTION_LOST_EXIT_CODE, None)

    def _handle_ready(self, result: dict) -> None:
        with self._lock:
            if self._ready.is_set() or self._exited.is_set():
                log.warning(f"ignoring repeated ready frame for session {self.key}")
                return

            self.pid = result.get("pid")
            self.shell = result.get("shell")
            self.backend = result.get("backend")

            log.debug(f"session {self.key} ready ({self.backend}, pid {self.pid})")

            if self._queued_resize is not None:
                self._send_resize(*self._queued_resize)

            for data in self._queued_input:
                self._send_input(data)

            if self._kill_requested:
                self._send_kill(self._kill_signal)

            self._queued_input = []
            self._queued_resize = None

            self._ready.set()
            self._state_changed.notify_all()

    def _handle_data(self, data: str) -> None:
        with self._lock:
            if self._exited.is_set():
                return

            callbacks = list(self._data_callbacks)

        for callback in callbacks:
            callback(data)

    def _exit(self, exit_code: int, signal: Optional[int]) -> None:
        with self._lock:
            if self._exited.is_set():
                return

            self.exit_code = exit_code
            self.signal = signal

            self._queued_input = []
            self._exited.set()
            self._state_changed.notify_all()

            callbacks = self._exit_callbacks
            self._exit_callbacks = []

        log.debug(f"session {self.key} exited with code {exit_code}")

        for callback in callbacks:
            callback(exit_code, signal)

    def _wait_any(self, timeout: Optional[float]) -> None:
        """Wait until the session is either ready or closed."""
        with self._state_changed:
            self._state_changed.wait_for(
                lambda: self._ready.is_set() or self._exited.is_set(), timeout
            )

    def _deliver(self, message: Message) -> None:
        try:
            self._send(message)
        except ConnectionError as e:
            log.debug(f"dropping {message.method} for session {self.key}: {e}")

    def _send_input(self, data: str) -> None:
        self._deliver(
            Message.request("terminal.input", {"sessionId": self.key, "data": data})
        )

    def _send_resize(self, cols: int, rows: int) -> None:
        self._deliver(
            Message.request(
                "terminal.resize", {"sessionId": self.key, "cols": cols, "rows": rows}
            )
        )

    def _send_kill(self, signal: Optional[str]) -> None:
        params = {"sessionId": self.key}
        if signal is not None:
            params["signal"] = signal

        self._deliver(Message.request("terminal.kill", params))
