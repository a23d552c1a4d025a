"""Module with the client connection to a relay and its public operations."""

from dataclasses import dataclass
import logging
import threading
import time
from typing import Any, Dict, List, Optional

import zmq

from outpost.client.pending import ConnectionClosedError, PendingRequestTable
from outpost.client.session import DataCallback, TerminalSession
from outpost.client.transport import Channel
from outpost.constants import REQUEST_TIMEOUT
from outpost.logger import log, summarize
from outpost.relay.filesystem import DirEntry, FileStat
from outpost.rpc import Encoding, Message, ProtocolError

# Maximum time the I/O thread waits for events before expiring overdue requests
IO_TICK_MS = 100

# Time that frames of a finished thread get to reach the I/O thread
OUTBOX_LINGER_MS = 1000


@dataclass
class ExecutionResult:
    """Outcome of a command executed on the relay host."""

    exit_code: int
    stdout: str
    stderr: str
    command: str
    cwd: str


class Connection:
    """
    Connection to a relay, exposing its file system and terminal sessions.

    The channel socket is owned by a dedicated I/O thread that receives and routes all
    responses. Any number of other threads can make calls at the same time: they
    submit their frames to the I/O thread through their own inproc socket (ZeroMQ
    sockets must not be shared between threads) and wait on a future for the result.

    Example:
    ```
    with Connection(channel) as conn:
        print(conn.read_file("/etc/hostname"))
    ```
    """

    def __init__(self, channel: Channel, request_timeout: float = REQUEST_TIMEOUT):
        """Take over an open channel and start the I/O thread."""
        self.channel = channel
        self.context: zmq.Context = channel.socket.context

        self._encoding = Encoding()
        self._pending = PendingRequestTable(request_timeout)

        self._outbox_endpoint = f"inproc://outpost-outbox-{id(self)}"
        self._outbox = self.context.socket(zmq.PULL)
        self._outbox.bind(self._outbox_endpoint)

        self._socket_pool: Dict[threading.Thread, zmq.Socket] = {}
        self._socket_pool_lock = threading.Lock()

        self._closing = False
        self._closed = threading.Event()

        self._thread = threading.Thread(target=self._run_io, daemon=True)
        self._thread.start()

    def __enter__(self) -> "Connection":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    @property
    def kind(self) -> str:
        """Return how the relay is reached (direct or tunneled)."""
        return self.channel.kind.value

    @property
    def greeting(self) -> Dict[str, Any]:
        return self.channel.greeting

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    #
    # Public operations
    #

    def read_directory(self, path: str) -> List[DirEntry]:
        return [DirEntry(**entry) for entry in self.call("fs.readDir", {"path": path})]

    def read_file(self, path: str) -> str:
        return self.call("fs.readFile", {"path": path})

    def write_file(self, path: str, content: str) -> None:
        self.call("fs.writeFile", {"path": path, "content": content})

    def stat(self, path: str) -> FileStat:
        return FileStat(**self.call("fs.stat", {"path": path}))

    def system_info(self) -> Dict[str, Any]:
        return self.call("system.info")

    def execute(
        self, command: str, cwd: Optional[str] = None, timeout: Optional[float] = None
    ) -> ExecutionResult:
        """Run a shell command on the relay host and wait for it to complete."""
        params = {"command": command}
        if cwd is not None:
            params["cwd"] = cwd

        result = self.call("terminal.exec", params, timeout)

        return ExecutionResult(
            exit_code=result["exitCode"],
            stdout=result["stdout"],
            stderr=result["stderr"],
            command=result["command"],
            cwd=result["cwd"],
        )

    def create_session(
        self, cwd: Optional[str] = None, cols: int = 80, rows: int = 24
    ) -> TerminalSession:
        """
        Start an interactive shell on the relay host.

        Returns immediately with a session proxy that accepts input right away. Use
        wait_ready() on it to wait for the shell to be started.
        """
        key = self._pending.next_session_key()
        session = TerminalSession(key, self.send)

        params: Dict[str, Any] = {"cols": cols, "rows": rows}
        if cwd is not None:
            params["cwd"] = cwd

        self._pending.add_stream(key, session)

        try:
            self.send(Message.request("terminal.create", params, key))
        except Exception:
            self._pending.remove(key)
            raise

        log.debug(f"rpc::terminal.create{summarize(params)} -> {key}")

        return session

    def execute_streaming(
        self,
        command: str,
        cwd: Optional[str] = None,
        on_data: Optional[DataCallback] = None,
        exit_after: bool = False,
    ) -> TerminalSession:
        """
        Run a command in a new interactive shell, streaming its output.

        The output arrives through the on_data callbacks of the returned session, and
        the given on_data callback is registered before the command is sent. The shell
        stays open for further input unless exit_after is set, in which case it
        exits with the status of the command once the command completes.
        """
        session = self.create_session(cwd)

        if on_data is not None:
            session.on_data(on_data)

        session.write(command + "\n")

        if exit_after:
            session.write("exit\n")

        return session

    def close(self) -> None:
        """Close the channel, failing all outstanding requests and sessions."""
        self._closing = True
        self._thread.join(timeout=5.0)

        with self._socket_pool_lock:
            for sock in self._socket_pool.values():
                sock.close(linger=0)

            self._socket_pool.clear()

    #
    # Plumbing
    #

    def call(
        self,
        method: str,
        params: Optional[Dict[str, Any]] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        """Make a single-shot call and wait for its result or error."""
        t_call = time.time()

        call_id, future = self._pending.add_call(method, timeout)

        try:
            self.send(Message.request(method, params, call_id))
        except Exception:
            self._pending.remove(call_id)
            raise

        try:
            return future.result()
        finally:
            # Explicit check before logging because summarize is relatively slow
            if log.isEnabledFor(logging.DEBUG):
                t_millis = round((time.time() - t_call) * 1000)
                log.debug(f"rpc::{method}{summarize(params or {})} - {t_millis} ms")

    def send(self, message: Message) -> None:
        """Submit a message to the I/O thread, safe to call from any thread."""
        if self._closing or self._closed.is_set():
            raise ConnectionClosedError("connection to relay is closed")

        self._socket().send(self._encoding.encode(message))

    def _socket(self) -> zmq.Socket:
        """Return the socket that the current thread uses to submit frames."""
        t = threading.current_thread()

        with self._socket_pool_lock:
            self._prune_sockets()

            if t not in self._socket_pool:
                sock = self.context.socket(zmq.PUSH)
                sock.setsockopt(zmq.LINGER, 0)
                sock.connect(self._outbox_endpoint)

                self._socket_pool[t] = sock

            return self._socket_pool[t]

    def _prune_sockets(self) -> None:
        """Close the sockets of threads that have finished, with the pool lock held."""
        for t in [t for t in self._socket_pool if not t.is_alive()]:
            # Frames that the thread sent last may still be in flight
            self._socket_pool.pop(t).close(linger=OUTBOX_LINGER_MS)

    @property
    def socket_count(self) -> int:
        """Return the number of sockets held for submitting frames."""
        with self._socket_pool_lock:
            return len(self._socket_pool)

    def _run_io(self) -> None:
        """Move frames between the outbox and the channel until the connection ends."""
        poller = zmq.Poller()
        poller.register(self.channel.socket, zmq.POLLIN)
        poller.register(self._outbox, zmq.POLLIN)

        error = ConnectionClosedError("connection to relay closed")

        try:
            # Messages that arrived together with the greeting
            self._route(self.channel.receive())

            while not self._closing:
                events = dict(poller.poll(IO_TICK_MS))

                if self._outbox in events:
                    self._flush_outbox()

                if self.channel.socket in events:
                    self._route(self.channel.receive())

                if self.channel.closed:
                    log.error("relay closed the connection")
                    error = ConnectionClosedError("relay closed the connection")
                    break

                self._pending.expire_overdue()

            if not self.channel.closed:
                # Deliver last requests like kills of sessions
                self._flush_outbox()
        except Exception as e:
            log.error(f"connection to relay failed: {e}")
            error = ConnectionClosedError(f"connection to relay failed: {e}")
        finally:
            self._closed.set()
            self._pending.fail_all(error)

            self._outbox.close(linger=0)
            self.channel.close()

    def _flush_outbox(self) -> None:
        while True:
            try:
                data = self._outbox.recv(zmq.NOBLOCK)
            except zmq.Again:
                return

            self.channel.send(data)

    def _route(self, messages: List[Any]) -> None:
        for message in messages:
            if isinstance(message, ProtocolError):
                log.warning(f"dropping malformed frame from relay: {message}")
            elif message.is_request:
                log.debug(f"ignoring request from relay: {message.method}")
            elif message.id is None and message.error is not None:
                log.error(f"relay reported error: {message.error}")
            else:
                self._pending.resolve(message)
