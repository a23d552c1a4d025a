"""Module with the event loop of the relay."""

import time
from typing import Dict, List, Optional, Tuple

import zmq

from outpost.config import RelayConfig
from outpost.logger import log
from outpost.relay.backend import ChildProcess, CommandJob, pty_supported
from outpost.relay.dispatcher import Dispatcher
from outpost.relay.registry import SessionRegistry
from outpost.rpc import Encoding, FrameDecoder, Message, ProtocolError, RpcError

# Maximum time the loop waits for events before checking for exited processes
TICK_MS = 100

# Time that processes of a closed connection get to exit before they're killed
ORPHAN_GRACE_PERIOD = 5.0


class Connection:
    """Relay side of a single client connection."""

    def __init__(
        self,
        identity: bytes,
        socket: zmq.Socket,
        encoding: Encoding,
        config: RelayConfig,
        use_pty: bool,
    ) -> None:
        """Instantiate a connection with an empty session registry."""
        self.identity = identity

        self._socket = socket
        self._encoding = encoding

        self.decoder = FrameDecoder(encoding)
        self.registry = SessionRegistry(self.send, config.shell, config.term, use_pty)
        self.jobs: List[CommandJob] = []

        self.closed = False

    def __str__(self) -> str:
        return f"client {self.identity.hex()}"

    def send(self, message: Message) -> None:
        """Send a message to the client, unless it has already disconnected."""
        if self.closed:
            return

        self._socket.send_multipart([self.identity, self._encoding.encode(message)])

    @property
    def children(self) -> List[ChildProcess]:
        return [*self.registry.backends, *self.jobs]

    def close(self) -> List[ChildProcess]:
        """
        Kill all processes owned by the connection.

        Returns the killed processes, which still need to be reaped.
        """
        self.closed = True

        orphans: List[ChildProcess] = list(self.registry.close_all())

        for job in self.jobs:
            job.force_kill()
            orphans.append(job)

        self.jobs = []

        return orphans


class RelayServer:
    """
    Single-threaded relay serving any number of clients.

    Clients connect over plain TCP to a ZeroMQ STREAM socket, which exposes every
    connection as an identity frame followed by raw data. An empty data frame marks
    a new connection or a disconnect. All terminal sessions and commands run as child
    processes whose descriptors are polled together with the socket, so nothing ever
    blocks the loop.

    Example:
    ```
    server = RelayServer(config)
    server.serve("tcp://0.0.0.0:8080")
    ```
    """

    def __init__(self, config: RelayConfig, use_pty: Optional[bool] = None) -> None:
        """Instantiate a relay, detecting pty support unless overridden."""
        self.config = config
        self.pty_supported = pty_supported() if use_pty is None else use_pty

        self.context = zmq.Context()
        self._socket: Optional[zmq.Socket] = None

        self._encoding = Encoding()
        self._dispatcher = Dispatcher(
            config.shell,
            self.pty_supported,
            connection_count=lambda: len(self._connections),
            session_count=self._session_count,
        )

        self._connections: Dict[bytes, Connection] = {}
        self._orphans: List[Tuple[ChildProcess, float]] = []

        self._running = False

    @property
    def connections(self) -> List[Connection]:
        return list(self._connections.values())

    def bind(self, endpoint: str) -> str:
        """
        Start listening on the given endpoint, like tcp://0.0.0.0:8080.

        Returns the endpoint that was actually bound, which differs from the given
        one if the port was a wildcard (tcp://127.0.0.1:*).
        """
        socket = self.context.socket(zmq.STREAM)

        # Frames must never be dropped
        socket.setsockopt(zmq.SNDHWM, 0)
        socket.setsockopt(zmq.RCVHWM, 0)
        socket.setsockopt(zmq.LINGER, 0)

        try:
            socket.bind(endpoint)
        except zmq.ZMQError as e:
            socket.close()
            raise RuntimeError(f"failed to listen on {endpoint}: {e}")

        self._socket = socket

        bound = socket.getsockopt_string(zmq.LAST_ENDPOINT)
        log.info(f"relay listening on {bound} (pty supported: {self.pty_supported})")

        return bound

    def serve(self, endpoint: Optional[str] = None) -> None:
        """Handle clients until stop() is called."""
        if self._socket is None:
            self.bind(endpoint or f"tcp://{self.config.host}:{self.config.port}")

        self._running = True

        try:
            while self._running:
                self.run_once(TICK_MS)
        finally:
            self.close()

    def stop(self) -> None:
        """Make serve() return after the current iteration, safe in signal handlers."""
        self._running = False

    def run_once(self, timeout_ms: int = TICK_MS) -> None:
        """Wait for and handle a single round of events."""
        assert self._socket is not None, "relay is not listening"

        poller = zmq.Poller()
        poller.register(self._socket, zmq.POLLIN)

        # A pty uses the same descriptor for input and output
        handlers: Dict[int, Tuple[ChildProcess, int]] = {}

        for child in self._children():
            for fd in child.read_fds:
                handlers[fd] = (child, zmq.POLLIN)

            write_fd = child.write_fd
            if write_fd is not None:
                _, flags = handlers.get(write_fd, (child, 0))
                handlers[write_fd] = (child, flags | zmq.POLLOUT)

        for fd, (_, flags) in handlers.items():
            poller.register(fd, flags)

        for target, event in poller.poll(timeout_ms):
            if target is self._socket:
                self._receive()
            else:
                child, _ = handlers[target]
                self._handle_child_event(child, target, event)

        self._reap()

    @staticmethod
    def _handle_child_event(child: ChildProcess, fd: int, event: int) -> None:
        # Descriptors may have been closed by an earlier event in the same round
        if event & zmq.POLLOUT and child.write_fd == fd:
            child.handle_writable()

        if event & (zmq.POLLIN | zmq.POLLERR) and fd in child.read_fds:
            child.handle_readable(fd)

    def _children(self) -> List[ChildProcess]:
        children: List[ChildProcess] = []

        for connection in self._connections.values():
            children += connection.children

        children += [child for child, _ in self._orphans]

        return children

    def _session_count(self) -> int:
        return sum(len(c.registry) for c in self._connections.values())

    def _receive(self) -> None:
        """Handle all frames that are waiting on the socket."""
        assert self._socket is not None

        while True:
            try:
                identity, data = self._socket.recv_multipart(zmq.NOBLOCK)
            except zmq.Again:
                return

            connection = self._connections.get(identity)

            if not data:
                if connection is None:
                    self._accept(identity)
                else:
                    self._disconnect(connection)
            elif connection is None:
                log.warning(f"dropping data from unknown client {identity.hex()}")
            else:
                self._handle_data(connection, data)

    def _accept(self, identity: bytes) -> None:
        connection = Connection(
            identity, self._socket, self._encoding, self.config, self.pty_supported
        )
        self._connections[identity] = connection

        log.info(f"{connection} connected")

        connection.send(self._dispatcher.greeting())

    def _disconnect(self, connection: Connection) -> None:
        del self._connections[connection.identity]

        orphans = connection.close()

        deadline = time.monotonic() + ORPHAN_GRACE_PERIOD
        self._orphans += [(child, deadline) for child in orphans]

        log.info(f"{connection} disconnected, closed {len(orphans)} process(es)")

    def _handle_data(self, connection: Connection, data: bytes) -> None:
        for message in connection.decoder.feed(data):
            if isinstance(message, ProtocolError):
                log.warning(f"malformed frame from {connection}: {message}")

                error = RpcError(message.code, "invalid message", str(message))
                connection.send(Message.failure(None, error))
            else:
                self._dispatcher.dispatch(connection, message)

    def _reap(self) -> None:
        """Detect exited processes and kill orphans that outlived their grace period."""
        for connection in self._connections.values():
            for backend in connection.registry.backends:
                backend.poll_exit()

            connection.jobs = [job for job in connection.jobs if not job.poll_exit()]

        now = time.monotonic()
        orphans = []

        for child, deadline in self._orphans:
            if child.poll_exit():
                continue

            if now >= deadline:
                log.warning(f"process {child.pid} ignored termination, killing it")
                child.force_kill()
                deadline = float("inf")

            orphans.append((child, deadline))

        self._orphans = orphans

    def close(self, timeout: float = 1.0) -> None:
        """Close all connections and kill every remaining process."""
        for connection in list(self._connections.values()):
            self._disconnect(connection)

        for child, _ in self._orphans:
            child.force_kill()

        deadline = time.monotonic() + timeout

        while self._orphans and time.monotonic() < deadline:
            self._orphans = [(c, d) for c, d in self._orphans if not c.poll_exit()]
            time.sleep(0.01)

        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None

        if not self.context.closed:
            self.context.destroy(linger=0)
