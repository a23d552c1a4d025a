"""
Module that establishes the byte stream between the client and the relay.

The relay is reached either directly over TCP, or through an ssh tunnel if the relay
port is not reachable from the client (firewalls, relay bound to a private network).
A direct connection is always tried first because it doesn't depend on an extra ssh
process staying alive.
"""

from enum import Enum
import time
from typing import Any, Dict, List, Optional, Union

from semver import VersionInfo
import zmq

from outpost.client.remote import RemoteHost, Tunnel
import outpost.constants as constants
from outpost.logger import log
from outpost.rpc import FrameDecoder, Message, ProtocolError

# Time to wait for the greeting through a freshly opened ssh tunnel
TUNNEL_TIMEOUT = 10.0


class TransportError(ConnectionError):
    """Exception raised when no channel to the relay could be established."""


class ProtocolMismatchError(TransportError):
    """Exception raised when the relay speaks an incompatible protocol version."""


class ChannelKind(Enum):
    """How a channel reaches the relay."""

    DIRECT = "direct"
    TUNNELED = "tunneled"


def check_protocol(greeting: Any, expected: str = constants.PROTOCOL_VERSION) -> None:
    """Check that the relay that sent the greeting speaks a compatible protocol."""
    protocol = greeting.get("protocol") if isinstance(greeting, dict) else None

    try:
        relay_version = VersionInfo.parse(protocol)
    except (TypeError, ValueError):
        raise ProtocolMismatchError(f"relay reports invalid protocol {protocol!r}")

    if relay_version.major != VersionInfo.parse(expected).major:
        raise ProtocolMismatchError(f"incompatible protocol ({protocol} != {expected})")


class Channel:
    """
    Connected TCP stream to the relay, carried by a ZeroMQ STREAM socket.

    A channel is only handed out after the relay has greeted it, so an open channel
    is known to lead to a live relay with a compatible protocol. The socket is not
    thread-safe: after opening, it must only be used by a single (I/O) thread.
    """

    def __init__(
        self,
        socket: zmq.Socket,
        peer: bytes,
        kind: ChannelKind,
        endpoint: str,
        greeting: Dict[str, Any],
        decoder: FrameDecoder,
        backlog: List[Union[Message, ProtocolError]],
        tunnel: Optional[Tunnel] = None,
    ) -> None:
        """Wrap a socket that has completed the handshake."""
        self.socket = socket
        self.kind = kind
        self.endpoint = endpoint
        self.greeting = greeting
        self.tunnel = tunnel

        self._peer = peer
        self._decoder = decoder
        self._backlog = backlog

        self.closed = False

    @classmethod
    def open(
        cls,
        context: zmq.Context,
        endpoint: str,
        kind: ChannelKind,
        timeout: float,
        tunnel: Optional[Tunnel] = None,
    ) -> "Channel":
        """
        Connect to the relay at the endpoint and wait for its greeting.

        Raises TransportError if the relay is unreachable or does not greet within the
        timeout, and ProtocolMismatchError if it speaks an incompatible protocol.
        """
        socket = context.socket(zmq.STREAM)

        socket.setsockopt(zmq.SNDHWM, 0)
        socket.setsockopt(zmq.RCVHWM, 0)
        socket.setsockopt(zmq.LINGER, 0)

        decoder = FrameDecoder()
        deadline = time.monotonic() + timeout
        peer: Optional[bytes] = None

        try:
            socket.connect(endpoint)

            while True:
                remaining = deadline - time.monotonic()

                if remaining <= 0:
                    raise TransportError(
                        f"no greeting from relay at {endpoint} within {timeout}s"
                    )

                if not socket.poll(int(remaining * 1000) + 1, zmq.POLLIN):
                    continue

                identity, data = socket.recv_multipart()

                if not data:
                    if peer is None:
                        peer = identity
                        continue
                    else:
                        raise TransportError(f"relay at {endpoint} disconnected")

                messages = decoder.feed(data)

                for i, message in enumerate(messages):
                    if (
                        isinstance(message, Message)
                        and message.id == constants.GREETING_ID
                    ):
                        check_protocol(message.result)

                        log.debug(f"greeted by relay at {endpoint}: {message.result}")

                        return cls(
                            socket,
                            identity,
                            kind,
                            endpoint,
                            message.result,
                            decoder,
                            messages[i + 1 :],
                            tunnel,
                        )

                    log.debug(f"dropping message before greeting: {message}")
        except zmq.ZMQError as e:
            socket.close(linger=0)
            raise TransportError(f"failed to connect to {endpoint}: {e}")
        except Exception:
            socket.close(linger=0)
            raise

    def send(self, data: bytes) -> None:
        """Write encoded frames to the stream."""
        self.socket.send_multipart([self._peer, data])

    def receive(self) -> List[Union[Message, ProtocolError]]:
        """
        Read all messages that have arrived without blocking.

        Sets closed if the relay closed the connection.
        """
        messages = self._backlog
        self._backlog = []

        while not self.closed:
            try:
                identity, data = self.socket.recv_multipart(zmq.NOBLOCK)
            except zmq.Again:
                break

            if identity != self._peer:
                continue

            if data:
                messages += self._decoder.feed(data)
            else:
                self.closed = True

        return messages

    def close(self) -> None:
        self.closed = True
        self.socket.close(linger=0)

        if self.tunnel is not None:
            self.tunnel.close()


class TransportNegotiator:
    """Opens a channel to the relay, directly or through an ssh tunnel."""

    def __init__(
        self,
        host: RemoteHost,
        port: int,
        context: Optional[zmq.Context] = None,
        direct_timeout: float = constants.DIRECT_TIMEOUT,
        tunnel_timeout: float = TUNNEL_TIMEOUT,
    ) -> None:
        """Instantiate a negotiator for the relay listening on the given port."""
        self.host = host
        self.port = port
        self.context = context or zmq.Context.instance()

        self.direct_timeout = direct_timeout
        self.tunnel_timeout = tunnel_timeout

    def open_direct(self, timeout: Optional[float] = None) -> Channel:
        endpoint = f"tcp://{self.host.hostname}:{self.port}"

        return Channel.open(
            self.context,
            endpoint,
            ChannelKind.DIRECT,
            self.direct_timeout if timeout is None else timeout,
        )

    def open_tunneled(self) -> Channel:
        try:
            tunnel = self.host.open_tunnel(self.port)
        except Exception as e:
            raise TransportError(f"failed to open ssh tunnel: {e}")

        endpoint = f"tcp://127.0.0.1:{tunnel.local_port}"

        try:
            return Channel.open(
                self.context,
                endpoint,
                ChannelKind.TUNNELED,
                self.tunnel_timeout,
                tunnel,
            )
        except Exception:
            tunnel.close()
            raise

    def negotiate(self) -> Channel:
        """Open a channel, falling back to an ssh tunnel if the direct one fails."""
        try:
            channel = self.open_direct()
        except ProtocolMismatchError:
            raise
        except TransportError as e:
            log.info(f"direct connection failed ({e}), trying ssh tunnel")
        else:
            log.info(f"connected directly to relay at {channel.endpoint}")
            return channel

        try:
            channel = self.open_tunneled()
        except TransportError as e:
            raise TransportError(f"failed to connect to relay on {self.host}: {e}")

        log.info(f"connected to relay through ssh tunnel on port {self.port}")

        return channel
