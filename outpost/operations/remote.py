"""Module that implements the remote logic of outpost: the relay and its probe."""

import contextlib
import signal

import zmq

from outpost.client.transport import Channel, ChannelKind, check_protocol
import outpost.constants as constants
from outpost.logger import log
from outpost.relay import RelayServer
from .common import Operations


class RemoteOperations(Operations):
    """Class that runs the relay until it is terminated."""

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Serve clients until SIGTERM or SIGINT is received."""
        config = self._config.relay

        if self._args.port is not None:
            config.port = self._args.port

        server = RelayServer(config)
        server.bind(f"tcp://{config.host}:{config.port}")

        # Stop gracefully so that all sessions are killed
        for sig in (signal.SIGTERM, signal.SIGINT):
            previous = signal.signal(sig, lambda *_: server.stop())
            stack.callback(signal.signal, sig, previous)

        # The relay outlives the ssh session that started it
        signal.signal(signal.SIGHUP, signal.SIG_IGN)

        log.info(f"relay {constants.VERSION} (protocol {constants.PROTOCOL_VERSION})")

        server.serve()

        log.info("relay stopped")

        return 0


class ProbeOperations(Operations):
    """Class that checks if a compatible relay answers on the loopback interface."""

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Greet the relay and check its protocol, raising if anything is wrong."""
        port = self._args.port or self._config.relay.port

        if self._args.timeout is not None:
            timeout = self._args.timeout / 1000
        else:
            timeout = self._config.bootstrap.probe_timeout

        context = zmq.Context()
        stack.callback(context.destroy, linger=0)

        channel = Channel.open(
            context, f"tcp://127.0.0.1:{port}", ChannelKind.DIRECT, timeout
        )
        stack.callback(channel.close)

        check_protocol(channel.greeting, str(self._args.protocol))

        log.info(f"relay on port {port} is ready")

        return 0
