"""Client side of outpost: bootstrap the relay on a remote host and talk to it."""

from typing import Optional, Sequence

from outpost.client.bootstrap import (
    Bootstrap,
    BootstrapTimeoutError,
    DeploymentError,
    RemoteDeploymentState,
)
from outpost.client.connection import Connection, ExecutionResult
from outpost.client.pending import ConnectionClosedError, RequestTimeoutError
from outpost.client.remote import RemoteCommandError, RemoteHost
from outpost.client.session import TerminalSession
from outpost.client.transport import ProtocolMismatchError, TransportError
from outpost.config import BootstrapConfig
from outpost.constants import DEFAULT_PORT

__all__ = [
    "Bootstrap",
    "BootstrapTimeoutError",
    "Connection",
    "ConnectionClosedError",
    "DeploymentError",
    "ExecutionResult",
    "ProtocolMismatchError",
    "RemoteCommandError",
    "RemoteDeploymentState",
    "RemoteHost",
    "RequestTimeoutError",
    "TerminalSession",
    "TransportError",
    "connect",
]


def connect(
    destination: str,
    port: int = DEFAULT_PORT,
    config: Optional[BootstrapConfig] = None,
    extra_ssh_args: Sequence[str] = (),
    redeploy: bool = False,
) -> Connection:
    """Bring up the relay on the destination if needed and connect to it."""
    config = config or BootstrapConfig()

    host = RemoteHost(destination, extra_ssh_args, config.command_timeout)
    bootstrap = Bootstrap(host, port, config)

    if redeploy:
        channel = bootstrap.redeploy()
    else:
        channel = bootstrap.connect()

    return Connection(channel, config.request_timeout)
