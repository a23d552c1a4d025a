"""Module that routes requests to the file system service and the session registry."""

import getpass
import os
import os.path
import platform
import socket
import sys
import time
from typing import Any, Callable, Dict, List, Optional, Protocol

import outpost.constants as constants
from outpost.logger import log, summarize
from outpost.relay.backend import CommandJob, SessionCreationError
from outpost.relay.filesystem import FileSystemService
from outpost.relay.registry import SessionRegistry
from outpost.rpc import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    Message,
    METHOD_NOT_FOUND,
    RpcError,
)

# Result of a handler that responds later (streaming or asynchronous)
DEFERRED = object()


class Peer(Protocol):
    """Relay side of a client connection as seen by the dispatcher."""

    registry: SessionRegistry
    jobs: List[CommandJob]

    def send(self, message: Message) -> None:
        ...


Handler = Callable[[Peer, Message], Any]


def _param(message: Message, name: str, typ: type, default: Any = None) -> Any:
    """Look up a request parameter and check its type."""
    value = message.param(name, default)

    if value is None:
        raise RpcError(INVALID_PARAMS, f"missing parameter '{name}'")

    # bool is a subclass of int, but not a valid number of columns
    if not isinstance(value, typ) or (typ is int and isinstance(value, bool)):
        raise RpcError(INVALID_PARAMS, f"parameter '{name}' must be {typ.__name__}")

    return value


def _session_key(message: Message) -> Any:
    key = message.param("sessionId")

    if not isinstance(key, (str, int)):
        raise RpcError(INVALID_PARAMS, "missing parameter 'sessionId'")

    return key


def _home() -> str:
    return os.path.expanduser("~")


class Dispatcher:
    """
    Router of decoded requests.

    Single-shot methods return their result, which is sent back as one response
    under the id of the request. terminal.create and terminal.exec respond later
    through the connection, the former with a stream of frames. Notifications (id
    null) never get a response, not even an error.
    """

    def __init__(
        self,
        shell: str,
        pty_supported: bool,
        connection_count: Callable[[], int] = lambda: 0,
        session_count: Callable[[], int] = lambda: 0,
    ) -> None:
        """Instantiate a dispatcher for a relay with the given capabilities."""
        self._shell = shell
        self._pty_supported = pty_supported

        self._connection_count = connection_count
        self._session_count = session_count

        self._fs = FileSystemService()

        self._methods: Dict[str, Handler] = {
            "fs.readDir": self._read_dir,
            "fs.readFile": self._read_file,
            "fs.writeFile": self._write_file,
            "fs.stat": self._stat,
            "terminal.create": self._terminal_create,
            "terminal.input": self._terminal_input,
            "terminal.resize": self._terminal_resize,
            "terminal.kill": self._terminal_kill,
            "terminal.exec": self._terminal_exec,
            "system.info": self._system_info,
        }

    @property
    def methods(self) -> List[str]:
        return list(self._methods)

    def greeting(self) -> Message:
        """Compose the greeting that is sent once when a client connects."""
        return Message.response(
            constants.GREETING_ID,
            {
                "message": "Connected to outpost relay",
                "platform": sys.platform,
                "arch": platform.machine(),
                "hostname": socket.gethostname(),
                "ptySupported": self._pty_supported,
                "shell": self._shell,
                "cwd": os.getcwd(),
                "user": getpass.getuser(),
                "version": constants.VERSION,
                "protocol": constants.PROTOCOL_VERSION,
            },
        )

    def dispatch(self, peer: Peer, message: Message) -> None:
        """Handle a single decoded message from a client."""
        if not message.is_request:
            log.debug(f"ignoring message without method (id: {message.id})")
            return

        log.debug(f"received {message.method} (id: {message.id})")

        handler = self._methods.get(message.method or "")

        try:
            if handler is None:
                raise RpcError(METHOD_NOT_FOUND, f"unknown method: {message.method}")

            result = handler(peer, message)
        except Exception as e:
            error = RpcError.from_exception(e)

            if error.code == "ENOENT":
                log.debug(f"{message.method} failed: {error}")
            else:
                log.error(f"{message.method} failed: {error}")

            if message.id is not None:
                peer.send(Message.failure(message.id, error))

            return

        if result is not DEFERRED and message.id is not None:
            peer.send(Message.response(message.id, result))

    #
    # File system
    #

    def _read_dir(self, peer: Peer, message: Message) -> Any:
        return self._fs.read_dir(_param(message, "path", str))

    def _read_file(self, peer: Peer, message: Message) -> Any:
        path = _param(message, "path", str)

        try:
            return self._fs.read_file(path)
        except UnicodeDecodeError as e:
            raise RpcError(INTERNAL_ERROR, f"not a UTF-8 text file: {path}", str(e))

    def _write_file(self, peer: Peer, message: Message) -> Any:
        path = _param(message, "path", str)
        content = _param(message, "content", str)

        log.debug(f"writing {path} ({len(content)} characters)")

        return self._fs.write_file(path, content)

    def _stat(self, peer: Peer, message: Message) -> Any:
        return self._fs.stat(_param(message, "path", str))

    #
    # Terminal sessions
    #

    def _terminal_create(self, peer: Peer, message: Message) -> Any:
        # Without an id the frames can't be routed, but the client is still told
        if message.id is None:
            error = RpcError(INVALID_REQUEST, "terminal.create requires an id")
            peer.send(Message.failure(None, error))
            return DEFERRED

        cwd = _param(message, "cwd", str, _home())
        cols = _param(message, "cols", int, 80)
        rows = _param(message, "rows", int, 24)

        try:
            peer.registry.create(message.id, cwd, cols, rows)
        except SessionCreationError as e:
            raise RpcError(INTERNAL_ERROR, "failed to create session", str(e))

        return DEFERRED

    def _terminal_input(self, peer: Peer, message: Message) -> Any:
        data = _param(message, "data", str)

        key = _session_key(message)

        log.debug(f"input for session {key}: {summarize(data)!r}")

        peer.registry.input(key, data)

        return {"success": True}

    def _terminal_resize(self, peer: Peer, message: Message) -> Any:
        cols = _param(message, "cols", int)
        rows = _param(message, "rows", int)

        peer.registry.resize(_session_key(message), cols, rows)

        return {"success": True}

    def _terminal_kill(self, peer: Peer, message: Message) -> Any:
        sig = message.param("signal")

        if sig is not None and not isinstance(sig, (str, int)):
            raise RpcError(INVALID_PARAMS, "parameter 'signal' must be str or int")

        try:
            peer.registry.kill(_session_key(message), sig)
        except ValueError as e:
            raise RpcError(INVALID_PARAMS, str(e))

        return {"success": True}

    def _terminal_exec(self, peer: Peer, message: Message) -> Any:
        command = _param(message, "command", str)
        cwd = _param(message, "cwd", str, _home())

        log.info(f"executing {summarize(command)!r} in {cwd}")

        def on_done(exit_code: int, stdout: str, stderr: str) -> None:
            log.info(f"command completed with exit code {exit_code}")

            if message.id is not None:
                result = {
                    "exitCode": exit_code,
                    "stdout": stdout,
                    "stderr": stderr,
                    "command": command,
                    "cwd": cwd,
                }
                peer.send(Message.response(message.id, result))

        peer.jobs.append(CommandJob.start(command, cwd, os.environ, on_done))

        return DEFERRED

    #
    # Miscellaneous
    #

    def _system_info(self, peer: Peer, message: Message) -> Any:
        return {
            "platform": sys.platform,
            "arch": platform.machine(),
            "hostname": socket.gethostname(),
            "uptime": self._uptime(),
            "loadavg": list(os.getloadavg()),
            "cpus": os.cpu_count(),
            "pythonVersion": platform.python_version(),
            "version": constants.VERSION,
            "protocol": constants.PROTOCOL_VERSION,
            "cwd": os.getcwd(),
            "ptySupported": self._pty_supported,
            "shell": self._shell,
            "activeSessions": self._session_count(),
            "connectedClients": self._connection_count(),
            "env": {
                name: os.environ.get(name) for name in ("USER", "HOME", "SHELL", "PATH")
            },
        }

    @staticmethod
    def _uptime() -> Optional[float]:
        """Return the uptime of the host in seconds if it can be determined."""
        try:
            with open("/proc/uptime", "r") as f:
                return float(f.read().split()[0])
        except (OSError, ValueError, IndexError):
            pass

        try:
            return time.clock_gettime(time.CLOCK_BOOTTIME)
        except (AttributeError, OSError):
            return None
