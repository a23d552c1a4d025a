"""Module for running commands, copying files and forwarding ports through ssh."""

import contextlib
from dataclasses import dataclass
import shlex
import socket
import subprocess
from typing import List, Optional, Sequence

from outpost.constants import COMMAND_TIMEOUT
from outpost.logger import log, summarize

# Exit code of ssh itself when it fails to connect or authenticate
SSH_ERROR_CODE = 255


class RemoteCommandError(RuntimeError):
    """Exception raised when a command on the remote host fails or times out."""

    def __init__(
        self, message: str, returncode: Optional[int] = None, output: str = ""
    ) -> None:
        """Instantiate the exception with the exit code and output of the command."""
        super().__init__(message)

        self.returncode = returncode
        self.output = output


@dataclass
class CommandResult:
    """Exit code and captured output of a remote command."""

    returncode: int
    stdout: str
    stderr: str


def remote_path(path: str) -> str:
    """
    Quote a path on the remote host for use in a shell command.

    Paths in the home directory are made relative, since remote commands start in the
    home directory and a quoted tilde would not be expanded.
    """
    if path == "~":
        path = "."
    elif path.startswith("~/"):
        path = path[2:]

    return shlex.quote(path)


def _free_port() -> int:
    """Find a local TCP port that is currently not in use."""
    with contextlib.closing(socket.socket(socket.AF_INET, socket.SOCK_STREAM)) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class Tunnel:
    """Local port forwarded to a port on the loopback interface of the remote host."""

    def __init__(self, proc: subprocess.Popen, local_port: int, remote_port: int):
        """Wrap a running ssh port forwarding process."""
        self.proc = proc

        self.local_port = local_port
        self.remote_port = remote_port

    def close(self) -> None:
        """Stop forwarding and wait for ssh to exit."""
        with contextlib.suppress(ProcessLookupError):
            self.proc.terminate()

        try:
            self.proc.wait(timeout=5.0)
        except subprocess.TimeoutExpired:
            with contextlib.suppress(ProcessLookupError):
                self.proc.kill()
            self.proc.wait()

        log.debug(f"closed tunnel {self.local_port} -> {self.remote_port}")


class RemoteHost:
    """
    Remote host reachable through the ssh and scp executables.

    Any authentication (keys, agents, ssh config) is left to ssh itself. Extra
    arguments like identity files are passed to every invocation.
    """

    def __init__(
        self,
        destination: str,
        extra_ssh_args: Sequence[str] = (),
        command_timeout: float = COMMAND_TIMEOUT,
    ) -> None:
        """Instantiate for a destination like user@host."""
        self.destination = destination
        self.extra_ssh_args = list(extra_ssh_args)
        self.command_timeout = command_timeout

    def __str__(self) -> str:
        return self.destination

    @property
    def hostname(self) -> str:
        """Return the host part of the destination."""
        return self.destination.rsplit("@", 1)[-1]

    def _ssh_command(self, *args: str) -> List[str]:
        ssh_command = ["ssh"]

        # Disable informational messages like banners and forwarding notices
        ssh_command.extend(["-o", "LogLevel=error"])

        ssh_command.extend(args)
        ssh_command.extend(self.extra_ssh_args)
        ssh_command.append(self.destination)

        return ssh_command

    def _scp_args(self) -> List[str]:
        """Translate the extra ssh arguments for scp, which uses -P for the port."""
        return ["-P" if arg == "-p" else arg for arg in self.extra_ssh_args]

    def run(
        self, command: str, timeout: Optional[float] = None, check: bool = True
    ) -> CommandResult:
        """
        Run a shell command on the remote host and capture its output.

        A failure of ssh itself always raises RemoteCommandError, a failure of the
        command only if check is set.
        """
        if timeout is None:
            timeout = self.command_timeout

        ssh_command = self._ssh_command("-T") + [command]

        log.debug(f"running {summarize(ssh_command)}")

        try:
            proc = subprocess.run(
                ssh_command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise RemoteCommandError(
                f"remote command timed out after {timeout}s: {summarize(command)}"
            )
        except OSError as e:
            raise RemoteCommandError(f"failed to start ssh: {e}")

        result = CommandResult(
            proc.returncode,
            proc.stdout.decode(errors="replace"),
            proc.stderr.decode(errors="replace"),
        )

        if result.returncode == SSH_ERROR_CODE:
            raise RemoteCommandError(
                f"ssh failed: {result.stderr.strip()}", result.returncode, result.stderr
            )
        elif check and result.returncode != 0:
            raise RemoteCommandError(
                f"remote command failed with exit code {result.returncode}: "
                + (result.stderr.strip() or summarize(command)),
                result.returncode,
                result.stdout + result.stderr,
            )

        return result

    def copy(
        self,
        local_paths: Sequence[str],
        remote_dir: str,
        timeout: Optional[float] = None,
    ) -> None:
        """Copy local files into a directory on the remote host."""
        if timeout is None:
            timeout = self.command_timeout

        target = remote_dir[2:] if remote_dir.startswith("~/") else remote_dir

        scp_command = ["scp", "-q", "-o", "LogLevel=error"]
        scp_command.extend(self._scp_args())
        scp_command.extend(local_paths)
        scp_command.append(f"{self.destination}:{target}/")

        log.debug(f"running {scp_command}")

        try:
            proc = subprocess.run(
                scp_command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise RemoteCommandError(f"copy to {self} timed out after {timeout}s")
        except OSError as e:
            raise RemoteCommandError(f"failed to start scp: {e}")

        if proc.returncode != 0:
            raise RemoteCommandError(
                f"scp failed: {proc.stderr.decode(errors='replace').strip()}",
                proc.returncode,
            )

    def open_tunnel(self, remote_port: int, local_port: Optional[int] = None) -> Tunnel:
        """Forward a local port to the loopback interface of the remote host."""
        if local_port is None:
            local_port = _free_port()

        ssh_command = self._ssh_command(
            "-o",
            "ExitOnForwardFailure=yes",
            "-N",
            "-L",
            f"{local_port}:127.0.0.1:{remote_port}",
        )

        log.debug(f"running {ssh_command}")

        try:
            proc = subprocess.Popen(
                ssh_command,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except Exception as e:
            raise RuntimeError(f"failed to start ssh: {e}")

        return Tunnel(proc, local_port, remote_port)
