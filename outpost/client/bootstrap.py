"""
Module that brings up the relay on a remote host and connects to it.

Connecting goes through a small state machine:

    probe --(relay answers)------------------------------> negotiate
      |                                                       ^
      +--(no answer)--> deploy --> start --> poll --(ready)---+
                                               |
                                               +--(exhausted)--> BootstrapTimeoutError

Deploying copies the outpost package itself to the remote host and installs its
dependencies in a virtualenv there, so the relay always runs the same version as the
client. Deploy and start are serialized per destination with an inter-process lock to
prevent concurrent clients from redeploying the relay underneath each other.
"""

from enum import Enum
import os
import os.path
import re
import shlex
import tarfile
import tempfile
import time
from typing import Callable, Dict, Optional, Tuple

import fasteners

from outpost.client.remote import RemoteCommandError, RemoteHost, remote_path
from outpost.client.transport import (
    Channel,
    ProtocolMismatchError,
    TransportError,
    TransportNegotiator,
)
from outpost.config import BootstrapConfig
import outpost.constants as constants
from outpost.logger import log

# Exit codes of the remote probe script
PROBE_READY = 0
PROBE_NOT_RUNNING = 1
PROBE_UNRESPONSIVE = 2
PROBE_NOT_DEPLOYED = 3

# Number of relay log lines to include in diagnostics
LOG_TAIL_LINES = 20


class DeploymentError(RuntimeError):
    """Exception raised when the relay could not be copied or installed."""


class BootstrapTimeoutError(RuntimeError):
    """Exception raised when a started relay never became reachable."""

    def __init__(self, message: str, diagnostics: Dict[str, str]) -> None:
        """Instantiate the exception with the diagnostics collected while polling."""
        super().__init__(message, diagnostics)

        self.message = message
        self.diagnostics = diagnostics

    def __str__(self) -> str:
        details = "".join(
            f"\n{name}:\n{output.rstrip()}" for name, output in self.diagnostics.items()
        )

        return self.message + details


class RemoteDeploymentState(Enum):
    """State of the relay on the remote host as last observed."""

    UNKNOWN = "unknown"
    NOT_DEPLOYED = "not-deployed"
    DEPLOYED_NOT_RUNNING = "deployed-not-running"
    RUNNING_UNRESPONSIVE = "running-unresponsive"
    RUNNING_READY = "running-ready"


def _package_dir() -> str:
    return os.path.dirname(os.path.dirname(os.path.abspath(__file__)))


def _exclude_from_artifact(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
    name = os.path.basename(info.name)

    if name in ("tests", "__pycache__") or name.endswith(".pyc"):
        return None
    else:
        return info


def build_artifact(
    directory: str, package_dir: Optional[str] = None
) -> Tuple[str, str]:
    """
    Package the relay for deployment.

    Writes a gzipped tarball of the outpost package (without tests and byte code) and
    the requirements manifest into the directory and returns both paths.
    """
    if package_dir is None:
        package_dir = _package_dir()

    if not os.path.isfile(os.path.join(package_dir, "__main__.py")):
        raise DeploymentError(f"relay package not found at {package_dir}")

    artifact_path = os.path.join(directory, constants.ARTIFACT_NAME)
    manifest_path = os.path.join(directory, constants.MANIFEST_NAME)

    try:
        with tarfile.open(artifact_path, "w:gz") as tar:
            tar.add(package_dir, arcname="outpost", filter=_exclude_from_artifact)

        with open(manifest_path, "w") as f:
            f.write("\n".join(constants.RELAY_REQUIREMENTS) + "\n")
    except OSError as e:
        raise DeploymentError(f"failed to build relay artifact: {e}")

    return artifact_path, manifest_path


class Bootstrap:
    """Orchestrates bringing up the relay on one destination and connecting to it."""

    def __init__(
        self,
        host: RemoteHost,
        port: int,
        config: Optional[BootstrapConfig] = None,
        negotiator: Optional[TransportNegotiator] = None,
        sleep: Callable[[float], None] = time.sleep,
        package_dir: Optional[str] = None,
    ) -> None:
        """Instantiate an orchestrator for the relay on the given port of the host."""
        self.host = host
        self.port = port
        self.config = config or BootstrapConfig()

        self.negotiator = negotiator or TransportNegotiator(
            host, port, direct_timeout=self.config.direct_timeout
        )

        self._sleep = sleep
        self._package_dir = package_dir

        self.state = RemoteDeploymentState.UNKNOWN
        self.diagnostics: Dict[str, str] = {}

    @property
    def _remote_dir(self) -> str:
        return remote_path(self.config.remote_dir)

    @property
    def _lock_path(self) -> str:
        name = re.sub(r"[^A-Za-z0-9_.-]", "_", self.host.destination)
        return os.path.join(self.config.lock_dir, f"{name}-{self.port}.lock")

    @property
    def _relay_pattern(self) -> str:
        """Return the pgrep/pkill pattern matching the relay on this port only."""
        # The bracket keeps the pattern from matching the shell running pgrep itself
        return f"[o]utpost --relay --port {self.port}( |$)"

    def connect(self) -> Channel:
        """Make sure the relay runs and open a channel to it."""
        if self.probe():
            log.info(f"relay on {self.host} is already running")
        else:
            log.info(f"relay on {self.host} is not running ({self.state.value})")
            self._deploy_and_start(force=False)

        return self.negotiator.negotiate()

    def redeploy(self) -> Channel:
        """Deploy and restart the relay regardless of its state, then connect."""
        self._deploy_and_start(force=True)

        return self.negotiator.negotiate()

    def _deploy_and_start(self, force: bool) -> None:
        with fasteners.InterProcessLock(self._lock_path):
            # Another client may have brought up the relay while waiting for the lock
            if not force and self.probe():
                log.info(f"relay on {self.host} was started by another client")
                return

            self.deploy()
            self.start()
            self.poll()

    def probe(self) -> bool:
        """
        Check whether a compatible relay is answering on the port.

        The relay is greeted directly first. If that fails, the port may just not be
        reachable from here, so the check is repeated on the remote host itself.
        """
        try:
            channel = self.negotiator.open_direct(self.config.probe_timeout)
        except ProtocolMismatchError as e:
            log.warning(f"relay on {self.host} is incompatible: {e}")
            self.state = RemoteDeploymentState.RUNNING_UNRESPONSIVE
            return False
        except TransportError as e:
            log.debug(f"direct probe failed: {e}")
        else:
            channel.close()
            self.state = RemoteDeploymentState.RUNNING_READY
            return True

        return self._probe_remote()

    def _probe_remote(self) -> bool:
        """Probe the relay from the remote host through its loopback interface."""
        relay_pattern = shlex.quote(self._relay_pattern)

        script = (
            f"cd {self._remote_dir} 2>/dev/null && test -x venv/bin/python"
            f" || exit {PROBE_NOT_DEPLOYED}; "
            f"venv/bin/python -m outpost --probe --port {self.port}"
            f" --protocol {constants.PROTOCOL_VERSION}"
            f" --timeout {int(self.config.probe_timeout * 1000)}"
            f" && exit {PROBE_READY}; "
            f"pgrep -f {relay_pattern} > /dev/null && exit {PROBE_UNRESPONSIVE}; "
            f"exit {PROBE_NOT_RUNNING}"
        )

        result = self.host.run(
            script,
            timeout=self.config.probe_timeout + self.config.command_timeout,
            check=False,
        )

        self.state = {
            PROBE_READY: RemoteDeploymentState.RUNNING_READY,
            PROBE_UNRESPONSIVE: RemoteDeploymentState.RUNNING_UNRESPONSIVE,
            PROBE_NOT_DEPLOYED: RemoteDeploymentState.NOT_DEPLOYED,
        }.get(result.returncode, RemoteDeploymentState.DEPLOYED_NOT_RUNNING)

        return self.state == RemoteDeploymentState.RUNNING_READY

    def deploy(self) -> None:
        """Copy the relay to the remote host and install its dependencies."""
        log.info(f"deploying relay to {self.host}:{self.config.remote_dir}")

        with tempfile.TemporaryDirectory() as tmp:
            artifact_path, manifest_path = build_artifact(tmp, self._package_dir)

            try:
                self.host.run(f"mkdir -p {self._remote_dir}")
                self.host.copy([artifact_path, manifest_path], self.config.remote_dir)
            except RemoteCommandError as e:
                raise DeploymentError(f"failed to copy relay: {e}")

        try:
            self.host.run(
                f"cd {self._remote_dir}"
                f" && rm -rf outpost"
                f" && tar -xzf {constants.ARTIFACT_NAME}"
                f" && rm -f {constants.ARTIFACT_NAME}"
            )

            self.host.run(
                f"cd {self._remote_dir}"
                f" && (test -x venv/bin/python"
                f" || {shlex.quote(self.config.python)} -m venv venv)"
                f" && venv/bin/python -m pip install --quiet"
                f" --disable-pip-version-check -r {constants.MANIFEST_NAME}",
                timeout=self.config.install_timeout,
            )
        except RemoteCommandError as e:
            raise DeploymentError(f"failed to install relay: {e}")

        self.state = RemoteDeploymentState.DEPLOYED_NOT_RUNNING

    def start(self) -> None:
        """Stop any stale relay and start a fresh one in the background."""
        relay_pattern = shlex.quote(self._relay_pattern)

        try:
            self.host.run(f"pkill -f {relay_pattern} || true")
            self.host.run(
                f"cd {self._remote_dir}"
                f" && nohup venv/bin/python -m outpost --relay --port {self.port}"
                f" >> {constants.LOG_NAME} 2>&1 < /dev/null &"
            )
        except RemoteCommandError as e:
            raise DeploymentError(f"failed to start relay: {e}")

        log.info(f"started relay on {self.host} port {self.port}")

    def poll(self) -> None:
        """
        Wait for the started relay to answer.

        Diagnostics are collected halfway, since a relay that isn't up by then most
        likely failed to start. Raises BootstrapTimeoutError when all attempts fail.
        """
        attempts = self.config.attempts
        midpoint = (attempts + 1) // 2

        for attempt in range(1, attempts + 1):
            if self.probe():
                log.info(f"relay answered after {attempt} attempt(s)")
                return

            log.debug(f"relay not answering yet (attempt {attempt}/{attempts})")

            if attempt == midpoint:
                self.diagnostics = self.collect_diagnostics()

            if attempt < attempts:
                self._sleep(self.config.delay)

        raise BootstrapTimeoutError(
            f"relay on {self.host} did not start after {attempts} attempts",
            self.diagnostics,
        )

    def collect_diagnostics(self) -> Dict[str, str]:
        """Capture the relay processes and the tail of its log on the remote host."""
        commands = {
            "processes": "ps aux | grep '[o]utpost' || true",
            "log": f"tail -n {LOG_TAIL_LINES}"
            f" {self._remote_dir}/{constants.LOG_NAME} 2>&1 || true",
        }

        diagnostics = {}

        for name, command in commands.items():
            try:
                diagnostics[name] = self.host.run(command, check=False).stdout
            except RemoteCommandError as e:
                diagnostics[name] = f"unavailable: {e}"

        log.debug(f"relay diagnostics: {diagnostics}")

        return diagnostics
