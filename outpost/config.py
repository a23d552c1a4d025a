"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os

import outpost.constants as constants
from outpost.logger import log


def _default_shell() -> str:
    return os.environ.get("SHELL") or "/bin/sh"


@dataclass
class RelayConfig:
    """Configuration variables of the relay running on the remote host."""

    host: str = "0.0.0.0"
    port: int = constants.DEFAULT_PORT

    shell: str = field(default_factory=_default_shell)
    term: str = constants.DEFAULT_TERM

    @staticmethod
    def load(section: SectionProxy) -> RelayConfig:
        """Load overridden variables from a section within a config file."""
        config = RelayConfig()

        config.host = section.get("host", fallback=config.host)
        config.port = section.getint("port", fallback=config.port)

        config.shell = section.get("shell", fallback=config.shell)
        config.term = section.get("term", fallback=config.term)

        return config


@dataclass
class BootstrapConfig:
    """Configuration variables related to deploying and reaching the relay."""

    remote_dir: str = constants.REMOTE_DIR
    python: str = "python3"

    attempts: int = constants.POLL_ATTEMPTS
    delay: float = constants.POLL_DELAY

    probe_timeout: float = constants.PROBE_TIMEOUT
    direct_timeout: float = constants.DIRECT_TIMEOUT
    request_timeout: float = constants.REQUEST_TIMEOUT
    command_timeout: float = constants.COMMAND_TIMEOUT
    install_timeout: float = constants.INSTALL_TIMEOUT

    lock_dir: str = os.path.expanduser("~/.outpost/locks")

    @staticmethod
    def load(section: SectionProxy) -> BootstrapConfig:
        """Load overridden variables from a section within a config file."""
        config = BootstrapConfig()

        config.remote_dir = section.get("remote_dir", fallback=config.remote_dir)
        config.python = section.get("python", fallback=config.python)

        config.attempts = section.getint("attempts", fallback=config.attempts)
        config.delay = section.getfloat("delay", fallback=config.delay)

        config.probe_timeout = section.getfloat(
            "probe_timeout", fallback=config.probe_timeout
        )
        config.direct_timeout = section.getfloat(
            "direct_timeout", fallback=config.direct_timeout
        )
        config.request_timeout = section.getfloat(
            "request_timeout", fallback=config.request_timeout
        )
        config.command_timeout = section.getfloat(
            "command_timeout", fallback=config.command_timeout
        )
        config.install_timeout = section.getfloat(
            "install_timeout", fallback=config.install_timeout
        )

        config.lock_dir = os.path.expanduser(
            section.get("lock_dir", fallback=config.lock_dir)
        )

        return config


@dataclass
class Config:
    """Configuration variables."""

    relay: RelayConfig = field(default_factory=RelayConfig)
    bootstrap: BootstrapConfig = field(default_factory=BootstrapConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "relay" in parser:
                config.relay = RelayConfig.load(parser["relay"])

            if "bootstrap" in parser:
                config.bootstrap = BootstrapConfig.load(parser["bootstrap"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config: {config}")

        return config
