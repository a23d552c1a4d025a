"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
import shlex
from typing import List, Optional

import semver

from outpost.constants import PROTOCOL_VERSION, VERSION

# Actions that can be performed on the remote host, with the number of arguments
ACTIONS = {
    "info": (0, 0),
    "ls": (0, 1),
    "cat": (1, 1),
    "stat": (1, 1),
    "write": (1, 1),
    "exec": (1, None),
    "shell": (0, 1),
}


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    destination: Optional[str]
    action: Optional[str]
    args: List[str]

    extra_ssh_args: List[str]

    relay: bool
    probe: bool

    protocol: semver.VersionInfo

    config: str
    port: Optional[int]

    debug: bool
    redeploy: bool
    timeout: Optional[int]

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        parser = cls._get_parser()
        parsed = parser.parse_args(args, namespace=cls())

        # The relay and the probe don't act on a destination
        if not parsed.relay and not parsed.probe:
            cls._validate_action(parser, parsed)

        return parsed

    @staticmethod
    def _validate_action(parser: argparse.ArgumentParser, parsed: Arguments) -> None:
        if parsed.destination is None or parsed.action is None:
            parser.error("the following arguments are required: destination, action")

        if parsed.action not in ACTIONS:
            parser.error(
                f"invalid action '{parsed.action}' (choose from {', '.join(ACTIONS)})"
            )

        min_args, max_args = ACTIONS[parsed.action]

        if len(parsed.args) < min_args:
            parser.error(f"{parsed.action} requires {min_args} argument(s)")
        elif max_args is not None and len(parsed.args) > max_args:
            parser.error(f"{parsed.action} takes at most {max_args} argument(s)")

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Browse files and open terminals on a remote machine.",
            usage="outpost [option...] destination action [arg...]",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (protocol {PROTOCOL_VERSION})",
            help="show the program version and protocol version",
        )

        # Primary arguments
        parser.add_argument(
            "destination", type=str, nargs="?", help="remote host to connect to"
        )
        parser.add_argument(
            "action",
            type=str,
            nargs="?",
            help=f"action to perform ({', '.join(ACTIONS)})",
        )
        parser.add_argument(
            "args", type=str, nargs=argparse.REMAINDER, help="arguments for action"
        )

        # Flag to pass additional options to SSH
        parser.add_argument(
            "--ssh",
            type=cls._parse_extra_args,
            help="additional arguments to pass to SSH",
            dest="extra_ssh_args",
            default=[],
        )

        # Flag to run the relay itself, used on the remote host
        parser.add_argument(
            "--relay", action="store_true", help="run the relay on this machine"
        )

        # Hidden flag to check if a relay answers on the loopback interface
        parser.add_argument("--probe", action="store_true", help=argparse.SUPPRESS)

        # Hidden flag to indicate expected protocol version
        parser.add_argument(
            "--protocol",
            type=cls._parse_version,
            default=semver.VersionInfo.parse(PROTOCOL_VERSION),
            help=argparse.SUPPRESS,
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is ~/.outpost/config)",
            default="~/.outpost/config",
        )

        # Relay port, defaults to the configured one
        parser.add_argument("--port", type=cls._parse_port, help="port of the relay")

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        # Deploy and restart the relay even if one is running
        parser.add_argument(
            "--redeploy",
            action="store_true",
            help="deploy and restart the relay even if it is running",
        )

        # Configure request timeout
        parser.add_argument(
            "--timeout",
            type=cls._parse_timeout,
            help="timeout for requests to the relay in milliseconds",
        )

        return parser

    @staticmethod
    def _parse_extra_args(arg: str) -> List[str]:
        return shlex.split(arg)

    @staticmethod
    def _parse_version(arg: str) -> semver.VersionInfo:
        try:
            return semver.VersionInfo.parse(arg)
        except (ValueError, TypeError):
            raise argparse.ArgumentTypeError("expected semantic version string")

    @staticmethod
    def _parse_timeout(arg: str) -> int:
        try:
            val = int(arg)
            assert val > 0
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected number > 0")

    @staticmethod
    def _parse_port(arg: str) -> int:
        try:
            val = int(arg)
            assert 0 < val < 65536
            return val
        except (ValueError, AssertionError):
            raise argparse.ArgumentTypeError("expected port number (1-65535)")
