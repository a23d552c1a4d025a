"""
Module implementing the command-line interface and invoking the main logic of outpost.

outpost is started on the local machine and brings up a relay on the remote machine by
deploying a copy of itself there through ssh. The relay is the same program started
with --relay: an always-on process that exposes the file system of the remote machine
and runs interactive shells for the local instance, which talks to it over a single
TCP connection (direct, or tunneled through ssh).
"""

import os.path
import signal
import sys
from typing import List, NoReturn, Optional

from semver import VersionInfo

from outpost.config import Config
import outpost.constants as constants
import outpost.logger as logger
from outpost.logger import log
import outpost.operations as operations
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run either the local side, the relay, or the relay probe with the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Check if the local instance and the relay use compatible protocols.
    if args.protocol.major != VersionInfo.parse(constants.PROTOCOL_VERSION).major:
        log.error(
            f"incompatible protocol ({args.protocol} != {constants.PROTOCOL_VERSION})"
        )
        sys.exit(constants.OUTPOST_ERROR_CODE)

    # Configure debug logging
    logger.configure(args.debug, args.relay)

    config = Config.load(os.path.expanduser(args.config))

    # Run operations of the selected mode.
    ops: operations.Operations

    if args.relay:
        ops = operations.RemoteOperations(args, config)
    elif args.probe:
        ops = operations.ProbeOperations(args, config)
    else:
        ops = operations.LocalOperations(args, config)

    try:
        exit_code = ops.run()
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to run command: {e}")
        exit_code = constants.OUTPOST_ERROR_CODE

    # Exit with either the exit code of the remote command or shell, or
    # OUTPOST_ERROR_CODE for outpost failures.
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
