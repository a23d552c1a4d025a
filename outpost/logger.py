"""Module containing utilities for logging, along with a standard logger."""

import logging
from typing import Any, Optional

CLIENT_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

# The log file of the relay is shared by every relay started on the host
RELAY_FORMAT = "%(asctime)s - %(process)d - %(levelname)s - %(message)s"


def _get_logger(name: Optional[str] = "outpost") -> logging.Logger:
    stderrOutput = logging.StreamHandler()

    # Explicitly emit a carriage return to help properly combine output with a
    # terminal that is in raw mode.
    stderrOutput.terminator = "\r\n"

    stderrOutput.setFormatter(logging.Formatter(CLIENT_FORMAT))

    logger = logging.getLogger(name)
    logger.addHandler(stderrOutput)

    return logger


def configure(debug: bool = False, relay: bool = False) -> None:
    """
    Set up the logger for the mode outpost runs in.

    The client only reports errors unless debugging, since its output shares the
    terminal with remote shells. The relay writes to a log file (through nohup) and
    logs its activity by default.
    """
    if debug:
        log.setLevel(logging.DEBUG)
    elif relay:
        log.setLevel(logging.INFO)
    else:
        log.setLevel(logging.ERROR)

    for handler in log.handlers:
        if relay:
            handler.terminator = "\n"
            handler.setFormatter(logging.Formatter(RELAY_FORMAT))
        else:
            handler.terminator = "\r\n"
            handler.setFormatter(logging.Formatter(CLIENT_FORMAT))


def summarize(obj: Any, max_length: int = 255) -> str:
    """Return a stringified representation of the object up to the given length."""
    stringified_obj = str(obj)

    if len(stringified_obj) <= max_length:
        return stringified_obj
    else:
        return stringified_obj[: max_length - 3] + "..."


# Default logger
log = _get_logger()
