"""Shared functionality between client and relay operations."""

from abc import ABC
import contextlib
import threading
from typing import Any, Callable

from outpost.args import Arguments
from outpost.config import Config


class Operations(ABC):
    """Base class for the logic of one mode of the outpost command."""

    def __init__(self, args: Arguments, config: Config):
        """Initialize operations based on command-line arguments and configuration."""
        self._args = args
        self._config = config

    def run(self) -> int:
        """Run the operations and clean up properly in case of errors."""
        with contextlib.ExitStack() as stack:
            return self._run(stack)

        # https://github.com/python/mypy/issues/7726
        assert False, "unreachable"

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Run the actual operations."""
        raise NotImplementedError()

    @staticmethod
    def _start_thread(target: Callable[..., None], *args: Any) -> threading.Thread:
        """
        Start a thread with the specified function.

        The thread is made a daemon because it may be blocked on reading input that
        never arrives, which must not prevent the program from shutting down.
        """
        t = threading.Thread(target=target, args=args, daemon=True)
        t.start()
        return t
