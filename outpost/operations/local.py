"""Module that implements the local logic of outpost: actions on a remote host."""

import codecs
import contextlib
import os
import shlex
import shutil
import signal
import sys
import termios
import tty
from typing import Callable, Dict, Optional

import outpost.client as client
from outpost.logger import log
from .common import Operations
from .events import Event, EventQueue

# Time to wait for a new terminal session to be started by the relay
SESSION_READY_TIMEOUT = 10.0


class LocalOperations(Operations):
    """Class that encapsulates all work on the local side."""

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Connect to the relay and perform the requested action."""
        connection = self._connect()
        stack.callback(connection.close)

        log.info(f"connected to {self._args.destination} ({connection.kind})")

        actions: Dict[str, Callable[..., int]] = {
            "info": self._info,
            "ls": self._ls,
            "cat": self._cat,
            "stat": self._stat,
            "write": self._write,
            "exec": self._exec,
            "shell": self._shell,
        }

        assert self._args.action is not None

        return actions[self._args.action](stack, connection, *self._args.args)

    def _connect(self) -> client.Connection:
        """Bring up the relay on the destination and connect to it."""
        assert self._args.destination is not None

        config = self._config.bootstrap

        if self._args.timeout is not None:
            config.request_timeout = self._args.timeout / 1000

        return client.connect(
            self._args.destination,
            self._args.port or self._config.relay.port,
            config,
            self._args.extra_ssh_args,
            self._args.redeploy,
        )

    @staticmethod
    def _remote_path(connection: client.Connection, path: str) -> str:
        """Expand a leading ~ to the home directory of the relay user."""
        if path == "~" or path.startswith("~/"):
            home = connection.system_info()["env"]["HOME"] or "/"
            return home + path[1:]
        else:
            return path

    def _info(self, stack: contextlib.ExitStack, connection: client.Connection) -> int:
        info = connection.system_info()

        print(f"transport: {connection.kind}")

        for key, value in info.items():
            if isinstance(value, dict):
                for name, nested in value.items():
                    print(f"{key}.{name}: {nested}")
            else:
                print(f"{key}: {value}")

        return 0

    def _ls(
        self,
        stack: contextlib.ExitStack,
        connection: client.Connection,
        path: str = "~",
    ) -> int:
        entries = connection.read_directory(self._remote_path(connection, path))

        suffixes = {"directory": "/", "symlink": "@", "file": ""}

        for entry in entries:
            print(entry.name + suffixes.get(entry.type, ""))

        return 0

    def _cat(
        self, stack: contextlib.ExitStack, connection: client.Connection, path: str
    ) -> int:
        content = connection.read_file(self._remote_path(connection, path))

        sys.stdout.write(content)
        sys.stdout.flush()

        return 0

    def _stat(
        self, stack: contextlib.ExitStack, connection: client.Connection, path: str
    ) -> int:
        st = connection.stat(self._remote_path(connection, path))

        if st.isSymbolicLink:
            kind = "symbolic link"
        elif st.isDirectory:
            kind = "directory"
        elif st.isFile:
            kind = "regular file"
        else:
            kind = "other"

        print(f"type: {kind}")
        print(f"size: {st.size}")
        print(f"mode: {st.mode:o}")
        print(f"modified: {st.modified}")
        print(f"created: {st.created}")

        return 0

    def _write(
        self, stack: contextlib.ExitStack, connection: client.Connection, path: str
    ) -> int:
        content = sys.stdin.read()

        connection.write_file(self._remote_path(connection, path), content)

        return 0

    def _exec(
        self, stack: contextlib.ExitStack, connection: client.Connection, *command: str
    ) -> int:
        # A single argument is taken as a complete shell command line
        if len(command) == 1:
            command_line = command[0]
        else:
            command_line = " ".join(shlex.quote(arg) for arg in command)

        result = connection.execute(command_line)

        if result.stdout:
            print(result.stdout)
        if result.stderr:
            print(result.stderr, file=sys.stderr)

        return result.exit_code

    def _shell(
        self,
        stack: contextlib.ExitStack,
        connection: client.Connection,
        cwd: Optional[str] = None,
    ) -> int:
        """Run an interactive shell on the remote host in the local terminal."""
        events = EventQueue()

        if cwd is not None:
            cwd = self._remote_path(connection, cwd)

        cols, rows = shutil.get_terminal_size()
        session = connection.create_session(cwd, cols, rows)

        session.on_data(self._write_stdout)
        session.on_exit(lambda code, sig: events.notify(Event.SESSION_EXIT, code))

        if not session.wait_ready(SESSION_READY_TIMEOUT):
            session.kill()
            raise RuntimeError("terminal session did not start in time")

        log.info(f"started {session.backend} session (pid {session.pid})")

        stdin_fd = sys.stdin.fileno()

        if os.isatty(stdin_fd):
            self._set_raw_mode(stack, stdin_fd)

            # Follow size changes of the local terminal
            previous = signal.signal(
                signal.SIGWINCH,
                lambda *_: events.notify(Event.TERMINAL_RESIZE),
            )
            stack.callback(signal.signal, signal.SIGWINCH, previous)

        self._start_thread(self._forward_input, events, stdin_fd, session)

        while True:
            event, value = events.next()

            if event == Event.SESSION_EXIT:
                if value < 0:
                    raise RuntimeError("connection to relay lost")

                return value
            elif event == Event.INPUT_CLOSED:
                session.kill()
            elif event == Event.TERMINAL_RESIZE:
                session.resize(*shutil.get_terminal_size())

    @staticmethod
    def _set_raw_mode(stack: contextlib.ExitStack, fd: int) -> None:
        """Put the local terminal in raw mode until the shell ends."""
        attributes = termios.tcgetattr(fd)
        stack.callback(termios.tcsetattr, fd, termios.TCSADRAIN, attributes)

        tty.setraw(fd)

    @staticmethod
    def _forward_input(
        events: EventQueue, stdin_fd: int, session: client.TerminalSession
    ) -> None:
        """Forward local input to the session until end of input."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

        try:
            while True:
                chunk = os.read(stdin_fd, 1024)

                if len(chunk) == 0:
                    break

                data = decoder.decode(chunk)
                if data:
                    session.write(data)

            events.notify(Event.INPUT_CLOSED)
        except Exception as e:
            events.exception(f"failed to read input: {e}")

    @staticmethod
    def _write_stdout(data: str) -> None:
        """Write text to stdout and immediately flush it."""
        sys.stdout.buffer.write(data.encode())
        sys.stdout.buffer.flush()
