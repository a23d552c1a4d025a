"""
Module with the process backends that run shells for terminal sessions.

A session is backed by either a full pseudo-terminal (pty) or, if the host cannot
provide one, by a plain child process with pipes (spawn). Both variants share the
same interface and the session registry never needs to know which one it holds:

* write(data), resize(cols, rows), kill(signal)
* on_data(text) and on_exit(exit_code, signal) callbacks

The relay is a single-threaded event loop, so backends never block. Instead they
expose their file descriptors to the loop (read_fds/write_fd) and are notified when
these are ready (handle_readable/handle_writable). The loop additionally calls
poll_exit() on every iteration to detect that the process has exited.
"""

from abc import ABC
import codecs
import contextlib
from enum import Enum
import fcntl
import os
import signal
import struct
import subprocess
import termios
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from outpost.logger import log

# Size of a single read from a process output
READ_SIZE = 65536

Signal = Union[str, int, None]


class BackendKind(Enum):
    """Type of process backend."""

    PTY = "pty"
    SPAWN = "spawn"


class SessionCreationError(RuntimeError):
    """Exception raised when neither a pty nor a spawned process could be started."""


def parse_signal(sig: Signal) -> signal.Signals:
    """Convert a signal name ("SIGTERM", "TERM") or number into a signal."""
    if sig is None:
        return signal.SIGTERM
    elif isinstance(sig, int):
        return signal.Signals(sig)

    name = sig.upper()
    if not name.startswith("SIG"):
        name = "SIG" + name

    try:
        return signal.Signals[name]
    except KeyError:
        raise ValueError(f"unknown signal {sig}")


def pty_supported() -> bool:
    """Check if the host can allocate pseudo-terminals."""
    try:
        master_fd, slave_fd = os.openpty()
    except (AttributeError, OSError):
        return False

    os.close(master_fd)
    os.close(slave_fd)

    return True


def _set_nonblocking(fd: int) -> None:
    flags = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, flags | os.O_NONBLOCK)


def _set_window_size(fd: int, cols: int, rows: int) -> None:
    winsize = struct.pack("HHHH", rows, cols, 0, 0)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, winsize)


def _restore_signals() -> None:
    """Undo ignored signals inherited from the relay, which runs under nohup."""
    signal.signal(signal.SIGHUP, signal.SIG_DFL)


def _exit_status(returncode: int) -> Tuple[int, Optional[int]]:
    """
    Turn a Popen return code into an exit code and optional signal number.

    Processes killed by a signal get the exit code a shell would report for them.
    https://www.tldp.org/LDP/abs/html/exitcodes.html
    """
    if returncode >= 0:
        return returncode, None
    else:
        return 128 - returncode, -returncode


def _start_with_pipes(
    argv: List[str],
    cwd: str,
    env: Mapping[str, str],
    stdin: bool,
    merge_stderr: bool,
) -> Tuple[subprocess.Popen, Optional[int], List[int]]:
    """
    Start a process connected to raw pipes owned by the caller.

    Returns the process, the write end of its stdin pipe (if requested) and the read
    ends of its output pipes (stdout, and stderr unless merged into stdout).
    """
    parent_fds: List[int] = []
    child_fds: List[int] = []

    try:
        if stdin:
            stdin_read, stdin_write = os.pipe()
            child_fds.append(stdin_read)
            parent_fds.append(stdin_write)

        stdout_read, stdout_write = os.pipe()
        child_fds.append(stdout_write)
        parent_fds.append(stdout_read)

        if not merge_stderr:
            stderr_read, stderr_write = os.pipe()
            child_fds.append(stderr_write)
            parent_fds.append(stderr_read)

        proc = subprocess.Popen(
            argv,
            stdin=stdin_read if stdin else subprocess.DEVNULL,
            stdout=stdout_write,
            stderr=subprocess.STDOUT if merge_stderr else stderr_write,
            cwd=cwd,
            env=dict(env),
            start_new_session=True,
            preexec_fn=_restore_signals,
        )
    except Exception:
        for fd in parent_fds:
            os.close(fd)
        raise
    finally:
        for fd in child_fds:
            os.close(fd)

    if stdin:
        return proc, parent_fds[0], parent_fds[1:]
    else:
        return proc, None, parent_fds


class ChildProcess(ABC):
    """Event loop plumbing for a child process with output and input descriptors."""

    def __init__(
        self, proc: subprocess.Popen, outputs: List[int], input_fd: Optional[int]
    ) -> None:
        """Watch the process and take ownership of its (raw) descriptors."""
        self._proc = proc

        self._outputs = list(outputs)
        self._input_fd = input_fd
        self._input_buffer = b""

        self._owned: Set[int] = set(outputs)
        if input_fd is not None:
            self._owned.add(input_fd)

        for fd in self._owned:
            _set_nonblocking(fd)

        self._finished = False

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def finished(self) -> bool:
        """Return whether the exit of the process has been reported."""
        return self._finished

    @property
    def read_fds(self) -> List[int]:
        return list(self._outputs)

    @property
    def write_fd(self) -> Optional[int]:
        """Return the input descriptor if there is input waiting to be written."""
        if self._input_buffer and self._input_fd is not None:
            return self._input_fd
        else:
            return None

    def handle_readable(self, fd: int) -> None:
        """Read available output from one of the output descriptors."""
        try:
            data = os.read(fd, READ_SIZE)
        except BlockingIOError:
            return
        except OSError:
            # A pty master reports EIO once the other side has been closed
            data = b""

        if data:
            self._output(fd, data)
        else:
            self._close_output(fd)

    def handle_writable(self) -> None:
        """Write as much pending input as the process accepts."""
        if self._input_fd is None:
            self._input_buffer = b""
            return

        try:
            written = os.write(self._input_fd, self._input_buffer)
        except BlockingIOError:
            return
        except OSError as e:
            log.warning(f"dropping input for process {self.pid}: {e}")
            self._input_buffer = b""
            return

        self._input_buffer = self._input_buffer[written:]

    def poll_exit(self) -> bool:
        """
        Check if the process has exited and report it once its output is drained.

        Returns True when the exit has been reported (now or previously).
        """
        if self._finished:
            return True

        returncode = self._proc.poll()

        if returncode is None:
            return False

        # Background processes may keep the output open, so drain whatever is
        # buffered rather than waiting for the end of the stream.
        for fd in list(self._outputs):
            self._drain(fd)

        self._close()

        self._finished = True
        self._exited(*_exit_status(returncode))

        return True

    def _drain(self, fd: int) -> None:
        while fd in self._outputs:
            try:
                data = os.read(fd, READ_SIZE)
            except OSError:
                data = b""

            if data:
                self._output(fd, data)
            else:
                self._close_output(fd)

    def _queue_input(self, data: bytes) -> None:
        if self._input_fd is None or self._finished:
            return

        self._input_buffer += data
        self.handle_writable()

    def force_kill(self) -> None:
        """Kill the process and its children without a chance to clean up."""
        if not self._finished:
            self._send_signal(signal.SIGKILL)

    def _send_signal(self, sig: signal.Signals) -> None:
        """Send a signal to the process group of the process."""
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(self._proc.pid, sig)

    def _release(self, fd: int) -> None:
        """Close a descriptor exactly once."""
        if fd in self._owned:
            self._owned.remove(fd)
            with contextlib.suppress(OSError):
                os.close(fd)

    def _close_output(self, fd: int) -> None:
        if fd in self._outputs:
            self._outputs.remove(fd)

        if fd == self._input_fd:
            self._input_fd = None
            self._input_buffer = b""

        self._release(fd)

    def _close(self) -> None:
        for fd in list(self._owned):
            self._release(fd)

        self._outputs = []
        self._input_fd = None
        self._input_buffer = b""

        # Reap the process
        with contextlib.suppress(ChildProcessError):
            self._proc.wait()

    def _output(self, fd: int, data: bytes) -> None:
        raise NotImplementedError()

    def _exited(self, exit_code: int, sig: Optional[int]) -> None:
        raise NotImplementedError()


class Backend(ChildProcess):
    """Interactive shell of a terminal session."""

    kind: BackendKind

    def __init__(
        self,
        proc: subprocess.Popen,
        shell: str,
        outputs: List[int],
        input_fd: Optional[int],
    ) -> None:
        """Wrap a started shell process."""
        super().__init__(proc, outputs, input_fd)

        self.shell = shell

        self.on_data: Callable[[str], None] = lambda data: None
        self.on_exit: Callable[[int, Optional[int]], None] = lambda code, sig: None

        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def write(self, data: str) -> None:
        """Send input to the shell."""
        self._queue_input(data.encode())

    def resize(self, cols: int, rows: int) -> None:
        """Change the terminal size, if supported by the backend."""

    def kill(self, sig: Signal = None) -> None:
        """
        Send a signal to the shell and its children.

        Interactive shells ignore SIGTERM, so a SIGTERM is followed by a SIGHUP like
        when a terminal is closed.
        """
        if self._finished:
            return

        parsed = parse_signal(sig)

        self._send_signal(parsed)

        if parsed == signal.SIGTERM:
            self._send_signal(signal.SIGHUP)

    def _output(self, fd: int, data: bytes) -> None:
        text = self._decoder.decode(data)

        if text:
            self.on_data(text)

    def _exited(self, exit_code: int, sig: Optional[int]) -> None:
        tail = self._decoder.decode(b"", final=True)

        if tail:
            self.on_data(tail)

        self.on_exit(exit_code, sig)


class PtyBackend(Backend):
    """Shell attached to a pseudo-terminal, supporting full interactive programs."""

    kind = BackendKind.PTY

    def __init__(self, proc: subprocess.Popen, shell: str, master_fd: int) -> None:
        """Wrap a shell running in the pseudo-terminal behind master_fd."""
        super().__init__(proc, shell, [master_fd], master_fd)

        self._master_fd = master_fd

    @classmethod
    def start(
        cls, shell: str, cwd: str, cols: int, rows: int, env: Mapping[str, str]
    ) -> "PtyBackend":
        """Allocate a pseudo-terminal and start the shell attached to it."""
        master_fd, slave_fd = os.openpty()

        try:
            _set_window_size(master_fd, cols, rows)

            def preexec_fn() -> None:
                _restore_signals()

                # Runs after setsid(), make the pty the controlling terminal
                fcntl.ioctl(0, termios.TIOCSCTTY, 0)

            proc = subprocess.Popen(
                [shell],
                stdin=slave_fd,
                stdout=slave_fd,
                stderr=slave_fd,
                cwd=cwd,
                env=dict(env),
                start_new_session=True,
                preexec_fn=preexec_fn,
            )
        except Exception:
            os.close(master_fd)
            raise
        finally:
            os.close(slave_fd)

        return cls(proc, shell, master_fd)

    def resize(self, cols: int, rows: int) -> None:
        if self._master_fd not in self._owned:
            return

        try:
            _set_window_size(self._master_fd, cols, rows)
        except OSError as e:
            log.debug(f"failed to resize pty of process {self.pid}: {e}")


class SpawnBackend(Backend):
    """
    Shell running as a plain child process with pipes.

    stderr is redirected into the stdout pipe, so both streams arrive merged and in
    order on the same data stream. Full-screen programs will not render correctly.
    """

    kind = BackendKind.SPAWN

    @classmethod
    def start(cls, shell: str, cwd: str, env: Mapping[str, str]) -> "SpawnBackend":
        """Start the shell in interactive mode with piped stdio."""
        proc, input_fd, outputs = _start_with_pipes(
            [shell, "-i"], cwd, env, stdin=True, merge_stderr=True
        )

        return cls(proc, shell, outputs, input_fd)


def start_backend(
    shell: str,
    cwd: str,
    cols: int,
    rows: int,
    env: Mapping[str, str],
    use_pty: bool = True,
) -> Backend:
    """
    Start a shell, preferring a pseudo-terminal and falling back to a plain process.

    Any failure to acquire a pty results in the spawn backend. Only if that fails
    as well is a SessionCreationError raised.
    """
    if use_pty:
        try:
            return PtyBackend.start(shell, cwd, cols, rows, env)
        except Exception as e:
            log.warning(f"pty unavailable, falling back to spawn: {e}")

    try:
        return SpawnBackend.start(shell, cwd, env)
    except Exception as e:
        raise SessionCreationError(f"failed to start {shell} in {cwd}: {e}")


class CommandJob(ChildProcess):
    """Non-interactive command with separately captured stdout and stderr."""

    def __init__(
        self,
        proc: subprocess.Popen,
        stdout_fd: int,
        stderr_fd: int,
        on_done: Callable[[int, str, str], None],
    ) -> None:
        """Watch a started command and call on_done with its results."""
        super().__init__(proc, [stdout_fd, stderr_fd], None)

        self._stdout_fd = stdout_fd
        self._stderr_fd = stderr_fd

        self._captured: Dict[int, List[bytes]] = {stdout_fd: [], stderr_fd: []}
        self._on_done = on_done

    @classmethod
    def start(
        cls,
        command: str,
        cwd: str,
        env: Mapping[str, str],
        on_done: Callable[[int, str, str], None],
    ) -> "CommandJob":
        """Run the command through sh."""
        proc, _, (stdout_fd, stderr_fd) = _start_with_pipes(
            ["sh", "-c", command], cwd, env, stdin=False, merge_stderr=False
        )

        return cls(proc, stdout_fd, stderr_fd, on_done)

    def _output(self, fd: int, data: bytes) -> None:
        self._captured[fd].append(data)

    def _exited(self, exit_code: int, sig: Optional[int]) -> None:
        stdout = b"".join(self._captured[self._stdout_fd])
        stderr = b"".join(self._captured[self._stderr_fd])

        self._on_done(
            exit_code,
            stdout.decode(errors="replace").strip(),
            stderr.decode(errors="replace").strip(),
        )
