import os
import signal
from unittest import mock

import pytest

from outpost.relay.backend import (
    _exit_status,
    BackendKind,
    CommandJob,
    parse_signal,
    pty_supported,
    PtyBackend,
    SessionCreationError,
    SpawnBackend,
    start_backend,
)


def collect(backend):
    output = []
    exits = []

    backend.on_data = output.append
    backend.on_exit = lambda code, sig: exits.append((code, sig))

    return output, exits


def test_parse_signal():
    assert parse_signal(None) == signal.SIGTERM
    assert parse_signal("SIGKILL") == signal.SIGKILL
    assert parse_signal("int") == signal.SIGINT
    assert parse_signal(int(signal.SIGHUP)) == signal.SIGHUP

    with pytest.raises(ValueError):
        parse_signal("SIGFOO")


def test_exit_status():
    assert _exit_status(0) == (0, None)
    assert _exit_status(3) == (3, None)
    assert _exit_status(-9) == (137, 9)


def test_spawn_session(tmp_path, drive):
    backend = SpawnBackend.start("/bin/sh", str(tmp_path), dict(os.environ))
    output, exits = collect(backend)

    assert backend.kind == BackendKind.SPAWN

    backend.write("echo hello-$((1 + 2))\n")
    backend.write("echo oops >&2\n")
    backend.write("exit 3\n")

    drive(backend)

    text = "".join(output)

    assert "hello-3" in text
    assert "oops" in text
    assert exits == [(3, None)]


def test_spawn_session_working_directory(tmp_path, drive):
    backend = SpawnBackend.start("/bin/sh", str(tmp_path), dict(os.environ))
    output, _ = collect(backend)

    backend.write("pwd; exit\n")
    drive(backend)

    assert os.path.realpath(str(tmp_path)) in "".join(output)


def test_kill(tmp_path, drive):
    backend = SpawnBackend.start("/bin/sh", str(tmp_path), dict(os.environ))
    _, exits = collect(backend)

    backend.kill("SIGKILL")
    drive(backend)

    assert exits == [(128 + signal.SIGKILL, signal.SIGKILL)]


def test_kill_after_exit_is_noop(tmp_path, drive):
    backend = SpawnBackend.start("/bin/sh", str(tmp_path), dict(os.environ))
    _, exits = collect(backend)

    backend.write("exit 0\n")
    drive(backend)

    backend.kill()
    backend.kill("SIGKILL")

    assert backend.poll_exit()
    assert exits == [(0, None)]


def test_split_utf8_output(tmp_path, drive):
    backend = SpawnBackend.start("/bin/sh", str(tmp_path), dict(os.environ))
    output, _ = collect(backend)

    fd = backend.read_fds[0]

    backend._output(fd, b"caf\xc3")
    backend._output(fd, b"\xa9")

    assert "".join(output) == "café"

    backend.kill("SIGKILL")
    drive(backend)


@pytest.mark.skipif(not pty_supported(), reason="pseudo-terminals not available")
def test_pty_session(tmp_path, drive):
    env = dict(os.environ, TERM="xterm-256color")
    backend = PtyBackend.start("/bin/sh", str(tmp_path), 100, 40, env)
    output, exits = collect(backend)

    assert backend.kind == BackendKind.PTY

    backend.write("test -t 0 && echo tty-$((2 + 3)); echo $TERM; stty size; exit 5\n")
    drive(backend)

    text = "".join(output)

    assert "tty-5" in text
    assert "xterm-256color" in text
    assert "40 100" in text
    assert exits == [(5, None)]


@pytest.mark.skipif(not pty_supported(), reason="pseudo-terminals not available")
def test_pty_resize(tmp_path, drive):
    backend = PtyBackend.start("/bin/sh", str(tmp_path), 80, 24, dict(os.environ))
    output, _ = collect(backend)

    backend.resize(132, 50)
    backend.write("stty size; exit\n")
    drive(backend)

    assert "50 132" in "".join(output)


@pytest.mark.skipif(not pty_supported(), reason="pseudo-terminals not available")
def test_pty_terminate_interactive_shell(tmp_path, drive):
    backend = PtyBackend.start("/bin/sh", str(tmp_path), 80, 24, dict(os.environ))
    _, exits = collect(backend)

    backend.kill()
    drive(backend)

    assert len(exits) == 1
    assert exits[0][1] in (signal.SIGTERM, signal.SIGHUP)


def test_fallback_to_spawn(tmp_path, drive):
    with mock.patch.object(PtyBackend, "start", side_effect=OSError("out of ptys")):
        backend = start_backend("/bin/sh", str(tmp_path), 80, 24, dict(os.environ))

    assert backend.kind == BackendKind.SPAWN

    backend.kill("SIGKILL")
    drive(backend)


def test_spawn_only(tmp_path, drive):
    with mock.patch.object(PtyBackend, "start") as mock_start:
        backend = start_backend(
            "/bin/sh", str(tmp_path), 80, 24, dict(os.environ), use_pty=False
        )

    assert not mock_start.called
    assert backend.kind == BackendKind.SPAWN

    backend.kill("SIGKILL")
    drive(backend)


def test_session_creation_failure(tmp_path):
    with pytest.raises(SessionCreationError):
        start_backend("/nonexistent/shell", str(tmp_path), 80, 24, dict(os.environ))


def test_command_job(tmp_path, drive):
    results = []

    job = CommandJob.start(
        "echo out; echo err >&2; pwd; exit 2",
        str(tmp_path),
        dict(os.environ),
        lambda *result: results.append(result),
    )
    drive(job)

    assert len(results) == 1

    exit_code, stdout, stderr = results[0]

    assert exit_code == 2
    assert stdout.splitlines() == ["out", os.path.realpath(str(tmp_path))]
    assert stderr == "err"


def test_command_job_background_process(tmp_path, drive):
    results = []

    # The background process keeps the output pipes open after the shell exits
    job = CommandJob.start(
        "echo done; sleep 2 &",
        str(tmp_path),
        dict(os.environ),
        lambda *result: results.append(result),
    )
    drive(job, timeout=3.0)

    assert results[0][:2] == (0, "done")
