import threading

import pytest

from outpost.client.pending import ConnectionClosedError
from outpost.client.session import TerminalSession
from outpost.rpc import INTERNAL_ERROR, Message, RpcError


def make_session():
    sent = []
    session = TerminalSession("session-1", sent.append)

    return session, sent


def frame(result):
    return Message.response("session-1", result)


def ready(session):
    return session.handle_frame(
        frame({"type": "ready", "pid": 42, "shell": "/bin/sh", "backend": "pty"})
    )


def describe(sent):
    return [(m.method, m.params, m.id) for m in sent]


def test_queued_until_ready():
    session, sent = make_session()

    session.write("ls\r")
    session.resize(100, 30)
    session.write("pwd\r")

    assert sent == []
    assert not session.is_ready

    assert not ready(session)

    assert session.is_ready
    assert session.pid == 42
    assert session.backend == "pty"

    assert describe(sent) == [
        (
            "terminal.resize",
            {"sessionId": "session-1", "cols": 100, "rows": 30},
            None,
        ),
        ("terminal.input", {"sessionId": "session-1", "data": "ls\r"}, None),
        ("terminal.input", {"sessionId": "session-1", "data": "pwd\r"}, None),
    ]


def test_sent_directly_when_ready():
    session, sent = make_session()
    ready(session)

    session.write("x")
    session.resize(80, 24)

    assert [m.method for m in sent] == ["terminal.input", "terminal.resize"]


def test_repeated_ready_ignored():
    session, sent = make_session()
    session.write("x")

    ready(session)
    ready(session)

    assert len(sent) == 1


def test_data_and_exit_callbacks():
    session, _ = make_session()

    output = []
    exits = []
    session.on_data(output.append)
    session.on_exit(lambda code, sig: exits.append((code, sig)))

    ready(session)
    session.handle_frame(frame({"type": "data", "data": "hello"}))

    assert session.handle_frame(frame({"type": "exit", "exitCode": 130, "signal": 2}))

    session.handle_frame(frame({"type": "data", "data": "late"}))
    session.handle_frame(frame({"type": "exit", "exitCode": 0}))

    assert output == ["hello"]
    assert exits == [(130, 2)]
    assert session.is_closed
    assert session.wait_exit(timeout=0) == 130


def test_on_exit_after_exit():
    session, _ = make_session()
    ready(session)
    session.handle_frame(frame({"type": "exit", "exitCode": 3}))

    exits = []
    session.on_exit(lambda code, sig: exits.append(code))

    assert exits == [3]


def test_kill_sent_once():
    session, sent = make_session()
    ready(session)

    session.kill()
    session.kill("SIGKILL")

    assert describe(sent) == [("terminal.kill", {"sessionId": "session-1"}, None)]


def test_kill_before_ready():
    session, sent = make_session()

    session.write("ls\r")
    session.kill("SIGINT")

    assert sent == []

    ready(session)

    assert describe(sent) == [
        ("terminal.input", {"sessionId": "session-1", "data": "ls\r"}, None),
        ("terminal.kill", {"sessionId": "session-1", "signal": "SIGINT"}, None),
    ]


def test_nothing_sent_after_exit():
    session, sent = make_session()
    ready(session)
    session.handle_frame(frame({"type": "exit", "exitCode": 0}))

    session.write("x")
    session.resize(10, 10)
    session.kill()

    assert sent == []


def test_error_frame_ends_session():
    session, _ = make_session()

    exits = []
    session.on_exit(lambda code, sig: exits.append(code))

    error = RpcError(INTERNAL_ERROR, "failed to create session", "no shell")
    assert session.handle_frame(Message.failure("session-1", error))

    assert exits == [-1]

    with pytest.raises(RpcError) as e:
        session.wait_ready(timeout=0)

    assert e.value.message == "failed to create session"


def test_connection_lost():
    session, _ = make_session()
    ready(session)

    exits = []
    session.on_exit(lambda code, sig: exits.append(code))

    session.connection_lost()
    session.connection_lost()

    assert exits == [-1]
    assert session.is_closed
    assert session.wait_exit(timeout=0) == -1


def test_wait_ready_timeout():
    session, _ = make_session()

    assert not session.wait_ready(timeout=0.01)


def test_wait_ready_from_other_thread():
    session, _ = make_session()

    t = threading.Timer(0.05, ready, args=(session,))
    t.start()

    assert session.wait_ready(timeout=5.0)

    t.join()


def test_send_failure_dropped():
    def send(message):
        raise ConnectionClosedError("gone")

    session = TerminalSession("session-1", send)
    ready(session)

    session.write("x")
    session.kill()
