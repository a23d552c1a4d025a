import json
import os
import socket
import time

import pytest

from outpost.config import RelayConfig
from outpost.relay import RelayServer


class RawClient:
    """Plain TCP client that speaks newline-delimited JSON to a relay."""

    def __init__(self, server, port):
        self.server = server
        self.sock = socket.create_connection(("127.0.0.1", port))
        self.sock.setblocking(False)

        self.buffer = b""

    def send(self, obj):
        self.send_raw(json.dumps(obj).encode() + b"\n")

    def send_raw(self, data):
        self.sock.sendall(data)

    def receive(self, count, timeout=10.0):
        """Run the relay until count messages have been received."""
        messages = []
        deadline = time.monotonic() + timeout

        while True:
            *lines, self.buffer = self.buffer.split(b"\n")
            messages += [json.loads(line) for line in lines]

            if len(messages) >= count:
                return messages

            assert time.monotonic() < deadline, f"received only {messages}"

            self.server.run_once(10)

            try:
                data = self.sock.recv(65536)
            except BlockingIOError:
                continue

            if not data:
                raise ConnectionError("relay closed the connection")

            self.buffer += data

    def close(self):
        self.sock.close()


@pytest.fixture
def server():
    server = RelayServer(RelayConfig(shell="/bin/sh"), use_pty=False)
    endpoint = server.bind("tcp://127.0.0.1:*")
    server.port = int(endpoint.rsplit(":", 1)[1])

    yield server

    server.close()


@pytest.fixture
def client(server):
    client = RawClient(server, server.port)
    client.receive(1)

    yield client

    client.close()


def wait_for(server, condition, timeout=10.0):
    deadline = time.monotonic() + timeout

    while not condition():
        assert time.monotonic() < deadline, "condition not met in time"
        server.run_once(10)


def test_greeting_first(server):
    client = RawClient(server, server.port)

    greeting = client.receive(1)[0]

    assert greeting["id"] == "welcome"
    assert greeting["result"]["ptySupported"] is False
    assert greeting["result"]["protocol"] == "1.0.0"

    client.close()


def test_request_response(client, tmp_path):
    (tmp_path / "hello").write_text("world")

    client.send(
        {
            "version": "2.0",
            "method": "fs.readFile",
            "params": {"path": str(tmp_path / "hello")},
            "id": 1,
        }
    )

    assert client.receive(1) == [{"version": "2.0", "result": "world", "id": 1}]


def test_parse_error_keeps_connection(client):
    client.send_raw(b"this is not json\n")

    error = client.receive(1)[0]

    assert error["id"] is None
    assert error["error"]["code"] == -32700

    client.send({"method": "fs.stat", "params": {"path": "/"}, "id": 2})

    assert client.receive(1)[0]["result"]["isDirectory"] is True


def test_invalid_request(client):
    client.send(["not", "an", "object"])

    error = client.receive(1)[0]

    assert error["id"] is None
    assert error["error"]["code"] == -32600


def test_frames_split_and_batched(client):
    frames = b"".join(
        json.dumps({"method": "fs.stat", "params": {"path": "/"}, "id": i}).encode()
        + b"\n"
        for i in range(3)
    )

    client.send_raw(frames[:10])
    server = client.server
    server.run_once(10)
    client.send_raw(frames[10:])

    responses = client.receive(3)

    assert [r["id"] for r in responses] == [0, 1, 2]


def test_terminal_session(client, tmp_path):
    client.send(
        {
            "method": "terminal.create",
            "params": {"cwd": str(tmp_path), "cols": 80, "rows": 24},
            "id": "session-1",
        }
    )

    ready = client.receive(1)[0]
    assert ready["id"] == "session-1"
    assert ready["result"]["type"] == "ready"
    assert ready["result"]["backend"] == "spawn"

    client.send(
        {
            "method": "terminal.input",
            "params": {"sessionId": "session-1", "data": "echo marker-$((6 * 7))\n"},
            "id": None,
        }
    )
    client.send(
        {
            "method": "terminal.input",
            "params": {"sessionId": "session-1", "data": "exit 7\n"},
            "id": None,
        }
    )

    frames = []
    while not frames or frames[-1]["result"]["type"] != "exit":
        frames += client.receive(1)

    output = "".join(f["result"]["data"] for f in frames[:-1])

    assert all(f["id"] == "session-1" for f in frames)
    assert "marker-42" in output
    assert frames[-1]["result"] == {"type": "exit", "exitCode": 7}


def test_terminal_exec(client):
    client.send(
        {
            "method": "terminal.exec",
            "params": {"command": "echo $((1 + 1))"},
            "id": 4,
        }
    )

    response = client.receive(1)[0]

    assert response["id"] == 4
    assert response["result"]["stdout"] == "2"
    assert response["result"]["exitCode"] == 0


def test_disconnect_kills_sessions(server, client, tmp_path):
    client.send({"method": "terminal.create", "params": {}, "id": "session-1"})

    pid = client.receive(1)[0]["result"]["pid"]

    wait_for(server, lambda: server._session_count() == 1)

    client.close()

    wait_for(server, lambda: len(server.connections) == 0)

    # The killed shell gets reaped by the loop
    def shell_gone():
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        return False

    wait_for(server, shell_gone)


def test_sessions_scoped_to_connection(server, client):
    other = RawClient(server, server.port)
    other.receive(1)

    client.send({"method": "terminal.create", "params": {}, "id": "session-1"})
    client.receive(1)

    # The same key is a different session on another connection
    other.send({"method": "terminal.create", "params": {}, "id": "session-1"})
    assert other.receive(1)[0]["result"]["type"] == "ready"

    other.send({"method": "system.info", "id": 1})
    info = other.receive(1)[0]["result"]

    assert info["connectedClients"] == 2
    assert info["activeSessions"] == 2

    other.close()
