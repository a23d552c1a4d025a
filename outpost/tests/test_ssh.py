"""Tests that deploy the relay to a real host, run with --ssh-host user@host."""

import uuid

import pytest

import outpost.client as client
from outpost.config import BootstrapConfig


@pytest.fixture
def connection(ssh_host, tmp_path):
    config = BootstrapConfig(lock_dir=str(tmp_path / "locks"))
    conn = client.connect(ssh_host, config=config)

    yield conn

    conn.close()


@pytest.mark.ssh
def test_round_trip(connection):
    home = connection.system_info()["env"]["HOME"]
    path = f"{home}/.outpost/test-{uuid.uuid4().hex}.txt"

    connection.write_file(path, "hello from outpost\n")

    try:
        assert connection.read_file(path) == "hello from outpost\n"
        assert connection.stat(path).size == len("hello from outpost\n")
    finally:
        connection.execute(f"rm -f {path}")


@pytest.mark.ssh
def test_shell(connection):
    session = connection.create_session()

    output = []
    session.on_data(output.append)

    session.write("echo $((40 + 2))\n")
    session.write("exit 0\n")

    assert session.wait_exit(timeout=30.0) == 0
    assert "42" in "".join(output)


@pytest.mark.ssh
def test_redeploy(ssh_host, tmp_path):
    config = BootstrapConfig(lock_dir=str(tmp_path / "locks"))

    with client.connect(ssh_host, config=config, redeploy=True) as conn:
        assert conn.greeting["protocol"] == "1.0.0"
