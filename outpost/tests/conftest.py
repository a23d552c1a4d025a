"""Module that adds flags to pytest and fixtures for tests against a live relay."""

import multiprocessing
import select
import signal
import time

import pytest
import zmq

from outpost.client.remote import _free_port
from outpost.client.transport import Channel, ChannelKind
from outpost.config import RelayConfig
from outpost.relay import RelayServer


def pytest_addoption(parser):
    parser.addoption(
        "--ssh-host",
        action="store",
        default=None,
        help="Run ssh tests against this destination (like user@host)",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "ssh: mark test as requiring an ssh host to run")


def pytest_collection_modifyitems(config, items):
    if not config.getoption("--ssh-host"):
        skip_ssh = pytest.mark.skip(reason="only runs with --ssh-host option")

        for item in items:
            if "ssh" in item.keywords:
                item.add_marker(skip_ssh)


@pytest.fixture
def ssh_host(request):
    return request.config.getoption("--ssh-host")


def start_relay_process(port: int, use_pty=None) -> multiprocessing.Process:
    def run_relay():
        config = RelayConfig(host="127.0.0.1", port=port, shell="/bin/sh")
        server = RelayServer(config, use_pty)

        # Stop gracefully so that the sessions of the relay are killed too
        signal.signal(signal.SIGTERM, lambda *_: server.stop())

        server.serve()

    proc = multiprocessing.get_context("fork").Process(target=run_relay)
    proc.start()

    return proc


@pytest.fixture
def relay_port():
    port = _free_port()
    proc = start_relay_process(port)

    try:
        yield port
    finally:
        proc.terminate()
        proc.join(timeout=5.0)


@pytest.fixture
def open_channel(relay_port):
    channels = []

    def opener(timeout=5.0):
        channel = Channel.open(
            zmq.Context.instance(),
            f"tcp://127.0.0.1:{relay_port}",
            ChannelKind.DIRECT,
            timeout,
        )
        channels.append(channel)
        return channel

    yield opener

    for channel in channels:
        channel.close()


def run_until_exit(child, timeout=10.0):
    """Run a minimal event loop for a single relay child until its exit is reported."""
    deadline = time.monotonic() + timeout

    while not child.poll_exit():
        assert time.monotonic() < deadline, "process did not exit in time"

        write_fds = [child.write_fd] if child.write_fd is not None else []
        readable, writable, _ = select.select(child.read_fds, write_fds, [], 0.05)

        for _ in writable:
            child.handle_writable()

        for fd in readable:
            if fd in child.read_fds:
                child.handle_readable(fd)


@pytest.fixture
def drive():
    return run_until_exit
