import pytest

from outpost.args import Arguments


def test_no_args():
    with pytest.raises(SystemExit):
        Arguments.parse([])


def test_basic_usage():
    args = Arguments.parse(["hostname", "cat", "/etc/hostname"])

    assert args.destination == "hostname"
    assert args.action == "cat"
    assert args.args == ["/etc/hostname"]

    assert not args.relay
    assert not args.probe


def test_action_without_args():
    args = Arguments.parse(["hostname", "info"])

    assert args.action == "info"
    assert args.args == []


def test_unknown_action():
    with pytest.raises(SystemExit):
        Arguments.parse(["hostname", "rm", "/"])


def test_action_argument_count():
    with pytest.raises(SystemExit):
        Arguments.parse(["hostname", "cat"])

    with pytest.raises(SystemExit):
        Arguments.parse(["hostname", "info", "extra"])

    with pytest.raises(SystemExit):
        Arguments.parse(["hostname", "exec"])

    args = Arguments.parse(["hostname", "exec", "ls", "-la", "/tmp"])
    assert args.args == ["ls", "-la", "/tmp"]


def test_relay_without_destination():
    args = Arguments.parse(["--relay"])

    assert args.relay
    assert args.destination is None


def test_protocol_parsing():
    args = Arguments.parse(["--protocol=1.2.3", "hostname", "info"])

    assert args.protocol.major == 1
    assert args.protocol.minor == 2
    assert args.protocol.patch == 3

    with pytest.raises(SystemExit):
        Arguments.parse(["--protocol=abc", "hostname", "info"])


def test_port():
    args = Arguments.parse(["hostname", "info"])
    assert args.port is None

    args = Arguments.parse(["--port=9000", "hostname", "info"])
    assert args.port == 9000

    with pytest.raises(SystemExit):
        Arguments.parse(["--port=0", "hostname", "info"])

    with pytest.raises(SystemExit):
        Arguments.parse(["--port=65536", "hostname", "info"])


def test_redeploy():
    args = Arguments.parse(["hostname", "info"])
    assert not args.redeploy

    args = Arguments.parse(["--redeploy", "hostname", "info"])
    assert args.redeploy


def test_timeout():
    args = Arguments.parse(["--timeout=1234", "hostname", "info"])
    assert args.timeout == 1234

    with pytest.raises(SystemExit):
        Arguments.parse(["--timeout=-1", "hostname", "info"])


def test_action_arguments_that_resemble_flags():
    args = Arguments.parse(["hostname", "exec", "ls", "--debug"])

    assert not args.debug
    assert args.args == ["ls", "--debug"]


def test_extra_ssh_args():
    args = Arguments.parse(["--ssh=-4 -E logfile", "hostname", "info"])

    assert args.extra_ssh_args == ["-4", "-E", "logfile"]
