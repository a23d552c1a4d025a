import logging

import pytest

import outpost.logger as logger


@pytest.fixture(autouse=True)
def client_logging():
    yield

    logger.configure()


def test_summarize_matching_length():
    assert logger.summarize("abc", max_length=3) == "abc"


def test_summarize_exceeding_length():
    assert logger.summarize("abcdef", max_length=5) == "ab..."


def test_summarize_params():
    params = {"path": "/tmp/a", "content": "x" * 1000}

    summary = logger.summarize(params)

    assert len(summary) == 255
    assert summary.startswith("{'path': '/tmp/a'")
    assert summary.endswith("...")


def test_raw_terminal_line_endings():
    logger.configure()

    handler = logger.log.handlers[0]

    assert logger.log.name == "outpost"
    assert logger.log.level == logging.ERROR
    assert handler.terminator == "\r\n"


def test_relay_logging():
    logger.configure(relay=True)

    handler = logger.log.handlers[0]

    assert logger.log.level == logging.INFO
    assert handler.terminator == "\n"
    assert handler.formatter._fmt == logger.RELAY_FORMAT


def test_debug_overrides_mode():
    logger.configure(debug=True, relay=True)

    assert logger.log.level == logging.DEBUG
