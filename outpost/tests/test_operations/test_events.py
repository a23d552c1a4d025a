import threading

import pytest

from outpost.operations.events import Event, EventQueue


def test_events_in_order():
    q = EventQueue()
    q.notify(Event.TERMINAL_RESIZE)
    q.notify(Event.SESSION_EXIT, 1234)

    assert q.next() == (Event.TERMINAL_RESIZE, None)
    assert q.next() == (Event.SESSION_EXIT, 1234)


def test_exception_from_string():
    q = EventQueue()
    q.exception("foo")

    with pytest.raises(RuntimeError) as e:
        q.next()
    assert e.value.args == ("foo",)


def test_builtin_exception():
    q = EventQueue()
    q.exception(OSError(1))

    with pytest.raises(OSError) as e:
        q.next()
    assert e.value.args == (1,)


def test_next_timeout():
    q = EventQueue()

    with pytest.raises(TimeoutError):
        q.next(timeout=0.01)


def test_events_from_other_threads():
    q = EventQueue()

    t = threading.Thread(target=q.notify, args=(Event.TERMINAL_RESIZE,))
    t.start()

    assert q.next(timeout=5.0) == (Event.TERMINAL_RESIZE, None)

    t.join()
