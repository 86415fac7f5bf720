import queue
import threading

import pytest

from drivebridge.events import Event, EventQueue


def test_notify_order():
    q = EventQueue()

    q.notify(Event.SERVER_START, 1)
    q.notify(Event.TOKENS_EXPIRED, 1)
    q.notify(Event.SHUTDOWN)

    assert q.next() == (Event.SERVER_START, 1)
    assert q.next() == (Event.TOKENS_EXPIRED, 1)
    assert q.next() == (Event.SHUTDOWN, None)


def test_exception_from_string():
    q = EventQueue()
    q.exception("foo")

    event, value = q.next()

    assert event == Event.EXCEPTION
    assert isinstance(value, RuntimeError)
    assert value.args == ("foo",)


def test_next_returns_exceptions():
    q = EventQueue()
    q.exception(OSError(1))

    event, value = q.next()

    assert event == Event.EXCEPTION
    assert isinstance(value, OSError)


def test_next_timeout():
    q = EventQueue()

    assert q.empty()

    with pytest.raises(queue.Empty):
        q.next(timeout=0.01)


def test_notify_from_other_thread():
    q = EventQueue()

    threading.Timer(0.05, q.notify, args=(Event.ADMIN_SERVER_STOPPED,)).start()

    assert q.next(timeout=5.0) == (Event.ADMIN_SERVER_STOPPED, None)
