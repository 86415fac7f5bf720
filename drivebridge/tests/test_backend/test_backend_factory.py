import threading
from unittest import mock

import pytest

from drivebridge.backend import (
    Backend,
    Credentials,
    LocalDriveService,
    SERVICE_EXCEPTIONS,
)
from drivebridge.errors import CredentialError, NetworkUnavailable
import drivebridge.rpc as rpc


def test_local_backend(drive_root, credentials):
    backend = Backend.local(str(drive_root))

    # Served in-process, so always available
    backend.wait_available(threading.Event())

    app = backend.application()
    app.login_with_credentials(credentials)

    session = app.new_session()
    session.init(threading.Event())

    assert session.read("/hello.txt") == b"hello world"

    app.close()
    backend.close()


def test_wait_available_retries():
    ping = mock.Mock(side_effect=[IOError("down"), IOError("down"), None])
    backend = Backend(mock.Mock(), ping=ping)

    backend.wait_available(threading.Event(), interval=0.01)

    assert ping.call_count == 3


def test_wait_available_cancelled():
    ping = mock.Mock(side_effect=IOError("down"))
    backend = Backend(mock.Mock(), ping=ping)

    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()

    with pytest.raises(NetworkUnavailable):
        backend.wait_available(cancel, interval=0.01)


def test_wait_available_cancelled_before_start(drive_root):
    cancel = threading.Event()
    cancel.set()

    with pytest.raises(NetworkUnavailable):
        Backend.local(str(drive_root)).wait_available(cancel)


def test_close():
    close = mock.Mock()

    Backend(mock.Mock(), close=close).close()
    close.assert_called_once_with()

    # Nothing to release for in-process services
    Backend(mock.Mock()).close()


def test_remote_backend(drive_root, credentials):
    service = LocalDriveService(str(drive_root), "alice", "secret")
    server = rpc.Server(service, token="1234", exceptions=SERVICE_EXCEPTIONS)

    t = threading.Thread(target=server.serve, args=("tcp://127.0.0.1:*",))
    t.start()

    try:
        assert server.wait_ready(5.0)

        backend = Backend.connect(server.endpoint, "1234", timeout_ms=5000)
        backend.wait_available(threading.Event())

        app = backend.application()

        with pytest.raises(CredentialError):
            app.login_with_credentials(Credentials("alice", "wrong"))

        app.login_with_credentials(credentials)

        session = app.new_session()
        session.init(threading.Event())

        assert [e.name for e in session.listdir("/")] == ["docs", "hello.txt"]

        session.write("/remote.txt", b"over the wire")
        assert (drive_root / "remote.txt").read_bytes() == b"over the wire"

        with pytest.raises(FileNotFoundError):
            session.stat("/missing.txt")

        app.close()
        backend.close()
    finally:
        server.stop()
        t.join(5.0)


def test_remote_backend_unreachable():
    backend = Backend.connect("tcp://127.0.0.1:1", timeout_ms=10)

    cancel = threading.Event()
    threading.Timer(0.1, cancel.set).start()

    with pytest.raises(NetworkUnavailable):
        backend.wait_available(cancel, interval=0.01)

    backend.close()
