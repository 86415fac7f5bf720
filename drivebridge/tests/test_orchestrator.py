from datetime import datetime
import socket
import threading
import time
from unittest import mock

import httpx
import pytest

from drivebridge.backend import Backend, Credentials
from drivebridge.credentials import EnvironmentCredentials
from drivebridge.errors import CredentialError, NoStoredToken, ReloginFailed
from drivebridge.events import Event, EventQueue
from drivebridge.orchestrator import (
    AuthStatus,
    EXPIRED_ERROR,
    NO_TOKEN_ERROR,
    Orchestrator,
)
from drivebridge.server import ServerManager

NOW = datetime(2024, 3, 1, 9, 30, 0)

AUTO_LOGIN_ENVIRON = {"DRIVE_USERNAME": "alice", "DRIVE_PASSWORD": "secret"}


@pytest.fixture
def servers(backend):
    manager = ServerManager(("127.0.0.1", 0), backend, shutdown_grace=1.0)
    yield manager
    manager.close()


@pytest.fixture
def supervisor():
    return EventQueue()


@pytest.fixture
def make_orchestrator(backend, token_store, servers, supervisor):
    created = []

    def make(credentials=None, servers=servers, backend=backend):
        orchestrator = Orchestrator(
            backend,
            token_store,
            servers,
            credentials=credentials,
            supervisor=supervisor,
            clock=lambda: NOW,
        )

        created.append(orchestrator)
        return orchestrator

    yield make

    for orchestrator in created:
        orchestrator.shutdown()


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


def get(servers, path):
    host, port = servers.address
    return httpx.get(f"http://{host}:{port}{path}", timeout=5.0)


def test_initial_status(orchestrator, servers):
    assert orchestrator.status() == AuthStatus()
    assert orchestrator.generation == 0
    assert not servers.running


def test_login(orchestrator, servers, token_store, credentials):
    orchestrator.login(credentials)

    assert orchestrator.status() == AuthStatus(logged_in=True, last_login=NOW)
    assert token_store.exists()

    # The server is started by the coordination loop
    assert not servers.running
    assert orchestrator.process_pending() == 1
    assert servers.running

    assert get(servers, "/hello.txt").content == b"hello world"


def test_login_failure(orchestrator, servers, token_store):
    with pytest.raises(CredentialError):
        orchestrator.login(Credentials("alice", "wrong"))

    status = orchestrator.status()

    assert not status.logged_in
    assert status.needs_login
    assert status.error == "incorrect login credentials"

    assert not token_store.exists()
    assert orchestrator.process_pending() == 0
    assert not servers.running


def test_login_backend_failure_is_credential_error(orchestrator, backend, credentials):
    with mock.patch.object(
        backend.service, "login", side_effect=ValueError("unsupported app version")
    ):
        with pytest.raises(CredentialError):
            orchestrator.login(credentials)

    assert orchestrator.status().error == "unsupported app version"


def test_failed_login_keeps_server(orchestrator, servers, credentials):
    orchestrator.login(credentials)
    orchestrator.process_pending()

    with pytest.raises(CredentialError):
        orchestrator.login(Credentials("alice", "wrong"))

    assert servers.running


def test_relogin_replaces_server(orchestrator, servers, token_store, credentials):
    orchestrator.login(credentials)
    orchestrator.process_pending()

    first_tokens = token_store.load_tokens()

    orchestrator.login(credentials)
    orchestrator.process_pending()

    assert servers.running
    assert orchestrator.generation == 2
    assert token_store.load_tokens() != first_tokens
    assert get(servers, "/hello.txt").status_code == 200


def test_resume(orchestrator, servers, token_store, service, credentials):
    token_store.store(service.login(credentials, "1.0.0"))

    orchestrator.resume()

    assert orchestrator.status() == AuthStatus(logged_in=True)

    orchestrator.process_pending()
    assert servers.running


def test_resume_without_tokens(orchestrator, servers):
    with pytest.raises(NoStoredToken):
        orchestrator.resume()

    assert orchestrator.status() == AuthStatus(needs_login=True, error=NO_TOKEN_ERROR)
    assert orchestrator.process_pending() == 0
    assert not servers.running


def test_resume_with_rejected_tokens(
    orchestrator, servers, token_store, service, credentials
):
    tokens = service.login(credentials, "1.0.0")
    token_store.store(tokens)
    service.revoke(tokens.uid)

    orchestrator.resume()

    # Server start fails, then the expiry is processed
    assert orchestrator.process_pending() == 2

    assert orchestrator.status() == AuthStatus(needs_login=True, error=EXPIRED_ERROR)
    assert not servers.running


def test_logout(orchestrator, servers, token_store, credentials):
    orchestrator.login(credentials)
    orchestrator.process_pending()

    orchestrator.logout()

    assert orchestrator.status() == AuthStatus(last_login=NOW, needs_login=True)
    assert not token_store.exists()
    assert not servers.running


def test_logout_when_logged_out(orchestrator, servers):
    orchestrator.logout()

    assert orchestrator.status().needs_login
    assert not servers.running


def test_logout_discards_pending_start(orchestrator, servers, credentials):
    orchestrator.login(credentials)
    orchestrator.logout()

    assert orchestrator.process_pending() == 1
    assert not servers.running


def test_tokens_renewed(orchestrator, servers, token_store, service, credentials):
    orchestrator.login(credentials)
    orchestrator.process_pending()

    tokens = token_store.load_tokens()
    service.expire(tokens.uid)

    # The request refreshes the expired access token
    assert get(servers, "/hello.txt").status_code == 200
    assert orchestrator.process_pending(timeout=5.0) == 1

    renewed = token_store.load_tokens()

    assert renewed.uid == tokens.uid
    assert renewed.access_token != tokens.access_token
    assert orchestrator.status().logged_in


def test_tokens_expired(orchestrator, servers, token_store, service, credentials):
    orchestrator.login(credentials)
    orchestrator.process_pending()

    address = servers.address

    tokens = token_store.load_tokens()
    service.expire(tokens.uid)
    service.revoke(tokens.uid)

    assert get(servers, "/hello.txt").status_code == 503
    assert orchestrator.process_pending(timeout=5.0) == 1

    status = orchestrator.status()

    assert not status.logged_in
    assert status.needs_login
    assert status.error == EXPIRED_ERROR
    assert status.last_login == NOW
    assert not servers.running

    # Stopping waits at most for the grace period, so the listener is gone by now
    with pytest.raises(OSError):
        socket.create_connection(address, timeout=1.0).close()

    # Tokens are kept until a new login replaces them
    assert token_store.exists()


def test_tokens_expired_auto_login(
    make_orchestrator, servers, token_store, service, credentials
):
    orchestrator = make_orchestrator(EnvironmentCredentials(AUTO_LOGIN_ENVIRON))

    orchestrator.login(credentials)
    orchestrator.process_pending()

    tokens = token_store.load_tokens()
    service.revoke(tokens.uid)
    service.expire(tokens.uid)

    get(servers, "/hello.txt")

    # Expiry, then the server start for the new login
    assert orchestrator.process_pending(timeout=5.0) == 2

    assert orchestrator.status() == AuthStatus(logged_in=True, last_login=NOW)
    assert token_store.load_tokens().uid != tokens.uid
    assert get(servers, "/hello.txt").status_code == 200


def test_tokens_expired_auto_login_failure(
    make_orchestrator, servers, token_store, service, supervisor, credentials
):
    environ = dict(AUTO_LOGIN_ENVIRON, DRIVE_PASSWORD="changed")
    orchestrator = make_orchestrator(EnvironmentCredentials(environ))

    orchestrator.login(credentials)
    orchestrator.process_pending()

    tokens = token_store.load_tokens()
    service.revoke(tokens.uid)
    service.expire(tokens.uid)

    get(servers, "/hello.txt")

    assert orchestrator.process_pending(timeout=5.0) == 1

    status = orchestrator.status()

    assert not status.logged_in
    assert status.needs_login
    assert status.error == "incorrect login credentials"
    assert not servers.running

    event, value = supervisor.next(timeout=1.0)

    assert event == Event.EXCEPTION
    assert isinstance(value, ReloginFailed)


def test_tokens_expired_without_auto_login(
    make_orchestrator, servers, token_store, service, supervisor, credentials
):
    orchestrator = make_orchestrator(EnvironmentCredentials({}))

    orchestrator.login(credentials)
    orchestrator.process_pending()

    tokens = token_store.load_tokens()
    service.revoke(tokens.uid)
    service.expire(tokens.uid)

    get(servers, "/hello.txt")

    assert orchestrator.process_pending(timeout=5.0) == 1
    assert orchestrator.status().error == EXPIRED_ERROR
    assert supervisor.empty()


def test_bind_failure(make_orchestrator, backend, credentials):
    blocker = socket.socket()
    blocker.bind(("127.0.0.1", 0))
    blocker.listen(1)

    servers = ServerManager(blocker.getsockname(), backend)
    orchestrator = make_orchestrator(servers=servers)

    try:
        orchestrator.login(credentials)
        orchestrator.process_pending()

        status = orchestrator.status()

        assert not status.logged_in
        assert status.needs_login
        assert "failed to listen" in status.error
        assert not servers.running
    finally:
        blocker.close()


def test_logout_aborts_network_wait(make_orchestrator, service, credentials):
    backend = Backend(service, ping=mock.Mock(side_effect=IOError("down")))
    servers = ServerManager(("127.0.0.1", 0), backend, network_retry=0.01)

    orchestrator = make_orchestrator(servers=servers, backend=backend)

    t = threading.Thread(target=orchestrator.run)
    t.start()

    try:
        orchestrator.login(credentials)

        # Give the loop a moment to start waiting for the network
        time.sleep(0.1)

        orchestrator.logout()

        assert not servers.running
    finally:
        orchestrator.shutdown()
        t.join(5.0)

    assert not t.is_alive()


def test_coordination_loop(orchestrator, servers, credentials):
    t = threading.Thread(target=orchestrator.run)
    t.start()

    try:
        orchestrator.login(credentials)

        deadline = time.monotonic() + 5.0

        while not servers.running and time.monotonic() < deadline:
            time.sleep(0.01)

        assert servers.running
    finally:
        orchestrator.shutdown()
        t.join(5.0)

    assert not t.is_alive()
    assert not servers.running


def test_shutdown_discards_pending_start(orchestrator, servers, credentials):
    orchestrator.login(credentials)
    orchestrator.shutdown()

    # Runs the queued server start, then stops at the shutdown
    orchestrator.run()

    assert not servers.running


def test_shutdown_aborts_network_wait(make_orchestrator, service, credentials):
    backend = Backend(service, ping=mock.Mock(side_effect=IOError("down")))
    servers = ServerManager(("127.0.0.1", 0), backend, network_retry=0.01)

    orchestrator = make_orchestrator(servers=servers, backend=backend)

    t = threading.Thread(target=orchestrator.run)
    t.start()

    orchestrator.login(credentials)
    time.sleep(0.1)

    orchestrator.shutdown()
    t.join(5.0)

    assert not t.is_alive()
    assert not servers.running


def test_status_json():
    assert AuthStatus().to_json() == {"logged_in": False, "needs_login": False}

    status = AuthStatus(
        logged_in=False, last_login=NOW, needs_login=True, error=EXPIRED_ERROR
    )

    assert status.to_json() == {
        "logged_in": False,
        "last_login": "2024-03-01T09:30:00",
        "needs_login": True,
        "error": EXPIRED_ERROR,
    }
