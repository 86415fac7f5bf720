from unittest import mock

from fastapi.testclient import TestClient
import httpx
import pytest

from drivebridge.admin import AdminAuth
from drivebridge.api import AdminServer, create_app
from drivebridge.errors import PersistenceError
from drivebridge.events import EventQueue
from drivebridge.orchestrator import Orchestrator
from drivebridge.server import ServerManager

LOGIN = {"username": "alice", "password": "secret"}


@pytest.fixture
def orchestrator(backend, token_store):
    servers = ServerManager(("127.0.0.1", 0), backend, shutdown_grace=1.0)
    orchestrator = Orchestrator(backend, token_store, servers)

    yield orchestrator

    orchestrator.shutdown()


@pytest.fixture
def admin(admin_store):
    return AdminAuth(admin_store)


@pytest.fixture
def client(orchestrator, admin):
    with TestClient(create_app(orchestrator, admin)) as client:
        yield client


@pytest.fixture
def logged_in_client(client):
    response = client.post("/api/admin/setup", json={"password": "correct horse"})
    assert response.status_code == 200

    return client


def test_open_before_setup(client):
    response = client.get("/api/status")

    assert response.status_code == 200
    assert response.json() == {"logged_in": False, "needs_login": False}


def test_admin_status(client):
    assert client.get("/api/admin/status").json() == {"initialized": False}

    client.post("/api/admin/setup", json={"password": "correct horse"})

    assert client.get("/api/admin/status").json() == {"initialized": True}


def test_setup_sets_cookie(client):
    response = client.post("/api/admin/setup", json={"password": "correct horse"})

    assert response.status_code == 200
    assert response.json() == {"success": True}

    cookie = response.headers["set-cookie"]

    assert cookie.startswith("admin_session=")
    assert "HttpOnly" in cookie
    assert "Path=/" in cookie
    assert "expires=" in cookie.lower()
    assert "samesite=strict" in cookie.lower()


def test_setup_twice(logged_in_client):
    response = logged_in_client.post(
        "/api/admin/setup", json={"password": "battery staple"}
    )

    assert response.status_code == 400
    assert response.text == "Admin already initialized"


def test_setup_weak_password(client, admin):
    response = client.post("/api/admin/setup", json={"password": "short"})

    assert response.status_code == 400
    assert response.text == "Password must be at least 8 characters"
    assert not admin.is_initialized()


def test_setup_persistence_failure(client, admin):
    with mock.patch.object(admin, "setup", side_effect=PersistenceError("disk full")):
        response = client.post("/api/admin/setup", json={"password": "correct horse"})

    assert response.status_code == 500
    assert response.text == "Error storing password"


def test_invalid_request(client):
    response = client.post("/api/admin/setup", json={"wrong": "field"})

    assert response.status_code == 400
    assert response.text == "Invalid request"

    response = client.post(
        "/api/admin/setup",
        content=b"not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 400
    assert response.text == "Invalid request"


def test_method_not_allowed(client):
    response = client.get("/api/login")

    assert response.status_code == 405
    assert response.text == "Method not allowed"


def test_protected_after_setup(logged_in_client):
    logged_in_client.cookies.clear()

    for method, path in [
        ("GET", "/api/status"),
        ("POST", "/api/login"),
        ("POST", "/api/logout"),
    ]:
        response = logged_in_client.request(method, path)

        assert response.status_code == 401
        assert response.text == "Unauthorized"


def test_invalid_session(logged_in_client):
    logged_in_client.cookies.clear()
    logged_in_client.cookies.set("admin_session", "bogus")

    response = logged_in_client.get("/api/status")

    assert response.status_code == 401
    assert response.text == "Session expired"


def test_admin_login(logged_in_client):
    logged_in_client.cookies.clear()

    response = logged_in_client.post("/api/admin/login", json={"password": "wrong!!!"})

    assert response.status_code == 401
    assert response.text == "Invalid password"

    response = logged_in_client.post(
        "/api/admin/login", json={"password": "correct horse"}
    )

    assert response.status_code == 200
    assert "admin_session" in response.cookies

    assert logged_in_client.get("/api/status").status_code == 200


def test_admin_login_before_setup(client):
    response = client.post("/api/admin/login", json={"password": "correct horse"})

    assert response.status_code == 400
    assert response.text == "Admin not initialized"


def test_admin_logout(logged_in_client, admin):
    token = logged_in_client.cookies["admin_session"]

    response = logged_in_client.post("/api/admin/logout")

    assert response.status_code == 200
    assert response.json() == {"success": True}
    assert not admin.authorize(token)

    assert logged_in_client.get("/api/status").status_code == 401


def test_admin_logout_without_session(client):
    assert client.post("/api/admin/logout").status_code == 200


def test_drive_login(logged_in_client, orchestrator, token_store):
    response = logged_in_client.post("/api/login", json=LOGIN)

    assert response.status_code == 200
    assert response.json() == {"success": True}

    status = logged_in_client.get("/api/status").json()

    assert status["logged_in"]
    assert not status["needs_login"]
    assert "last_login" in status
    assert token_store.exists()


def test_drive_login_optional_fields(logged_in_client, orchestrator):
    with mock.patch.object(orchestrator, "login") as login:
        response = logged_in_client.post(
            "/api/login",
            json=dict(LOGIN, mailbox_password="mailbox", twofa="123456"),
        )

    assert response.status_code == 200

    credentials = login.call_args[0][0]

    assert credentials.mailbox_password == "mailbox"
    assert credentials.two_fa == "123456"


def test_drive_login_failure(logged_in_client):
    response = logged_in_client.post(
        "/api/login", json={"username": "alice", "password": "wrong"}
    )

    assert response.status_code == 401
    assert response.text == "incorrect login credentials"

    status = logged_in_client.get("/api/status").json()

    assert status["needs_login"]
    assert status["error"] == "incorrect login credentials"


def test_drive_login_invalid_request(logged_in_client):
    response = logged_in_client.post("/api/login", json={"username": "alice"})

    assert response.status_code == 400
    assert response.text == "Invalid request"


def test_drive_logout(logged_in_client, token_store):
    logged_in_client.post("/api/login", json=LOGIN)

    response = logged_in_client.post("/api/logout")

    assert response.status_code == 200
    assert response.json() == {"success": True}

    status = logged_in_client.get("/api/status").json()

    assert not status["logged_in"]
    assert status["needs_login"]
    assert not token_store.exists()


def test_not_found(client):
    response = client.get("/api/nothing")

    assert response.status_code == 404
    assert response.text == "Not found"


def test_admin_server(orchestrator, admin):
    supervisor = EventQueue()
    server = AdminServer(create_app(orchestrator, admin), "127.0.0.1", 0, supervisor)

    server.start()

    try:
        assert server.port != 0

        response = httpx.get(
            f"http://127.0.0.1:{server.port}/api/admin/status", timeout=5.0
        )

        assert response.json() == {"initialized": False}
    finally:
        server.stop()

    # Requested stops are not reported
    assert supervisor.empty()

    with pytest.raises(httpx.TransportError):
        httpx.get(f"http://127.0.0.1:{server.port}/api/admin/status", timeout=1.0)


def test_admin_server_address_in_use(orchestrator, admin):
    first = AdminServer(create_app(orchestrator, admin), "127.0.0.1", 0)
    first.start()

    try:
        second = AdminServer(create_app(orchestrator, admin), "127.0.0.1", first.port)

        with pytest.raises(OSError):
            second.start()
    finally:
        first.stop()
