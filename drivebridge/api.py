"""
Module implementing the control API that the admin interface talks to.

The API lets an administrator check the connection state of the bridge, log in to the
drive and log out again without restarting the process. It is protected by the admin
password once that has been set up:

* /api/admin/... endpoints manage the admin password and the admin session cookie and
are always reachable.
* /api/status, /api/login and /api/logout require a valid admin session cookie, unless
no admin password has been set up yet.

Errors are reported as short plain text messages with an appropriate status code.
"""

import asyncio
from datetime import timezone
import socket
import threading
import time
from typing import Optional

from fastapi import Cookie, Depends, FastAPI, HTTPException, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from starlette.exceptions import HTTPException as StarletteHTTPException
import uvicorn

import drivebridge.constants as constants
from drivebridge.admin import AdminAuth, AdminSession
from drivebridge.backend import Credentials
from drivebridge.errors import AdminError, CredentialError, PersistenceError
from drivebridge.events import Event, EventQueue
from drivebridge.logger import log
from drivebridge.orchestrator import Orchestrator

# Messages for errors that FastAPI raises by itself
_ERROR_MESSAGES = {
    404: "Not found",
    405: "Method not allowed",
}


class LoginRequest(BaseModel):
    """Drive account credentials to log in with."""

    username: str
    password: str
    mailbox_password: str = ""
    twofa: str = ""


class PasswordRequest(BaseModel):
    """Admin password for setup or login."""

    password: str


def _set_session_cookie(response: Response, session: AdminSession) -> None:
    response.set_cookie(
        constants.ADMIN_SESSION_COOKIE,
        session.token,
        path="/",
        expires=session.expires_at.astimezone(timezone.utc),
        httponly=True,
        samesite="strict",
    )


def create_app(orchestrator: Orchestrator, admin: AdminAuth) -> FastAPI:
    """Create the control API application for the given orchestrator."""
    app = FastAPI(title="drivebridge", docs_url=None, redoc_url=None, openapi_url=None)

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request, exc) -> PlainTextResponse:
        return PlainTextResponse("Invalid request", status_code=400)

    @app.exception_handler(StarletteHTTPException)
    async def http_error(request, exc) -> PlainTextResponse:
        message = _ERROR_MESSAGES.get(exc.status_code, str(exc.detail))
        return PlainTextResponse(message, status_code=exc.status_code)

    @app.exception_handler(AdminError)
    async def admin_error(request, exc: AdminError) -> PlainTextResponse:
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    @app.exception_handler(PersistenceError)
    async def persistence_error(request, exc: PersistenceError) -> PlainTextResponse:
        log.error(f"failed to store admin password: {exc}")
        return PlainTextResponse("Error storing password", status_code=500)

    def require_admin(
        session_token: Optional[str] = Cookie(
            default=None, alias=constants.ADMIN_SESSION_COOKIE
        ),
    ) -> None:
        if admin.authorize(session_token):
            return

        if session_token is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        else:
            raise HTTPException(status_code=401, detail="Session expired")

    #
    # Drive session
    #

    @app.get("/api/status", dependencies=[Depends(require_admin)])
    def status() -> dict:
        return orchestrator.status().to_json()

    # Blocking endpoints run in the threadpool so the event loop stays responsive
    @app.post("/api/login", dependencies=[Depends(require_admin)])
    def login(request: LoginRequest) -> dict:
        credentials = Credentials(
            request.username,
            request.password,
            request.mailbox_password,
            request.twofa,
        )

        try:
            orchestrator.login(credentials)
        except CredentialError as e:
            raise HTTPException(status_code=401, detail=str(e))

        return {"success": True}

    @app.post("/api/logout", dependencies=[Depends(require_admin)])
    def logout() -> dict:
        orchestrator.logout()
        return {"success": True}

    #
    # Admin authentication
    #

    @app.get("/api/admin/status")
    def admin_status() -> dict:
        return {"initialized": admin.is_initialized()}

    @app.post("/api/admin/setup")
    def admin_setup(request: PasswordRequest, response: Response) -> dict:
        session = admin.setup(request.password)
        _set_session_cookie(response, session)

        return {"success": True}

    @app.post("/api/admin/login")
    def admin_login(request: PasswordRequest, response: Response) -> dict:
        session = admin.login(request.password)
        _set_session_cookie(response, session)

        return {"success": True}

    @app.post("/api/admin/logout")
    def admin_logout(
        response: Response,
        session_token: Optional[str] = Cookie(
            default=None, alias=constants.ADMIN_SESSION_COOKIE
        ),
    ) -> dict:
        admin.logout(session_token)

        response.delete_cookie(
            constants.ADMIN_SESSION_COOKIE,
            path="/",
            httponly=True,
            samesite="strict",
        )

        return {"success": True}

    return app


class AdminServer:
    """Serves the control API with uvicorn on a background thread."""

    def __init__(
        self,
        app: FastAPI,
        host: str,
        port: int,
        supervisor: Optional[EventQueue] = None,
    ):
        """
        Instantiate the server for the given application and address.

        If a supervisor queue is given, it is notified when the server stops without
        being asked to.
        """
        self.app = app
        self.host = host
        self.port = port

        self._supervisor = supervisor

        self._server: Optional[uvicorn.Server] = None
        self._thread: Optional[threading.Thread] = None
        self._stopping = False

    def start(self, timeout: float = 5.0) -> None:
        """
        Start serving and wait until requests are accepted.

        The socket is bound before returning, so an unusable address raises an OSError
        right away. Binding to port 0 picks a free port, which is reflected in the port
        attribute afterwards.
        """
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET

        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)

        try:
            sock.bind((self.host, self.port))
        except OSError:
            sock.close()
            raise

        self.port = sock.getsockname()[1]

        config = uvicorn.Config(
            self.app,
            log_level="warning",
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._stopping = False

        self._thread = threading.Thread(target=self._serve, args=(sock,), daemon=True)
        self._thread.start()

        deadline = time.monotonic() + timeout

        while not self._server.started:
            if not self._thread.is_alive() or time.monotonic() > deadline:
                raise RuntimeError(f"admin server failed to start on port {self.port}")

            time.sleep(0.01)

        log.info(f"admin interface available at http://{self.host}:{self.port}")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop serving and wait for the server thread to finish."""
        if self._server is None or self._thread is None:
            return

        self._stopping = True
        self._server.should_exit = True
        self._thread.join(timeout)

        self._server = None
        self._thread = None

    def _serve(self, sock: socket.socket) -> None:
        try:
            asyncio.run(self._server.serve(sockets=[sock]))
        except Exception as e:
            log.error(f"admin server error: {e}")
        finally:
            sock.close()

        if not self._stopping and self._supervisor is not None:
            self._supervisor.notify(Event.ADMIN_SERVER_STOPPED)
