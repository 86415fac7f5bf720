"""
Module that manages the lifecycle of the WebDAV server.

The server is bound to one drive session at a time. Starting it for new tokens
replaces the running instance, and stopping it cancels the session first so that
requests blocked on the storage service return right away instead of holding up the
shutdown. At most one server is alive at any time.
"""

from dataclasses import dataclass
import threading
from typing import Callable, Optional, Tuple

from cheroot import wsgi

import drivebridge.constants as constants
from drivebridge.backend import Backend, DriveApplication, DriveSession, Tokens
from drivebridge.errors import BindError
from drivebridge.logger import log
import drivebridge.webdav as webdav


@dataclass
class ServerHandle:
    """A running WebDAV server and the drive session it serves."""

    server: wsgi.Server
    thread: threading.Thread

    app: DriveApplication
    session: DriveSession
    cancel: threading.Event


class ServerManager:
    """Starts and stops the WebDAV server, one instance at a time."""

    def __init__(
        self,
        address: Tuple[str, int],
        backend: Backend,
        lock: Optional[threading.RLock] = None,
        shutdown_grace: float = constants.SHUTDOWN_GRACE,
        network_retry: float = 2.0,
    ):
        """
        Instantiate a manager for a server on the given address.

        Starting and stopping happens under the given lock, which callers can share to
        make their own state changes atomic with respect to the server's lifecycle.
        """
        self.lock = lock if lock is not None else threading.RLock()

        self._address = address
        self._backend = backend
        self._shutdown_grace = shutdown_grace
        self._network_retry = network_retry

        self._handle: Optional[ServerHandle] = None

    @property
    def running(self) -> bool:
        """Check if a server is currently running."""
        with self.lock:
            return self._handle is not None

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Return the address the running server is bound to, if there is one."""
        with self.lock:
            if self._handle is None:
                return None

            host, port = self._handle.server.bind_addr[:2]
            return host, port

    def start(
        self,
        tokens: Tokens,
        on_renewed: Callable[[Tokens], None],
        on_expired: Callable[[], None],
        cancel: Optional[threading.Event] = None,
    ) -> Tuple[str, int]:
        """
        Start a server for a drive session with the given tokens.

        A running server is stopped first. Before connecting, this waits for the
        storage service to become reachable for as long as it takes, unless the cancel
        event is set, which raises NetworkUnavailable.

        Returns the address that the server is listening on once it accepts
        connections. Raises BindError if the address is unusable.
        """
        if cancel is None:
            cancel = threading.Event()

        with self.lock:
            self.stop()

            log.info("waiting for network")
            self._backend.wait_available(cancel, self._network_retry)

            log.info("connecting to drive")

            app = self._backend.application()
            app.login_with_tokens(tokens)
            app.on_tokens_updated(on_renewed)
            app.on_tokens_expired(on_expired)

            session_cancel = threading.Event()
            session = app.new_session()

            try:
                session.init(session_cancel)
            except Exception:
                app.close()
                raise

            server = wsgi.Server(
                self._address,
                webdav.create_app(session),
                shutdown_timeout=int(self._shutdown_grace),
            )

            try:
                server.prepare()
            except OSError as e:
                session_cancel.set()
                app.close()

                host, port = self._address
                raise BindError(f"failed to listen on {host}:{port}: {e}")

            thread = threading.Thread(target=self._serve, args=(server,), daemon=True)
            thread.start()

            self._handle = ServerHandle(server, thread, app, session, session_cancel)

            host, port = server.bind_addr[:2]
            log.info(f"WebDAV server available at http://{host}:{port}")

            return host, port

    def stop(self) -> None:
        """
        Stop the running server, if there is one.

        In-flight requests get a grace period to finish. Problems during shutdown are
        logged since the server is gone either way.
        """
        with self.lock:
            handle, self._handle = self._handle, None

            if handle is None:
                return

            log.info("stopping WebDAV server")

            # Unblocks requests waiting on the storage service
            handle.cancel.set()
            handle.app.close()

            try:
                handle.server.stop()
            except Exception as e:
                log.error(f"failed to shut down WebDAV server: {e}")

            handle.thread.join(self._shutdown_grace)

            if handle.thread.is_alive():
                log.warning("WebDAV server did not stop within grace period")
            else:
                log.info("WebDAV server stopped")

    def close(self) -> None:
        """Stop the server for good."""
        self.stop()

    @staticmethod
    def _serve(server: wsgi.Server) -> None:
        try:
            server.serve()
        except Exception as e:
            log.error(f"WebDAV server error: {e}")
