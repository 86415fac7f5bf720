"""Module that implements the long-running mode serving WebDAV and the control API."""

import contextlib

from drivebridge.admin import AdminAuth
from drivebridge.api import AdminServer, create_app
from drivebridge.args import parse_address
import drivebridge.constants as constants
from drivebridge.credentials import EnvironmentCredentials
from drivebridge.errors import CredentialError, NoStoredToken, ReloginFailed
from drivebridge.events import Event, EventQueue
from drivebridge.logger import log
from drivebridge.orchestrator import Orchestrator
from drivebridge.server import ServerManager
from drivebridge.store import AdminCredentialStore, TokenStore
from .common import Operations


class ListenOperations(Operations):
    """
    Runs the control API and the WebDAV server until interrupted.

    The main thread acts as supervisor. It waits for events that the servers and the
    orchestrator report and decides what is fatal. A failed automatic login is not:
    the bridge stays up and waits for a login through the admin interface.
    """

    def _run(self, stack: contextlib.ExitStack) -> int:
        directory = self._data_dir()

        supervisor = EventQueue()

        # Admin authentication, optionally starting over
        admin = AdminAuth(AdminCredentialStore.in_dir(directory))

        if self._environ.get(constants.ENV_ADMIN_PASSWORD_RESET) == "true":
            log.info("admin password reset requested")
            admin.reset()

        # Drive session and the WebDAV server that goes with it
        backend = self._connect_backend(stack)

        servers = ServerManager(
            self._args.listen or parse_address(self._config.server.listen),
            backend,
            shutdown_grace=self._config.server.shutdown_grace,
            network_retry=self._config.backend.network_retry,
        )

        credentials = EnvironmentCredentials(self._environ)

        orchestrator = Orchestrator(
            backend,
            TokenStore.in_dir(directory),
            servers,
            credentials,
            supervisor,
        )

        loop_thread = self._start_thread(orchestrator.run)
        stack.callback(loop_thread.join, timeout=constants.SHUTDOWN_GRACE)
        stack.callback(orchestrator.shutdown)

        # Control API is always available, also without a drive session
        admin_host, admin_port = self._args.admin_listen or parse_address(
            self._config.server.admin_listen
        )

        admin_server = AdminServer(
            create_app(orchestrator, admin), admin_host, admin_port, supervisor
        )
        admin_server.start()
        stack.callback(admin_server.stop)

        self._initial_login(orchestrator, credentials)

        return self._supervise(supervisor)

    @staticmethod
    def _initial_login(
        orchestrator: Orchestrator, credentials: EnvironmentCredentials
    ) -> None:
        """Resume the previous session, or log in with configured credentials."""
        try:
            orchestrator.resume()
            return
        except NoStoredToken as e:
            log.info(f"no session to resume: {e}")

        if not credentials.can_auto_login():
            log.info("waiting for login through the admin interface")
            return

        log.info("attempting automatic login with configured credentials")

        try:
            orchestrator.login(credentials.resolve(interactive=False))
        except CredentialError as e:
            log.error(f"automatic login failed: {e}")
            log.info("waiting for login through the admin interface")

    @staticmethod
    def _supervise(supervisor: EventQueue) -> int:
        """Wait for events from the servers until something fatal happens."""
        while True:
            event, value = supervisor.next()

            if event == Event.EXCEPTION:
                if isinstance(value, ReloginFailed):
                    log.info("waiting for login through the admin interface")
                    continue

                raise value
            elif event == Event.ADMIN_SERVER_STOPPED:
                raise RuntimeError("admin interface stopped unexpectedly")
            elif event == Event.SHUTDOWN:
                return 0
