"""Module that implements `drivebridge --serve-local`, serving a folder as storage."""

import contextlib
import os

from drivebridge.backend import LocalDriveService, SERVICE_EXCEPTIONS
import drivebridge.constants as constants
from drivebridge.events import Event, EventQueue
from drivebridge.logger import log
import drivebridge.rpc as rpc
from .common import Operations


class ServeOperations(Operations):
    """
    Serves a local directory as storage service on the backend endpoint.

    A bridge started with the same endpoint (and token, if configured) then exposes
    that directory, which is useful to run the bridge and the storage on different
    machines or to try out the complete setup without a drive account. Any
    credentials are accepted.
    """

    def _run(self, stack: contextlib.ExitStack) -> int:
        root = os.path.abspath(os.path.expanduser(self._args.serve_local))

        if not os.path.isdir(root):
            raise NotADirectoryError(f"{root} is not a directory")

        endpoint = self._args.backend or self._config.backend.endpoint

        service = LocalDriveService(root, app_version=str(self._args.app_version))
        server = rpc.Server(
            service,
            self._config.backend.token,
            self._args.workers,
            exceptions=SERVICE_EXCEPTIONS,
        )

        events = EventQueue()

        t = self._start_thread(self._run_service, events, server, endpoint)
        stack.callback(t.join, timeout=constants.SHUTDOWN_GRACE)
        stack.callback(server.stop)

        log.info(f"serving {root} at {endpoint}")

        while True:
            event, value = events.next()

            if event == Event.EXCEPTION:
                raise value
            elif event == Event.SHUTDOWN:
                return 0

    @staticmethod
    def _run_service(events: EventQueue, server: rpc.Server, endpoint: str) -> None:
        """Serve the storage service RPC calls."""
        try:
            server.serve(endpoint)

            # This service should never stop running by itself
            events.exception("storage service unexpectedly stopped")
        except Exception as e:
            events.exception(f"storage service failed: {e}")
