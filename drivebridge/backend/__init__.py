"""
Modules that connect the bridge to the storage service behind the drive.

The storage service speaks the actual drive protocol (login, key handling, uploads
and downloads) and is out of scope for the bridge itself. The bridge reaches it over
RPC, which lets the protocol client run as a separate process, possibly written in
another language, while the bridge only depends on the small DriveService interface.

For development and tests the LocalDriveService serves a local directory through the
same interface, either over RPC or directly in the bridge process.
"""

import threading
from typing import Callable, Optional

import drivebridge.constants as constants
from drivebridge.errors import NetworkUnavailable
from drivebridge.logger import log
import drivebridge.rpc as rpc
from .application import DriveApplication, DriveSession
from .common import Contents, Credentials, Entry, Tokens
from .service import DriveService, LocalDriveService, SERVICE_EXCEPTIONS


class Backend:
    """Factory for drive applications that talk to a specific storage service."""

    def __init__(
        self,
        service: DriveService,
        app_version: str = constants.APP_VERSION,
        ping: Optional[Callable[[], None]] = None,
        close: Optional[Callable[[], None]] = None,
    ):
        """
        Instantiate a backend for the given service.

        The ping function checks if the service is reachable and raises an IOError if
        not. Services that are called directly are always reachable. The close
        function releases the connection to the service.
        """
        self.service = service
        self.app_version = app_version

        self._ping = ping
        self._close = close

    @staticmethod
    def connect(
        endpoint: str,
        token: Optional[str] = None,
        timeout_ms: int = 5000,
        app_version: str = constants.APP_VERSION,
    ) -> "Backend":
        """Instantiate a backend for a storage service at an RPC endpoint."""
        client = rpc.Client(
            DriveService,
            endpoint,
            token,
            timeout_ms,
            exceptions=SERVICE_EXCEPTIONS,
        )

        return Backend(client, app_version, ping=client.ping, close=client.close)

    @staticmethod
    def local(root: str, app_version: str = constants.APP_VERSION) -> "Backend":
        """Instantiate a backend that serves a local directory in-process."""
        return Backend(LocalDriveService(root, app_version=app_version), app_version)

    def application(self) -> DriveApplication:
        """Create a new application that is not logged in yet."""
        return DriveApplication(self.service, self.app_version)

    def wait_available(self, cancel: threading.Event, interval: float = 2.0) -> None:
        """
        Block until the storage service is reachable.

        There is no timeout since the bridge has nothing to serve until the network is
        back. Raises NetworkUnavailable only if the wait is cancelled, also when that
        happened before it began.
        """
        if cancel.is_set():
            raise NetworkUnavailable("cancelled before waiting for network")

        if self._ping is None:
            return

        while True:
            try:
                self._ping()
                return
            except IOError as e:
                log.info(f"waiting for network ({e})")

            if cancel.wait(interval):
                raise NetworkUnavailable("cancelled while waiting for network")

    def close(self) -> None:
        """Release the connection to the storage service."""
        if self._close is not None:
            self._close()


__all__ = [
    "Backend",
    "Contents",
    "Credentials",
    "DriveApplication",
    "DriveService",
    "DriveSession",
    "Entry",
    "LocalDriveService",
    "SERVICE_EXCEPTIONS",
    "Tokens",
]
