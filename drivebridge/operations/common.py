"""Shared functionality between the login and listen operations."""

from abc import ABC
import contextlib
import os
import threading
from typing import Any, Callable, Mapping, Optional

from drivebridge.args import Arguments
from drivebridge.backend import Backend
from drivebridge.config import Config
from drivebridge.logger import log, redact
import drivebridge.store as store


class Operations(ABC):
    """Base class for the logic behind the different modes of drivebridge."""

    def __init__(self, args: Arguments, environ: Optional[Mapping[str, str]] = None):
        """Initialize operations based on command-line arguments and config file."""
        self._args = args
        self._environ = os.environ if environ is None else environ
        self._config = Config.load(os.path.expanduser(args.config))

    def run(self) -> int:
        """Run the operations and clean up properly in case of errors."""
        with contextlib.ExitStack() as stack:
            return self._run(stack)

        # https://github.com/python/mypy/issues/7726
        assert False, "unreachable"

    def _run(self, stack: contextlib.ExitStack) -> int:
        """Run the actual operations."""
        raise NotImplementedError()

    def _data_dir(self) -> str:
        """Determine where tokens and the admin password are stored."""
        directory = store.data_dir(self._config.storage.data_dir, self._environ)
        log.debug(f"using data directory {directory}")

        return directory

    def _connect_backend(self, stack: contextlib.ExitStack) -> Backend:
        """Set up the storage service, either local or over RPC."""
        app_version = str(self._args.app_version)

        if self._args.local_root:
            root = os.path.abspath(os.path.expanduser(self._args.local_root))
            log.info(f"serving local directory {root}")

            backend = Backend.local(root, app_version)
        else:
            endpoint = self._args.backend or self._config.backend.endpoint
            token = redact(self._config.backend.token)
            log.debug(f"using storage service at {endpoint} with token {token}")

            backend = Backend.connect(
                endpoint,
                self._config.backend.token,
                self._config.backend.timeout,
                app_version,
            )

        stack.callback(backend.close)

        return backend

    @staticmethod
    def _start_thread(target: Callable[..., None], *args: Any) -> threading.Thread:
        """
        Start a thread with the specified function.

        It is still made a daemon just in case the thread fails to exit properly and
        blocks the shutting down of the program.
        """
        t = threading.Thread(target=target, args=args, daemon=True)
        t.start()
        return t
