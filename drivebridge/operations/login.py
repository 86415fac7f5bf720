"""Module that implements the interactive login of `drivebridge --login`."""

import contextlib
import threading

from drivebridge.credentials import EnvironmentCredentials
from drivebridge.logger import log
from drivebridge.store import TokenStore
from .common import Operations


class LoginOperations(Operations):
    """Logs in to the drive once and stores the session tokens for later runs."""

    def _run(self, stack: contextlib.ExitStack) -> int:
        token_store = TokenStore.in_dir(self._data_dir())

        credentials = EnvironmentCredentials(self._environ).resolve()

        backend = self._connect_backend(stack)
        backend.wait_available(threading.Event(), self._config.backend.network_retry)

        app = backend.application()
        stack.callback(app.close)

        # Errors propagate so that a failed login results in a non-zero exit code
        tokens = app.login_with_credentials(credentials)
        token_store.store(tokens)

        log.info(f"logged in as {credentials.username}, tokens stored")

        return 0
