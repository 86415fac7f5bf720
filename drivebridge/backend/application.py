"""
Module with the client side of a drive account: tokens, their refresh cycle, sessions.

A DriveApplication holds the tokens of one logged in account and keeps them fresh by
refreshing them shortly before they expire. Whoever owns the application learns about
this through two callbacks:

* on_tokens_updated: new tokens were issued and should be persisted.
* on_tokens_expired: the tokens can no longer be refreshed and a new login is needed.

Callbacks fire from the refresh timer thread or from whichever thread made a call
that found the tokens to be expired, so they must return quickly and must not block on
anything that waits for drive calls to finish.
"""

import threading
from typing import Any, Callable, List, Optional

from drivebridge.backend.common import Contents, Credentials, Entry, Tokens
from drivebridge.backend.service import DriveService
from drivebridge.errors import SessionClosed, TokenError
from drivebridge.logger import log

TokensCallback = Callable[[Tokens], None]
ExpiredCallback = Callable[[], None]


class DriveApplication:
    """Logged in drive account that manages its own tokens."""

    def __init__(
        self,
        service: DriveService,
        app_version: str,
        refresh_margin: float = 60.0,
        retry_interval: float = 10.0,
    ):
        """
        Instantiate an application that is not logged in yet.

        Tokens are refreshed refresh_margin seconds before they expire. A refresh that
        fails due to a network error is retried every retry_interval seconds.
        """
        self._service = service
        self._app_version = app_version

        self._refresh_margin = refresh_margin
        self._retry_interval = retry_interval

        self._lock = threading.RLock()
        self._tokens: Optional[Tokens] = None
        self._timer: Optional[threading.Timer] = None
        self._expired = False
        self._closed = False

        self._updated_callbacks: List[TokensCallback] = []
        self._expired_callbacks: List[ExpiredCallback] = []

    #
    # Login and tokens
    #

    def login_with_credentials(self, credentials: Credentials) -> Tokens:
        """Log in with account credentials and return the issued tokens."""
        tokens = self._service.login(credentials, self._app_version)
        self._set_tokens(tokens)

        return tokens

    def login_with_tokens(self, tokens: Tokens) -> None:
        """Resume a session with previously issued tokens."""
        self._set_tokens(tokens)

    def tokens(self) -> Optional[Tokens]:
        """Return the current tokens."""
        with self._lock:
            return self._tokens

    def on_tokens_updated(self, callback: TokensCallback) -> None:
        """Register a function to call with new tokens after each refresh."""
        self._updated_callbacks.append(callback)

    def on_tokens_expired(self, callback: ExpiredCallback) -> None:
        """Register a function to call once the tokens can't be refreshed anymore."""
        self._expired_callbacks.append(callback)

    def refresh(self, stale: Optional[Tokens] = None) -> bool:
        """
        Refresh the tokens right away.

        Returns True if new tokens were issued. Returns False if the tokens were
        rejected, in which case the expired callbacks have fired. Network errors
        propagate and schedule a retry. If stale tokens are specified and they have
        already been replaced then nothing is refreshed and True is returned.
        """
        with self._lock:
            if self._closed or self._expired or self._tokens is None:
                return False

            if stale is not None and self._tokens is not stale:
                return True

            tokens = self._tokens

            try:
                new_tokens = self._service.refresh(tokens.uid, tokens.refresh_token)
            except TokenError as e:
                log.warning(f"failed to refresh tokens: {e}")
                self._expired = True
                new_tokens = None
            except Exception:
                self._schedule_refresh(self._retry_interval)
                raise
            else:
                self._tokens = new_tokens
                self._schedule_refresh()

        if new_tokens is None:
            self._fire_expired()
            return False
        else:
            log.debug(f"refreshed tokens for session {new_tokens.uid}")

            for updated_callback in list(self._updated_callbacks):
                updated_callback(new_tokens)

            return True

    def new_session(self) -> "DriveSession":
        """Create a session for file operations with the current tokens."""
        return DriveSession(self)

    def close(self) -> None:
        """Stop the refresh cycle. Callbacks no longer fire after this."""
        with self._lock:
            self._closed = True

            if self._timer is not None:
                self._timer.cancel()
                self._timer = None

    def _set_tokens(self, tokens: Tokens) -> None:
        with self._lock:
            self._tokens = tokens
            self._expired = False
            self._schedule_refresh()

    def _schedule_refresh(self, delay: Optional[float] = None) -> None:
        """(Re)start the timer for the next refresh. Must hold the lock."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

        if self._closed or self._tokens is None:
            return

        if delay is None:
            delay = max(self._tokens.expires_in() - self._refresh_margin, 0.0)

        self._timer = threading.Timer(delay, self._run_refresh)
        self._timer.daemon = True
        self._timer.start()

    def _run_refresh(self) -> None:
        try:
            self.refresh()
        except Exception as e:
            log.warning(f"failed to refresh tokens, retrying later: {e}")

    def _fire_expired(self) -> None:
        with self._lock:
            if self._closed:
                return

        log.info("session tokens expired")

        for expired_callback in list(self._expired_callbacks):
            expired_callback()

    #
    # Authorized calls
    #

    def call(self, name: str, *args: Any) -> Any:
        """
        Invoke a service call with the current access token.

        If the access token turns out to be expired then it is refreshed once and the
        call is retried.
        """
        tokens = self.tokens()

        if tokens is None or self._expired:
            raise TokenError("not logged in")

        try:
            return getattr(self._service, name)(tokens.access_token, *args)
        except TokenError:
            # Another thread may have refreshed the tokens in the meanwhile
            if not self.refresh(stale=tokens):
                raise

            return getattr(self._service, name)(self.tokens().access_token, *args)


class DriveSession:
    """
    File operations on a drive on behalf of a logged in application.

    The session is bound to a cancellation event. Once it is set, every call fails with
    SessionClosed, which unblocks requests that are still being served.
    """

    def __init__(self, app: DriveApplication):
        """Instantiate a session for the given application."""
        self._app = app
        self._cancel = threading.Event()

    def init(self, cancel: threading.Event) -> None:
        """Bind the session to a cancellation event and check that it's usable."""
        self._cancel = cancel
        self._call("check")

    @property
    def cancelled(self) -> bool:
        """Check if the session has been cancelled."""
        return self._cancel.is_set()

    def _call(self, name: str, *args: Any) -> Any:
        if self._cancel.is_set():
            raise SessionClosed("drive session has been closed")

        return self._app.call(name, *args)

    def stat(self, path: str) -> Entry:
        return self._call("stat", path)

    def listdir(self, path: str) -> List[Entry]:
        return self._call("listdir", path)

    def read(self, path: str) -> bytes:
        contents: Contents = self._call("read", path)
        return contents.data

    def write(self, path: str, data: bytes) -> Entry:
        return self._call("write", path, Contents.from_data(data))

    def mkdir(self, path: str) -> Entry:
        return self._call("mkdir", path)

    def remove(self, path: str) -> None:
        self._call("remove", path)

    def move(self, old: str, new: str) -> None:
        self._call("move", old, new)

    def copy(self, old: str, new: str) -> None:
        self._call("copy", old, new)
