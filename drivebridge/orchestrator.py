"""
Module with the drive session orchestrator, the state machine at the core of the bridge.

The orchestrator tracks whether the bridge is logged in to the drive and makes sure the
WebDAV server only runs while it is, bound to the tokens of the current session:

        login/resume             tokens expire
NoToken -----------> Connected -------------> Expired
   ^                  |     ^                    |
   |      logout      |     | automatic login    |
   +------------------+     +--------------------+

Logins and logouts come from control API handlers or the startup logic, token renewal
and expiry come from the storage backend's refresh cycle. The backend callbacks only
post events to a queue, which a single coordination loop consumes, so reactions to them
never run on the backend's own threads.

Every login, logout, expiry and the shutdown supersede the previous session by
incrementing the session generation. Events and server starts carry the generation
they were made for and are discarded once it is no longer current. This keeps a
renewal of an old session from overwriting the tokens of a new one, and a slow start
from reviving a server after a logout or shutdown.

Locks are always acquired in this order: the transition lock that serializes server
starts and stops, then the status lock that guards the status, the generation and the
persisted tokens.
"""

from dataclasses import dataclass, replace
from datetime import datetime
import queue
import threading
from typing import Any, Callable, Dict, Optional

from drivebridge.backend import Backend, Credentials, Tokens
from drivebridge.credentials import EnvironmentCredentials
from drivebridge.errors import (
    BridgeError,
    CredentialError,
    NetworkUnavailable,
    NoStoredToken,
    PersistenceError,
    ReloginFailed,
    TokenError,
)
from drivebridge.events import Event, EventQueue
from drivebridge.logger import log
from drivebridge.server import ServerManager
from drivebridge.store import TokenStore

# Error recorded in the status when the session tokens can no longer be refreshed
EXPIRED_ERROR = "Tokens expired"

# Error recorded in the status when there are no tokens to resume a session with
NO_TOKEN_ERROR = "No valid tokens found"


@dataclass(frozen=True)
class AuthStatus:
    """Connection state of the bridge to the drive."""

    logged_in: bool = False
    last_login: Optional[datetime] = None
    needs_login: bool = False
    error: Optional[str] = None

    def to_json(self) -> Dict[str, Any]:
        """Convert to the representation returned by the control API."""
        document: Dict[str, Any] = {
            "logged_in": self.logged_in,
            "needs_login": self.needs_login,
        }

        if self.last_login is not None:
            document["last_login"] = self.last_login.isoformat()

        if self.error:
            document["error"] = self.error

        return document


class Orchestrator:
    """Owner of the connection state and the WebDAV server that goes with it."""

    def __init__(
        self,
        backend: Backend,
        token_store: TokenStore,
        servers: ServerManager,
        credentials: Optional[EnvironmentCredentials] = None,
        supervisor: Optional[EventQueue] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Instantiate the orchestrator.

        If a credential source is given and it has a username and password, expired
        sessions are logged in again automatically. Failures to do so are posted to the
        supervisor queue as ReloginFailed exceptions.
        """
        self._backend = backend
        self._token_store = token_store
        self._servers = servers
        self._credentials = credentials
        self._supervisor = supervisor
        self._clock = clock

        self._lock = servers.lock
        self._status_lock = threading.Lock()

        self._status = AuthStatus()
        self._generation = 0
        self._abort = threading.Event()

        self._events = EventQueue()

    #
    # State queries
    #

    def status(self) -> AuthStatus:
        """Return a snapshot of the connection state."""
        with self._status_lock:
            return self._status

    @property
    def generation(self) -> int:
        """Return the generation of the current session."""
        with self._status_lock:
            return self._generation

    #
    # Transitions
    #

    def login(self, credentials: Credentials) -> None:
        """
        Log in to the drive with account credentials.

        On success the tokens are persisted and the WebDAV server is started in the
        background. On failure the error is recorded in the status and raised as a
        CredentialError, leaving the server alone.
        """
        app = self._backend.application()

        try:
            tokens = app.login_with_credentials(credentials)
        except Exception as e:
            log.warning(f"login failed: {e}")

            with self._status_lock:
                self._status = replace(
                    self._status, logged_in=False, needs_login=True, error=str(e)
                )

            if isinstance(e, CredentialError):
                raise

            raise CredentialError(str(e)) from e
        finally:
            # The server runs its own application with the issued tokens
            app.close()

        log.info(f"logged in as {credentials.username}")

        self._connect(tokens, self._clock())

    def resume(self) -> None:
        """
        Resume the session with the persisted tokens.

        Raises NoStoredToken if there are no usable tokens, after recording that a
        login is needed. Otherwise the WebDAV server is started in the background.
        """
        try:
            tokens = self._token_store.load_tokens()
        except NoStoredToken:
            with self._status_lock:
                self._status = replace(
                    self._status,
                    logged_in=False,
                    needs_login=True,
                    error=NO_TOKEN_ERROR,
                )

            raise

        log.info("resuming session with stored tokens")

        self._connect(tokens, None)

    def logout(self) -> None:
        """Stop the WebDAV server and forget the session tokens."""
        with self._status_lock:
            generation = self._supersede(
                replace(self._status, logged_in=False, needs_login=True, error=None)
            )

            try:
                self._token_store.delete()
            except PersistenceError as e:
                log.error(f"failed to delete stored tokens: {e}")

        log.info("logged out")

        self._stop_server(generation)

    def _connect(self, tokens: Tokens, last_login: Optional[datetime]) -> None:
        """Make the tokens the current session and request a server start."""
        with self._status_lock:
            generation = self._supersede(
                AuthStatus(
                    logged_in=True,
                    last_login=last_login or self._status.last_login,
                    needs_login=False,
                )
            )

            self._persist(tokens)

            abort = self._abort

        self._events.notify(Event.SERVER_START, (generation, tokens, abort))

    def _supersede(self, status: AuthStatus) -> int:
        """
        Replace the status and start a new session generation. Needs the status lock.

        A start of the previous generation that is still waiting for the network is
        aborted.
        """
        self._generation += 1

        self._abort.set()
        self._abort = threading.Event()

        self._status = status

        return self._generation

    def _persist(self, tokens: Tokens) -> None:
        """Store tokens, which is not fatal since the session remains usable."""
        try:
            self._token_store.store(tokens)
        except PersistenceError as e:
            log.error(f"failed to store tokens: {e}")

    def _stop_server(self, generation: int) -> None:
        """Stop the server, unless a newer session has taken over since."""
        with self._lock:
            if self.generation != generation:
                log.debug("not stopping server that belongs to newer session")
                return

            self._servers.stop()

    #
    # Coordination loop
    #

    def run(self) -> None:
        """
        Process events until shutdown() is called.

        Exceptions raised while handling an event are logged so that a single bad
        transition doesn't stop the loop.
        """
        while True:
            event, value = self._events.next()

            if event == Event.SHUTDOWN:
                break

            try:
                self._handle(event, value)
            except Exception as e:
                log.error(f"failed to handle {event}: {e}")

        log.debug("coordination loop finished")

    def process_pending(self, timeout: float = 0.0) -> int:
        """
        Process events that are pending or arrive within the timeout.

        Returns the number of events processed. Useful to drive the orchestrator
        without a coordination thread.
        """
        count = 0

        while True:
            try:
                event, value = self._events.next(timeout if count == 0 else 0.0)
            except queue.Empty:
                return count

            if event == Event.SHUTDOWN:
                return count

            self._handle(event, value)
            count += 1

    def shutdown(self) -> None:
        """
        Stop the coordination loop and the WebDAV server.

        Server starts that are still queued belong to a superseded session afterwards
        and are discarded.
        """
        with self._status_lock:
            self._supersede(self._status)

        self._events.notify(Event.SHUTDOWN)

        with self._lock:
            self._servers.close()

    def _handle(self, event: Event, value: Any) -> None:
        if event == Event.SERVER_START:
            self._on_server_start(*value)
        elif event == Event.TOKENS_RENEWED:
            self._on_tokens_renewed(*value)
        elif event == Event.TOKENS_EXPIRED:
            self._on_tokens_expired(value)
        else:
            log.warning(f"ignoring unexpected event {event}")

    def _on_server_start(
        self, generation: int, tokens: Tokens, abort: threading.Event
    ) -> None:
        with self._lock:
            if self.generation != generation:
                log.debug(f"discarding server start of superseded session {generation}")
                return

            def on_renewed(new_tokens: Tokens) -> None:
                self._events.notify(Event.TOKENS_RENEWED, (generation, new_tokens))

            def on_expired() -> None:
                self._events.notify(Event.TOKENS_EXPIRED, generation)

            try:
                self._servers.start(tokens, on_renewed, on_expired, abort)
            except NetworkUnavailable:
                log.debug(f"server start of session {generation} aborted")
            except TokenError as e:
                # Expiry event that follows takes care of the transition
                log.warning(f"failed to connect to drive: {e}")
            except Exception as e:
                log.error(f"failed to start WebDAV server: {e}")

                with self._status_lock:
                    if self._generation == generation:
                        self._supersede(
                            replace(
                                self._status,
                                logged_in=False,
                                needs_login=True,
                                error=str(e),
                            )
                        )

    def _on_tokens_renewed(self, generation: int, tokens: Tokens) -> None:
        with self._status_lock:
            if self._generation != generation:
                log.debug(f"ignoring renewed tokens of superseded session {generation}")
                return

            self._persist(tokens)

        log.debug("stored renewed tokens")

    def _on_tokens_expired(self, generation: int) -> None:
        with self._status_lock:
            if self._generation != generation:
                log.debug(f"ignoring expiry of superseded session {generation}")
                return

            log.warning("session tokens expired")

            generation = self._supersede(
                replace(
                    self._status, logged_in=False, needs_login=True, error=EXPIRED_ERROR
                )
            )

        self._stop_server(generation)

        if self._credentials is None or not self._credentials.can_auto_login():
            log.info("waiting for login through the admin interface")
            return

        log.info("logging in again with configured credentials")

        try:
            self.login(self._credentials.resolve(interactive=False))
        except BridgeError as e:
            log.error(f"automatic login failed: {e}")

            if self._supervisor is not None:
                self._supervisor.exception(ReloginFailed(str(e)))
