"""
Module that implements authentication for the admin interface.

There is a single admin password. Until it has been set up the control API is open,
so that the first visitor can choose the password. After that every protected call
needs a session token obtained by logging in with the password. Sessions last 24
hours and any number of them can be active at the same time.

Expired sessions are rejected but not removed right away; purge_expired() cleans them
up and is invoked whenever a new session is created.
"""

import base64
from dataclasses import dataclass
from datetime import datetime
import hashlib
import hmac
import secrets
import threading
from typing import Callable, Dict, Optional

import drivebridge.constants as constants
from drivebridge.errors import (
    AlreadyInitialized,
    InvalidPassword,
    NotInitialized,
    WeakPassword,
)
from drivebridge.logger import log
from drivebridge.store import AdminCredential, AdminCredentialStore


@dataclass(frozen=True)
class AdminSession:
    """Session granting access to the control API."""

    token: str
    expires_at: datetime


def generate_salt() -> str:
    """Create a random salt for password hashing."""
    return base64.b64encode(secrets.token_bytes(16)).decode()


def generate_session_token() -> str:
    """Create a new session token."""
    return base64.b64encode(secrets.token_bytes(32)).decode()


def hash_password(password: str, salt: str) -> str:
    """Create a salted digest of the password."""
    return hashlib.sha256((password + salt).encode()).hexdigest()


class AdminAuth:
    """Admin password and sessions, safe to use from multiple threads."""

    def __init__(
        self,
        store: AdminCredentialStore,
        clock: Callable[[], datetime] = datetime.now,
    ):
        """
        Instantiate admin authentication backed by the given credential store.

        A previously stored credential is loaded right away. If there is none (or it's
        unreadable) then setup is required.
        """
        self._store = store
        self._clock = clock

        self._lock = threading.Lock()
        self._credential: Optional[AdminCredential] = None
        self._sessions: Dict[str, datetime] = {}

        try:
            self._credential = store.load()
        except FileNotFoundError:
            log.info("no admin password set, setup required")
        except Exception as e:
            log.error(f"failed to load admin password, setup required: {e}")

    def is_initialized(self) -> bool:
        """Check if the admin password has been set up."""
        with self._lock:
            return self._credential is not None

    def setup(self, password: str) -> AdminSession:
        """Set up the admin password and start a session."""
        with self._lock:
            if self._credential is not None:
                raise AlreadyInitialized()

            if len(password) < constants.MIN_ADMIN_PASSWORD_LENGTH:
                raise WeakPassword()

            salt = generate_salt()
            credential = AdminCredential(hash_password(password, salt), salt)

            # Raises PersistenceError without changing anything in memory
            self._store.store(credential)

            self._credential = credential

            log.info("admin password set up")

            return self._new_session()

    def login(self, password: str) -> AdminSession:
        """Check the admin password and start a new session."""
        with self._lock:
            if self._credential is None:
                raise NotInitialized()

            digest = hash_password(password, self._credential.salt)

            if not hmac.compare_digest(digest, self._credential.password_hash):
                raise InvalidPassword()

            return self._new_session()

    def logout(self, token: Optional[str]) -> None:
        """End a session. Unknown tokens are ignored."""
        if token is None:
            return

        with self._lock:
            self._sessions.pop(token, None)

    def authorize(self, token: Optional[str]) -> bool:
        """
        Check if a session token grants access to the control API.

        Access is always granted while the admin password hasn't been set up yet.
        """
        with self._lock:
            if self._credential is None:
                return True

            if token is None:
                return False

            expires_at = self._sessions.get(token)

            return expires_at is not None and expires_at > self._clock()

    def reset(self) -> None:
        """Delete the admin password and end all sessions."""
        with self._lock:
            self._store.delete()

            self._credential = None
            self._sessions.clear()

        log.info("admin password has been reset")

    @property
    def session_count(self) -> int:
        """Return the number of sessions, including expired ones not yet purged."""
        with self._lock:
            return len(self._sessions)

    def purge_expired(self) -> int:
        """Remove expired sessions and return how many were removed."""
        with self._lock:
            return self._purge_expired()

    def _purge_expired(self) -> int:
        now = self._clock()
        expired = [token for token, expiry in self._sessions.items() if expiry <= now]

        for token in expired:
            del self._sessions[token]

        return len(expired)

    def _new_session(self) -> AdminSession:
        """Create a new session. Must hold the lock."""
        self._purge_expired()

        session = AdminSession(
            token=generate_session_token(),
            expires_at=self._clock() + constants.ADMIN_SESSION_LIFETIME,
        )

        self._sessions[session.token] = session.expires_at

        return session
