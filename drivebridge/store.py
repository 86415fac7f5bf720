"""
Module that persists session tokens and the admin credential as JSON files.

Both files live in the per-application data directory and are only readable by the
owner since they grant access to the drive and the admin interface. Writes and
deletions are serialized with an inter-process lock next to the file because a
`drivebridge --login` run may store tokens while the bridge itself is renewing them.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass
import json
import os
import os.path
from typing import Generic, Mapping, Optional, Type, TypeVar

import fasteners

import drivebridge.constants as constants
from drivebridge.backend.common import Tokens
from drivebridge.errors import NoStoredToken, PersistenceError

T = TypeVar("T")


def data_dir(
    override: Optional[str] = None, environ: Optional[Mapping[str, str]] = None
) -> str:
    """
    Determine the directory for persisted state.

    Follows the XDG base directory specification: $XDG_DATA_HOME/drivebridge, or
    ~/.local/share/drivebridge if that isn't set.
    """
    if override:
        return override

    if environ is None:
        environ = os.environ

    base = environ.get("XDG_DATA_HOME")

    if not base:
        home = environ.get("HOME") or os.path.expanduser("~")

        if not home or home == "~":
            raise PersistenceError("failed to determine data directory")

        base = os.path.join(home, ".local", "share")

    return os.path.join(base, constants.DATA_DIR_NAME)


@dataclass
class AdminCredential:
    """Salted digest of the admin password."""

    password_hash: str
    salt: str


class JSONStore(Generic[T]):
    """Persistence of a single dataclass value as a JSON document."""

    def __init__(self, path: str, value_type: Type[T]):
        """Instantiate a store for values of the given type at the given path."""
        self.path = path
        self._value_type = value_type

    @property
    def _lock_path(self) -> str:
        return self.path + ".lock"

    def exists(self) -> bool:
        """Check if a value has been stored."""
        return os.path.exists(self.path)

    def load(self) -> T:
        """
        Read the stored value.

        Raises FileNotFoundError if nothing has been stored, and ValueError if the
        stored document is corrupt.
        """
        with open(self.path, "r") as f:
            document = json.load(f)

        if not isinstance(document, dict):
            raise ValueError(f"expected object in {self.path}")

        try:
            return self._value_type(**document)  # type: ignore
        except TypeError as e:
            raise ValueError(f"unexpected contents in {self.path}: {e}")

    def store(self, value: T) -> None:
        """Write the value, replacing anything stored before."""
        try:
            self._ensure_dir()

            with fasteners.InterProcessLock(self._lock_path):
                fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)

                with os.fdopen(fd, "w") as f:
                    json.dump(dataclasses.asdict(value), f)

                # O_CREAT only applies the mode to new files
                os.chmod(self.path, 0o600)
        except OSError as e:
            raise PersistenceError(f"failed to write {self.path}: {e}")

    def delete(self) -> None:
        """Remove the stored value. Does nothing if there is none."""
        try:
            with fasteners.InterProcessLock(self._lock_path):
                os.unlink(self.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f"failed to delete {self.path}: {e}")

    def _ensure_dir(self) -> None:
        directory = os.path.dirname(self.path)
        os.makedirs(directory, mode=0o700, exist_ok=True)


class TokenStore(JSONStore[Tokens]):
    """Persisted session tokens of the drive."""

    def __init__(self, path: str):
        """Instantiate the token store at the given path."""
        super().__init__(path, Tokens)

    @staticmethod
    def in_dir(directory: str) -> TokenStore:
        """Instantiate the token store within the data directory."""
        return TokenStore(os.path.join(directory, constants.TOKEN_FILE))

    def load_tokens(self) -> Tokens:
        """
        Read the stored tokens, checking that they can be used to resume a session.

        Raises NoStoredToken if there are none, the file is unreadable or corrupt,
        or the access token is empty.
        """
        try:
            tokens = self.load()
        except FileNotFoundError:
            raise NoStoredToken("no stored tokens")
        except (OSError, ValueError) as e:
            raise NoStoredToken(f"failed to load tokens: {e}")

        if not tokens.access_token:
            raise NoStoredToken("stored tokens have no access token")

        return tokens


class AdminCredentialStore(JSONStore[AdminCredential]):
    """Persisted admin credential."""

    def __init__(self, path: str):
        """Instantiate the admin credential store at the given path."""
        super().__init__(path, AdminCredential)

    @staticmethod
    def in_dir(directory: str) -> AdminCredentialStore:
        """Instantiate the admin credential store within the data directory."""
        return AdminCredentialStore(
            os.path.join(directory, constants.ADMIN_PASSWORD_FILE)
        )
