"""
Module defining the storage service interface and a service for a local directory.

A storage service implements the drive protocol: login with credentials, token
refresh and file operations authorized by an access token. The bridge talks to it
over RPC, or calls it directly when it runs in the same process.

LocalDriveService exposes a local directory this way. It is served in-process for
--local-root and in tests, or over RPC like any other storage service.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import os
import os.path
import secrets
import shutil
import threading
import time
from typing import Dict, List, Optional

import semver

import drivebridge.constants as constants
from drivebridge.backend.common import Contents, Credentials, Entry, Tokens
from drivebridge.errors import CredentialError, TokenError
from drivebridge.logger import log


class DriveService(ABC):
    """
    Calls that a storage service exposes to the bridge.

    Rejected credentials raise CredentialError, and rejected or expired tokens raise
    TokenError. File operations raise the same OSError subclasses as their os module
    counterparts, like FileNotFoundError.
    """

    @abstractmethod
    def login(self, credentials: Credentials, app_version: str) -> Tokens:
        """Log in with account credentials and issue new tokens."""

    @abstractmethod
    def refresh(self, uid: str, refresh_token: str) -> Tokens:
        """Exchange a refresh token for a new set of tokens."""

    @abstractmethod
    def check(self, access_token: str) -> None:
        """Check if an access token is (still) valid."""

    @abstractmethod
    def stat(self, access_token: str, path: str) -> Entry:
        """Retrieve the metadata of a file or folder."""

    @abstractmethod
    def listdir(self, access_token: str, path: str) -> List[Entry]:
        """List the contents of a folder."""

    @abstractmethod
    def read(self, access_token: str, path: str) -> Contents:
        """Download a file."""

    @abstractmethod
    def write(self, access_token: str, path: str, contents: Contents) -> Entry:
        """Upload a file, replacing it if it already exists."""

    @abstractmethod
    def mkdir(self, access_token: str, path: str) -> Entry:
        """Create a folder."""

    @abstractmethod
    def remove(self, access_token: str, path: str) -> None:
        """Delete a file or folder with everything in it."""

    @abstractmethod
    def move(self, access_token: str, old: str, new: str) -> None:
        """Move or rename a file or folder."""

    @abstractmethod
    def copy(self, access_token: str, old: str, new: str) -> None:
        """Copy a file or folder with everything in it."""


# Exceptions that services raise besides builtin ones
SERVICE_EXCEPTIONS = (CredentialError, TokenError)


@dataclass
class _Grant:
    """Tokens issued to a single logged in client."""

    access_token: str
    refresh_token: str
    expires_at: float


class LocalDriveService(DriveService):
    """Storage service that serves the contents of a local directory."""

    def __init__(
        self,
        root: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        two_fa: Optional[str] = None,
        token_lifetime: float = 3600.0,
        app_version: str = constants.APP_VERSION,
    ):
        """
        Instantiate the service for the given root directory.

        If a username and password are specified then logins must match them,
        otherwise any non-empty credentials are accepted. If a second factor is
        specified then it is required as well. Access tokens expire after the token
        lifetime (in seconds) and have to be refreshed.
        """
        self._root = os.path.realpath(root)

        self._username = username
        self._password = password
        self._two_fa = two_fa

        self._token_lifetime = token_lifetime
        self._app_version = semver.VersionInfo.parse(app_version)

        self._grants_lock = threading.Lock()
        self._grants: Dict[str, _Grant] = {}

    #
    # Authentication
    #

    def login(self, credentials: Credentials, app_version: str) -> Tokens:
        """Log in with account credentials and issue new tokens."""
        self._check_app_version(app_version)

        if not credentials.username or not credentials.password:
            raise CredentialError("username and password are required")

        if self._username is not None and (
            credentials.username != self._username
            or credentials.password != self._password
        ):
            raise CredentialError("incorrect login credentials")

        if self._two_fa is not None and credentials.two_fa != self._two_fa:
            raise CredentialError("incorrect 2FA code")

        uid = secrets.token_hex(16)
        tokens = self._issue(uid)

        log.info(f"issued tokens for {credentials.username}")

        return tokens

    def refresh(self, uid: str, refresh_token: str) -> Tokens:
        """Exchange a refresh token for a new set of tokens."""
        with self._grants_lock:
            grant = self._grants.get(uid)

            if grant is None or not secrets.compare_digest(
                grant.refresh_token, refresh_token
            ):
                raise TokenError("refresh token rejected")

        return self._issue(uid)

    def check(self, access_token: str) -> None:
        """Check if an access token is (still) valid."""
        self._authorize(access_token)

    def expire(self, uid: str) -> None:
        """Expire the access token of a session, forcing a refresh."""
        with self._grants_lock:
            if uid in self._grants:
                self._grants[uid].expires_at = time.time()

    def revoke(self, uid: str) -> None:
        """Revoke all tokens of a session, forcing a new login."""
        with self._grants_lock:
            self._grants.pop(uid, None)

    def _issue(self, uid: str) -> Tokens:
        tokens = Tokens(
            uid=uid,
            access_token=secrets.token_urlsafe(32),
            refresh_token=secrets.token_urlsafe(32),
            expires_at=time.time() + self._token_lifetime,
        )

        with self._grants_lock:
            self._grants[uid] = _Grant(
                tokens.access_token, tokens.refresh_token, tokens.expires_at
            )

        return tokens

    def _authorize(self, access_token: str) -> None:
        with self._grants_lock:
            for grant in self._grants.values():
                if secrets.compare_digest(grant.access_token, access_token):
                    if grant.expires_at <= time.time():
                        raise TokenError("access token expired")

                    return

        raise TokenError("access token rejected")

    def _check_app_version(self, app_version: str) -> None:
        try:
            version = semver.VersionInfo.parse(app_version)
        except (ValueError, TypeError):
            raise ValueError(f"invalid app version {app_version}")

        if version.major != self._app_version.major:
            raise ValueError(
                f"unsupported app version ({version} != {self._app_version})"
            )

    #
    # File operations
    #

    def stat(self, access_token: str, path: str) -> Entry:
        self._authorize(access_token)
        return self._entry(self._resolve(path))

    def listdir(self, access_token: str, path: str) -> List[Entry]:
        self._authorize(access_token)

        real_path = self._resolve(path)

        return [
            self._entry(os.path.join(real_path, name))
            for name in sorted(os.listdir(real_path))
        ]

    def read(self, access_token: str, path: str) -> Contents:
        self._authorize(access_token)

        with open(self._resolve(path), "rb") as f:
            return Contents.from_data(f.read())

    def write(self, access_token: str, path: str, contents: Contents) -> Entry:
        self._authorize(access_token)

        real_path = self._resolve(path)

        if os.path.isdir(real_path):
            raise IsADirectoryError(path)

        with open(real_path, "wb") as f:
            f.write(contents.data)

        return self._entry(real_path)

    def mkdir(self, access_token: str, path: str) -> Entry:
        self._authorize(access_token)

        real_path = self._resolve(path)
        os.mkdir(real_path)

        return self._entry(real_path)

    def remove(self, access_token: str, path: str) -> None:
        self._authorize(access_token)

        real_path = self._resolve(path)

        if real_path == self._root:
            raise PermissionError("can't remove the root folder")

        if os.path.isdir(real_path):
            shutil.rmtree(real_path)
        else:
            os.unlink(real_path)

    def move(self, access_token: str, old: str, new: str) -> None:
        self._authorize(access_token)
        os.rename(self._resolve(old), self._resolve(new))

    def copy(self, access_token: str, old: str, new: str) -> None:
        self._authorize(access_token)

        real_old = self._resolve(old)
        real_new = self._resolve(new)

        if os.path.isdir(real_old):
            shutil.copytree(real_old, real_new)
        else:
            shutil.copy2(real_old, real_new)

    def _resolve(self, path: str) -> str:
        """Turn a drive path into a path within the root directory."""
        relative = os.path.normpath("/" + path).lstrip("/")
        real_path = os.path.join(self._root, relative) if relative else self._root

        if os.path.commonpath([self._root, os.path.realpath(real_path)]) != self._root:
            raise PermissionError(f"path outside of drive: {path}")

        return real_path

    def _entry(self, real_path: str) -> Entry:
        st = os.stat(real_path)
        name = "" if real_path == self._root else os.path.basename(real_path)

        return Entry(
            name=name,
            is_dir=os.path.isdir(real_path),
            size=st.st_size,
            modified=st.st_mtime,
            created=st.st_ctime,
        )
