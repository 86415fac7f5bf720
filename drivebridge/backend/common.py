"""Data structures shared by the storage service, its clients and the bridge."""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import time

import lz4.frame


@dataclass
class Credentials:
    """Account credentials used for an interactive login."""

    username: str
    password: str
    mailbox_password: str = ""
    two_fa: str = ""

    def __repr__(self) -> str:
        # Never leak secrets into logs or tracebacks
        return f"Credentials(username={self.username!r})"


@dataclass
class Tokens:
    """
    Session tokens returned by a login and replaced on every renewal.

    The bridge treats them as an opaque value that is persisted to resume the session
    later without credentials. Only an empty access token is considered unusable.
    """

    uid: str
    access_token: str
    refresh_token: str
    expires_at: float = 0.0

    def expires_in(self) -> float:
        """Return the number of seconds until the access token expires."""
        return self.expires_at - time.time()

    def __repr__(self) -> str:
        return f"Tokens(uid={self.uid!r}, expires_at={self.expires_at!r})"


@dataclass
class Entry:
    """Metadata of a file or folder on the drive."""

    name: str
    is_dir: bool
    size: int = 0
    modified: float = 0.0
    created: float = 0.0


@dataclass
class Contents:
    """
    Container for the full contents of a file.

    File contents are compressed to reduce bandwidth usage between the bridge and the
    storage service. LZ4 was chosen because it's fast enough to not add noticeable
    latency to WebDAV transfers.
    """

    compressed_data: bytes
    checksum: str
    size: int

    @staticmethod
    def from_data(data: bytes) -> Contents:
        """Wrap raw file data into a Contents object."""
        return Contents(
            compressed_data=lz4.frame.compress(data),
            checksum=hashlib.sha256(data).hexdigest(),
            size=len(data),
        )

    @property
    def data(self) -> bytes:
        """Retrieve and decompress the original file data."""
        data = lz4.frame.decompress(self.compressed_data)

        if hashlib.sha256(data).hexdigest() != self.checksum:
            raise IOError("file contents checksum mismatch")

        return data
