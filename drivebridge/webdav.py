"""
Module that exposes a drive session as a WebDAV share through wsgidav.

wsgidav takes care of the WebDAV protocol itself (request parsing, properties, locks)
and asks a DAVProvider for resources by path. The provider here forwards all of that
to a DriveSession:

* Folders are collections whose members come from a single listdir() call.
* File contents are downloaded in full on GET and uploaded in full once a PUT has been
received completely. Drive files are encrypted and uploaded as a whole anyway, so
there is no point in streaming partial writes.
* MOVE maps to a single move() call, also for folders. DELETE of a folder is a single
remove() call.

Once the session is cancelled every operation fails with 503 Service Unavailable. This
lets requests that are still in progress finish quickly while the server shuts down.
"""

from contextlib import contextmanager
import hashlib
from http import HTTPStatus
import io
from typing import Any, Callable, Dict, Iterator, List, Optional

from wsgidav import util
from wsgidav.dav_error import DAVError, HTTP_CONFLICT, HTTP_FORBIDDEN, HTTP_NOT_FOUND
from wsgidav.dav_provider import DAVCollection, DAVNonCollection, DAVProvider
from wsgidav.wsgidav_app import WsgiDAVApp

from drivebridge.backend import DriveSession, Entry
from drivebridge.errors import SessionClosed, TokenError
from drivebridge.logger import log


@contextmanager
def _drive_errors() -> Iterator[None]:
    """Translate errors of drive operations into WebDAV errors."""
    try:
        yield
    except DAVError:
        raise
    except (SessionClosed, TokenError) as e:
        raise DAVError(int(HTTPStatus.SERVICE_UNAVAILABLE), context_info=str(e))
    except FileNotFoundError as e:
        raise DAVError(HTTP_NOT_FOUND, context_info=str(e))
    except PermissionError as e:
        raise DAVError(HTTP_FORBIDDEN, context_info=str(e))
    except (FileExistsError, IsADirectoryError, NotADirectoryError) as e:
        raise DAVError(HTTP_CONFLICT, context_info=str(e))
    except OSError as e:
        log.warning(f"drive operation failed: {e}")
        raise DAVError(int(HTTPStatus.BAD_GATEWAY), context_info=str(e))


class _Upload(io.BytesIO):
    """Buffer for the body of a PUT request that is uploaded when it is closed."""

    def __init__(self, commit: Callable[[bytes], Any]):
        super().__init__()
        self._commit = commit

    def close(self) -> None:
        if not self.closed:
            data = self.getvalue()

            with _drive_errors():
                self._commit(data)

        super().close()


class DriveFile(DAVNonCollection):
    """WebDAV resource for a file on the drive."""

    def __init__(self, path: str, environ: Dict, entry: Entry):
        super().__init__(path, environ)
        self._entry = entry

    @property
    def _session(self) -> DriveSession:
        return self.provider.session

    def get_content_length(self) -> int:
        return self._entry.size

    def get_content_type(self) -> str:
        return util.guess_mime_type(self.path)

    def get_creation_date(self) -> float:
        return self._entry.created

    def get_last_modified(self) -> float:
        return self._entry.modified

    def get_display_info(self) -> Dict:
        return {"type": "File"}

    def get_etag(self) -> str:
        fingerprint = f"{self.path}:{self._entry.size}:{self._entry.modified}"
        return hashlib.md5(fingerprint.encode()).hexdigest()

    def support_etag(self) -> bool:
        return True

    def support_ranges(self) -> bool:
        return True

    def get_content(self) -> io.BytesIO:
        with _drive_errors():
            return io.BytesIO(self._session.read(self.path))

    def begin_write(self, *, content_type: Optional[str] = None) -> io.BytesIO:
        return _Upload(self._write)

    def _write(self, data: bytes) -> None:
        self._entry = self._session.write(self.path, data)

    def delete(self) -> None:
        with _drive_errors():
            self._session.remove(self.path)

        self.remove_all_properties(recursive=True)
        self.remove_all_locks(recursive=True)

    def copy_move_single(self, dest_path: str, *, is_move: bool) -> None:
        with _drive_errors():
            if is_move:
                self._session.move(self.path, dest_path)
            else:
                self._session.copy(self.path, dest_path)

    def support_recursive_move(self, dest_path: str) -> bool:
        return True

    def move_recursive(self, dest_path: str) -> None:
        self.copy_move_single(dest_path, is_move=True)


class DriveFolder(DAVCollection):
    """WebDAV resource for a folder on the drive."""

    def __init__(self, path: str, environ: Dict, entry: Entry):
        super().__init__(path, environ)
        self._entry = entry

    @property
    def _session(self) -> DriveSession:
        return self.provider.session

    def get_creation_date(self) -> float:
        return self._entry.created

    def get_last_modified(self) -> float:
        return self._entry.modified

    def get_display_info(self) -> Dict:
        return {"type": "Directory"}

    def _list(self) -> List[Entry]:
        with _drive_errors():
            return self._session.listdir(self.path)

    def get_member_names(self) -> List[str]:
        return [entry.name for entry in self._list()]

    def get_member_list(self) -> List[Any]:
        members: List[Any] = []

        for entry in self._list():
            path = util.join_uri(self.path, entry.name)

            if entry.is_dir:
                members.append(DriveFolder(path, self.environ, entry))
            else:
                members.append(DriveFile(path, self.environ, entry))

        return members

    def create_empty_resource(self, name: str) -> DriveFile:
        path = util.join_uri(self.path, name)

        with _drive_errors():
            entry = self._session.write(path, b"")

        return DriveFile(path, self.environ, entry)

    def create_collection(self, name: str) -> None:
        with _drive_errors():
            self._session.mkdir(util.join_uri(self.path, name))

    def support_recursive_delete(self) -> bool:
        return True

    def delete(self) -> None:
        with _drive_errors():
            self._session.remove(self.path)

        self.remove_all_properties(recursive=True)
        self.remove_all_locks(recursive=True)

    def copy_move_single(self, dest_path: str, *, is_move: bool) -> None:
        # Members are copied or moved one by one afterwards
        with _drive_errors():
            self._session.mkdir(dest_path)

    def support_recursive_move(self, dest_path: str) -> bool:
        return True

    def move_recursive(self, dest_path: str) -> None:
        with _drive_errors():
            self._session.move(self.path, dest_path)


class DriveProvider(DAVProvider):
    """wsgidav provider that serves the contents of a drive session."""

    def __init__(self, session: DriveSession):
        """Instantiate the provider for the given session."""
        super().__init__()
        self.session = session

    def is_readonly(self) -> bool:
        return False

    def get_resource_inst(self, path: str, environ: Dict) -> Optional[DAVCollection]:
        self._count_get_resource_inst += 1

        try:
            with _drive_errors():
                entry = self.session.stat(path)
        except DAVError as e:
            if e.value == HTTP_NOT_FOUND:
                return None

            raise

        if entry.is_dir:
            return DriveFolder(path, environ, entry)
        else:
            return DriveFile(path, environ, entry)


def create_app(session: DriveSession) -> WsgiDAVApp:
    """Create the WSGI application that serves the drive session over WebDAV."""
    config = {
        "provider_mapping": {"/": DriveProvider(session)},
        # Access control is up to whoever exposes the listen address
        "simple_dc": {"user_mapping": {"*": True}},
        "http_authenticator": {"domain_controller": None},
        "lock_storage": True,
        "property_manager": True,
        "verbose": 1,
        "logging": {"enable": False},
        "dir_browser": {"enable": True},
    }

    return WsgiDAVApp(config)
