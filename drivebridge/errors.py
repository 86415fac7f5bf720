"""
Module defining the errors raised by drivebridge.

Errors fall into two groups. Session errors (credentials, tokens, network, the WebDAV
listener, persistence) propagate to whoever initiated the operation, or are logged if
the storage backend itself initiated it. Admin errors are raised by the admin
authentication subsystem and carry the HTTP status and short message that the control
API responds with.
"""


class BridgeError(Exception):
    """Base class for all drivebridge errors."""


class CredentialError(BridgeError):
    """The storage backend rejected the username, password or second factor."""


class TokenError(BridgeError):
    """Persisted session tokens are missing, corrupt or no longer accepted."""


class NoStoredToken(TokenError):
    """There are no usable session tokens to resume a session with."""


class NetworkUnavailable(BridgeError):
    """The storage backend can't be reached (yet)."""


class BindError(BridgeError):
    """The WebDAV server could not listen on the configured address."""


class PersistenceError(BridgeError):
    """Writing or deleting persisted state failed."""


class SessionClosed(BridgeError):
    """A drive operation was attempted on a session that has been cancelled."""


class ReloginFailed(BridgeError):
    """Logging in again with configured credentials after tokens expired failed."""


class AdminError(BridgeError):
    """Base class for admin authentication errors."""

    status_code = 400
    default_message = "Admin error"

    def __init__(self, message: str = "") -> None:
        """Instantiate with an optional message overriding the default one."""
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        """Short message suitable for an HTTP response."""
        return str(self.args[0])


class AlreadyInitialized(AdminError):
    """An admin password has already been set up."""

    default_message = "Admin already initialized"


class WeakPassword(AdminError):
    """The new admin password doesn't meet the minimum requirements."""

    default_message = "Password must be at least 8 characters"


class NotInitialized(AdminError):
    """No admin password has been set up yet."""

    default_message = "Admin not initialized"


class InvalidPassword(AdminError):
    """The admin password doesn't match."""

    status_code = 401
    default_message = "Invalid password"
