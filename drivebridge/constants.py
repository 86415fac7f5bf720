"""Module defining various global constants."""

from datetime import timedelta

# drivebridge version
VERSION = "1.0.0"

# Version the bridge identifies itself with towards the storage service.
# Only the major version must match what the service supports.
APP_VERSION = "1.0.0-alpha.1+drivebridge"

# Special exit code for when drivebridge itself fails.
ERROR_CODE = 254

# Default addresses of the WebDAV server, control API and storage service
DEFAULT_LISTEN = "127.0.0.1:7984"
DEFAULT_ADMIN_LISTEN = "127.0.0.1:7985"
DEFAULT_BACKEND = "tcp://127.0.0.1:7986"

# Files within the per-application data directory
DATA_DIR_NAME = "drivebridge"
TOKEN_FILE = "tokens.json"
ADMIN_PASSWORD_FILE = "admin_password.json"

# Admin authentication
ADMIN_SESSION_COOKIE = "admin_session"
ADMIN_SESSION_LIFETIME = timedelta(hours=24)
MIN_ADMIN_PASSWORD_LENGTH = 8

# Grace period for in-flight WebDAV requests when stopping the server
SHUTDOWN_GRACE = 5.0

# Environment variables
ENV_USERNAME = "DRIVE_USERNAME"
ENV_PASSWORD = "DRIVE_PASSWORD"
ENV_MAILBOX_PASSWORD = "DRIVE_MAILBOX_PASSWORD"
ENV_2FA = "DRIVE_2FA"
ENV_ADMIN_PASSWORD_RESET = "ADMIN_PASSWORD_RESET"

# Value of an optional credential variable that means "intentionally empty"
ENV_ABSENT = "false"
