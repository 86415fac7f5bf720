"""Module for configuration variables with defaults that are overridable by a file."""

from __future__ import annotations

from configparser import ConfigParser, SectionProxy
from dataclasses import dataclass, field
import os
from typing import Optional

import drivebridge.constants as constants
from drivebridge.logger import log


@dataclass
class ServerConfig:
    """Configuration variables related to the WebDAV server and control API."""

    listen: str = constants.DEFAULT_LISTEN
    admin_listen: str = constants.DEFAULT_ADMIN_LISTEN

    shutdown_grace: float = constants.SHUTDOWN_GRACE

    @staticmethod
    def load(section: SectionProxy) -> ServerConfig:
        """Load overridden variables from a section within a config file."""
        config = ServerConfig()

        config.listen = section.get("listen", fallback=config.listen)
        config.admin_listen = section.get("admin_listen", fallback=config.admin_listen)

        config.shutdown_grace = section.getfloat(
            "shutdown_grace", fallback=config.shutdown_grace
        )

        return config


@dataclass
class BackendConfig:
    """Configuration variables related to the storage service."""

    endpoint: str = constants.DEFAULT_BACKEND
    token: Optional[str] = None

    timeout: int = 5000  # ms
    network_retry: float = 2.0  # s

    @staticmethod
    def load(section: SectionProxy) -> BackendConfig:
        """Load overridden variables from a section within a config file."""
        config = BackendConfig()

        config.endpoint = section.get("endpoint", fallback=config.endpoint)
        config.token = section.get("token", fallback=None) or None

        config.timeout = section.getint("timeout", fallback=config.timeout)
        config.network_retry = section.getfloat(
            "network_retry", fallback=config.network_retry
        )

        return config


@dataclass
class StorageConfig:
    """Configuration variables related to persisted tokens and admin credentials."""

    data_dir: Optional[str] = None

    @staticmethod
    def load(section: SectionProxy) -> StorageConfig:
        """Load overridden variables from a section within a config file."""
        config = StorageConfig()

        data_dir = section.get("data_dir", fallback=None)

        if data_dir:
            config.data_dir = os.path.expanduser(data_dir)

        return config


@dataclass
class Config:
    """Configuration variables."""

    server: ServerConfig = field(default_factory=ServerConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)

    @staticmethod
    def load(filename: str) -> Config:
        """Load overridden configuration variables from a config file."""
        parser = ConfigParser()

        config = Config()

        try:
            with open(filename, "r") as f:
                parser.read_string(f.read(), filename)

            if "server" in parser:
                config.server = ServerConfig.load(parser["server"])
            if "backend" in parser:
                config.backend = BackendConfig.load(parser["backend"])
            if "storage" in parser:
                config.storage = StorageConfig.load(parser["storage"])
        except FileNotFoundError:
            log.info(f"no config file at {filename}")
        except Exception as e:
            # An unreadable config file is not considered a fatal error since we can
            # fall back to defaults.
            log.error(f"failed to read config file {filename}: {e}")
        else:
            log.info(f"loaded config from {filename}")

        return config
