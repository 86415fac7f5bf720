"""Module defining the command-line arguments and providing a parser for them."""

from __future__ import annotations

import argparse
from typing import List, Optional, Tuple

import semver

from drivebridge.constants import APP_VERSION, VERSION


class Arguments(argparse.Namespace):
    """Parsed command-line arguments."""

    login: bool
    serve_local: Optional[str]

    listen: Optional[Tuple[str, int]]
    admin_listen: Optional[Tuple[str, int]]

    backend: Optional[str]
    local_root: Optional[str]
    workers: int

    app_version: semver.VersionInfo

    config: str

    debug: bool

    @classmethod
    def parse(cls, args: Optional[List[str]] = None) -> Arguments:
        """
        Parse command-line arguments from the given list of strings.

        Defaults to sys.argv if none are specified.
        """
        return cls._get_parser().parse_args(args, namespace=cls())

    @classmethod
    def _get_parser(cls) -> argparse.ArgumentParser:
        parser = argparse.ArgumentParser(
            description="Expose a remote drive as a local WebDAV server.",
            usage="drivebridge [option...]",
        )

        parser.add_argument(
            "--version",
            action="version",
            version=f"%(prog)s {VERSION} (app {APP_VERSION})",
            help="show the program version and client app version",
        )

        # Modes other than running the bridge
        mode = parser.add_mutually_exclusive_group()
        mode.add_argument(
            "--login",
            action="store_true",
            help="log in to the drive, store the session tokens and exit",
        )
        mode.add_argument(
            "--serve-local",
            type=str,
            metavar="ROOT",
            help="serve a local directory as storage service on the backend endpoint",
        )

        # Listen addresses, default to the config file
        parser.add_argument(
            "--listen",
            type=cls._parse_address,
            help="address of the WebDAV server (default is 127.0.0.1:7984)",
        )
        parser.add_argument(
            "--admin-listen",
            type=cls._parse_address,
            help="address of the admin interface (default is 127.0.0.1:7985)",
        )

        # Storage service to use
        backend = parser.add_mutually_exclusive_group()
        backend.add_argument(
            "--backend",
            type=str,
            help="endpoint of the storage service (default is tcp://127.0.0.1:7986)",
        )
        backend.add_argument(
            "--local-root",
            type=str,
            help="serve a local directory instead of a remote storage service",
        )

        # Number of threads handling calls in --serve-local mode
        parser.add_argument(
            "--workers", type=int, help="number of storage service workers", default=4
        )

        # Version to identify with towards the storage service
        parser.add_argument(
            "--app-version",
            type=cls._parse_version,
            default=semver.VersionInfo.parse(APP_VERSION),
            help=argparse.SUPPRESS,
        )

        # Path to (optional) config file
        parser.add_argument(
            "--config",
            type=str,
            help="path to config file (default is ~/.config/drivebridge/config)",
            default="~/.config/drivebridge/config",
        )

        # Enable debug output for development
        parser.add_argument(
            "--debug", action="store_true", help="enable debug information"
        )

        return parser

    @staticmethod
    def _parse_version(arg: str) -> semver.VersionInfo:
        try:
            return semver.VersionInfo.parse(arg)
        except (ValueError, TypeError):
            raise argparse.ArgumentTypeError("expected semantic version string")

    @staticmethod
    def _parse_address(arg: str) -> Tuple[str, int]:
        try:
            return parse_address(arg)
        except ValueError:
            raise argparse.ArgumentTypeError("expected host:port")


def parse_address(address: str) -> Tuple[str, int]:
    """Split an address like 127.0.0.1:7984 or [::1]:7984 into host and port."""
    host, sep, port = address.rpartition(":")

    if not sep or not host:
        raise ValueError(f"invalid address {address}")

    port_number = int(port)

    if not 0 <= port_number <= 65535:
        raise ValueError(f"invalid port in {address}")

    return host.strip("[]"), port_number
