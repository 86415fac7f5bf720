"""
Module implementing the command-line interface and invoking the main logic.

drivebridge runs in one of three modes. With --login it logs in to the drive once,
prompting for anything that isn't configured through environment variables, and stores
the session tokens. With --serve-local it serves a directory as storage service for
bridges that connect to its endpoint. Otherwise it runs the admin interface and,
whenever there is a session, a WebDAV server that exposes the drive until it is
interrupted.
"""

import logging
import signal
import sys
from typing import List, NoReturn, Optional

import drivebridge.constants as constants
from drivebridge.logger import log
import drivebridge.operations as operations
from .args import Arguments


def main(arguments: Optional[List[str]] = None) -> NoReturn:
    """
    Run drivebridge with the given arguments.

    Defaults to parsing command-line arguments from sys.argv if none are specified.
    """
    # Parse command-line arguments.
    args = Arguments.parse(arguments)

    # Configure debug logging.
    if args.debug:
        log.setLevel(logging.DEBUG)
    else:
        log.setLevel(logging.INFO)

    # Run the login, storage service or listen mode.
    ops: operations.Operations

    if args.login:
        ops = operations.LoginOperations(args)
    elif args.serve_local:
        ops = operations.ServeOperations(args)
    else:
        ops = operations.ListenOperations(args)

    try:
        exit_code = ops.run()
    except KeyboardInterrupt:
        exit_code = 128 + signal.SIGINT
    except Exception as e:
        log.error(f"failed to run: {e}")
        exit_code = constants.ERROR_CODE

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
