"""Modules implementing the top-level logic of the different modes of drivebridge."""

from .common import Operations
from .listen import ListenOperations
from .login import LoginOperations
from .serve import ServeOperations

__all__ = ["ListenOperations", "LoginOperations", "Operations", "ServeOperations"]
