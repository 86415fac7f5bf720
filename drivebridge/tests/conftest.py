"""Module with fixtures shared by the tests."""

import pytest

from drivebridge.backend import Backend, Credentials, LocalDriveService
from drivebridge.store import AdminCredentialStore, TokenStore


@pytest.fixture
def drive_root(tmp_path):
    root = tmp_path / "drive"
    root.mkdir()

    (root / "hello.txt").write_text("hello world")
    (root / "docs").mkdir()
    (root / "docs" / "notes.txt").write_text("some notes")

    return root


@pytest.fixture
def service(drive_root):
    return LocalDriveService(str(drive_root), username="alice", password="secret")


@pytest.fixture
def backend(service):
    return Backend(service)


@pytest.fixture
def credentials():
    return Credentials("alice", "secret")


@pytest.fixture
def token_store(tmp_path):
    return TokenStore.in_dir(str(tmp_path / "data"))


@pytest.fixture
def admin_store(tmp_path):
    return AdminCredentialStore.in_dir(str(tmp_path / "data"))
