from unittest import mock

import pytest

from drivebridge.backend import Credentials
from drivebridge.credentials import EnvironmentCredentials, terminal_prompt
from drivebridge.errors import CredentialError

FULL_ENVIRON = {
    "DRIVE_USERNAME": "alice",
    "DRIVE_PASSWORD": "secret",
    "DRIVE_MAILBOX_PASSWORD": "mailbox",
    "DRIVE_2FA": "123456",
}


def test_from_environment():
    prompt = mock.Mock()
    source = EnvironmentCredentials(FULL_ENVIRON, prompt)

    assert source.resolve() == Credentials("alice", "secret", "mailbox", "123456")
    assert not prompt.called


def test_absent_sentinel():
    environ = dict(FULL_ENVIRON, DRIVE_MAILBOX_PASSWORD="false", DRIVE_2FA="false")

    prompt = mock.Mock()
    source = EnvironmentCredentials(environ, prompt)

    assert source.resolve() == Credentials("alice", "secret", "", "")
    assert not prompt.called


def test_sentinel_only_for_optional_fields():
    environ = dict(FULL_ENVIRON, DRIVE_PASSWORD="false")

    source = EnvironmentCredentials(environ, mock.Mock())

    assert source.resolve().password == "false"


def test_prompt_for_missing():
    answers = {
        "Enter the username of your drive account.": "bob",
        "Enter the password of your drive account.": "hunter22",
        "Enter the mailbox password of your drive account.": "",
        "Enter a valid 2FA code for your drive account.": "654321",
    }

    masked_fields = []

    def prompt(text, hint, masked):
        if masked:
            masked_fields.append(text)

        return answers[text]

    source = EnvironmentCredentials({}, prompt)

    assert source.resolve() == Credentials("bob", "hunter22", "", "654321")
    assert len(masked_fields) == 2


def test_can_auto_login():
    assert EnvironmentCredentials(FULL_ENVIRON).can_auto_login()
    assert EnvironmentCredentials(
        {"DRIVE_USERNAME": "alice", "DRIVE_PASSWORD": "secret"}
    ).can_auto_login()

    assert not EnvironmentCredentials({"DRIVE_USERNAME": "alice"}).can_auto_login()
    assert not EnvironmentCredentials({}).can_auto_login()


def test_non_interactive():
    prompt = mock.Mock()
    source = EnvironmentCredentials(
        {"DRIVE_USERNAME": "alice", "DRIVE_PASSWORD": "secret"}, prompt
    )

    assert source.resolve(interactive=False) == Credentials("alice", "secret")
    assert not prompt.called


def test_non_interactive_missing_required():
    source = EnvironmentCredentials({"DRIVE_USERNAME": "alice"}, mock.Mock())

    with pytest.raises(CredentialError):
        source.resolve(interactive=False)


def test_terminal_prompt_masked(capsys):
    with mock.patch("getpass.getpass", return_value="secret\n"):
        assert terminal_prompt("Password?", "", True) == "secret"

    assert "Password?" in capsys.readouterr().out


def test_terminal_prompt_plain(capsys):
    with mock.patch("sys.stdin") as stdin:
        stdin.readline.return_value = " alice \n"
        assert terminal_prompt("Username?", "Just the name.", False) == "alice"

    out = capsys.readouterr().out

    assert "Username?" in out
    assert "Just the name." in out
