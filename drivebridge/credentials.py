"""Module that resolves drive account credentials from the environment or a prompt."""

import getpass
import os
import sys
from typing import Callable, Mapping, Optional

import drivebridge.constants as constants
from drivebridge.backend.common import Credentials
from drivebridge.errors import CredentialError

# Function that asks the user for a value: (prompt, hint, masked) -> value
Prompt = Callable[[str, str, bool], str]


def terminal_prompt(prompt: str, hint: str, masked: bool) -> str:
    """Ask for a value on the terminal, without echoing it if it's masked."""
    print(prompt)

    if hint:
        print(hint)

    if masked:
        value = getpass.getpass("> ")
    else:
        print("> ", end="", flush=True)
        value = sys.stdin.readline()

    print()

    return value.strip()


class EnvironmentCredentials:
    """
    Credential source that reads environment variables and prompts for the rest.

    The optional mailbox password and 2FA code variables may be set to "false" to
    indicate that the account has none, which avoids a prompt.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        prompt: Prompt = terminal_prompt,
    ):
        """Instantiate the credential source for the given environment."""
        self._environ = os.environ if environ is None else environ
        self._prompt = prompt

    def can_auto_login(self) -> bool:
        """Check if a login is possible without prompting for anything."""
        return bool(
            self._environ.get(constants.ENV_USERNAME)
            and self._environ.get(constants.ENV_PASSWORD)
        )

    def resolve(self, interactive: bool = True) -> Credentials:
        """
        Gather all credentials, prompting for any that aren't configured.

        Without interactive prompts, optional credentials that aren't configured are
        left empty and missing required ones raise a CredentialError.
        """
        username = self._get(
            constants.ENV_USERNAME,
            "Enter the username of your drive account.",
            "",
            masked=False,
            interactive=interactive,
        )
        password = self._get(
            constants.ENV_PASSWORD,
            "Enter the password of your drive account.",
            "",
            masked=True,
            interactive=interactive,
        )
        mailbox_password = self._get(
            constants.ENV_MAILBOX_PASSWORD,
            "Enter the mailbox password of your drive account.",
            "If you don't have a mailbox password, press enter.",
            masked=True,
            optional=True,
            interactive=interactive,
        )
        two_fa = self._get(
            constants.ENV_2FA,
            "Enter a valid 2FA code for your drive account.",
            "If you don't have 2FA set up, press enter.",
            masked=False,
            optional=True,
            interactive=interactive,
        )

        return Credentials(username, password, mailbox_password, two_fa)

    def _get(
        self,
        name: str,
        prompt: str,
        hint: str,
        masked: bool,
        optional: bool = False,
        interactive: bool = True,
    ) -> str:
        value = self._environ.get(name)

        if value:
            if optional and value == constants.ENV_ABSENT:
                return ""

            return value

        if not interactive:
            if optional:
                return ""

            raise CredentialError(f"{name} is not set")

        return self._prompt(prompt, hint, masked)
