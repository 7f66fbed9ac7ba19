"""
Function-call style access to the most recently run command.

A Session remembers the last Command its run() created, so a test can write

    session = Session()
    session.run("whoami")
    assert session.succeeded()

The package-level functions do the same against a module-wide default
session. Tests that run in parallel should each use their own Session.
"""

import re
from typing import Optional, Union

from typeguard import typechecked

from .command import Command
from .errors import CommandError, UsageError


@typechecked
class Session:
    def __init__(self, **options) -> None:
        # Keyword options passed to every Command this session creates.
        self._options = options
        self._last: Optional[Command] = None

    @property
    def last(self) -> Command:
        if self._last is None:
            raise UsageError("No command has been run in this session yet")
        return self._last

    def run(self, name: str, *args: str) -> Command:
        """Runs name with args to completion and remembers it."""
        cmd = Command(name, *args, **self._options)
        self._last = cmd
        cmd.run()
        return cmd

    def error(self) -> Optional[CommandError]:
        return self.last.error()

    def succeeded(self) -> bool:
        return self.last.succeeded()

    def failed(self) -> bool:
        return self.last.failed()

    def stdout(self) -> str:
        return self.last.stdout()

    def stderr(self) -> str:
        return self.last.stderr()

    def stdout_contains(self, text: str) -> bool:
        return self.last.stdout_contains(text)

    def stderr_contains(self, text: str) -> bool:
        return self.last.stderr_contains(text)

    def stdout_matches(self, pattern: Union[str, re.Pattern]) -> bool:
        return self.last.stdout_matches(pattern)

    def stderr_matches(self, pattern: Union[str, re.Pattern]) -> bool:
        return self.last.stderr_matches(pattern)


default_session = Session()


def run(name: str, *args: str) -> Command:
    return default_session.run(name, *args)


def error() -> Optional[CommandError]:
    return default_session.error()


def succeeded() -> bool:
    return default_session.succeeded()


def failed() -> bool:
    return default_session.failed()


def stdout() -> str:
    return default_session.stdout()


def stderr() -> str:
    return default_session.stderr()


def stdout_contains(text: str) -> bool:
    return default_session.stdout_contains(text)


def stderr_contains(text: str) -> bool:
    return default_session.stderr_contains(text)


def stdout_matches(pattern: Union[str, re.Pattern]) -> bool:
    return default_session.stdout_matches(pattern)


def stderr_matches(pattern: Union[str, re.Pattern]) -> bool:
    return default_session.stderr_matches(pattern)
