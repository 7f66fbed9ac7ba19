"""Exceptions raised or recorded by testcli."""

from typing import Optional


class CommandError(Exception):
    """Base class for every error testcli produces."""


class UsageError(CommandError):
    """
    The caller used a Command out of order, e.g. read its output before
    starting it or asked for its exit status while it is still running.
    """


class LaunchError(CommandError):
    """The process could not be started at all. Recorded, not raised."""

    def __init__(self, argv, cause: OSError):
        super().__init__(f"failed to launch {argv[0]!r}: {cause}")
        self.cause = cause
        self.__cause__ = cause


class ProcessExitError(CommandError):
    """
    The process ran and exited with a nonzero status or was killed by a
    signal. Recorded, not raised.
    """

    def __init__(self, exit_code: int, timed_out: bool = False):
        self.exit_code = exit_code
        self.signal: Optional[int] = -exit_code if exit_code < 0 else None
        self.timed_out = timed_out
        if self.signal is not None:
            message = f"signal: {self.signal}"
        else:
            message = f"exit status {exit_code}"
        if timed_out:
            message += " (timed out)"
        super().__init__(message)


class StreamReadError(CommandError):
    """Reading one of the child's output pipes failed."""

    def __init__(self, stream: str, cause: Exception):
        super().__init__(f"error reading {stream}: {cause}")
        self.stream = stream
        self.cause = cause
        self.__cause__ = cause
