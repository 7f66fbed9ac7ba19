"""Run external programs from tests and inspect what they did."""

from .command import Command, State, command
from .errors import (
    CommandError,
    LaunchError,
    ProcessExitError,
    StreamReadError,
    UsageError,
)
from .session import (
    Session,
    default_session,
    error,
    failed,
    run,
    stderr,
    stderr_contains,
    stderr_matches,
    stdout,
    stdout_contains,
    stdout_matches,
    succeeded,
)

__all__ = [
    "Command",
    "State",
    "command",
    "CommandError",
    "LaunchError",
    "ProcessExitError",
    "StreamReadError",
    "UsageError",
    "Session",
    "default_session",
    "run",
    "error",
    "succeeded",
    "failed",
    "stdout",
    "stderr",
    "stdout_contains",
    "stderr_contains",
    "stdout_matches",
    "stderr_matches",
]

__version__ = "1.0.0"
