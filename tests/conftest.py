"""Shared test fixtures."""

import logging

import pytest

from testcli import Command, State


@pytest.fixture(autouse=True)
def debug_logging(caplog):
    caplog.set_level(logging.DEBUG, logger="testcli")


@pytest.fixture
def sleeper():
    """A started command that prints Started and then sleeps."""
    cmd = Command("sh", "-c", "echo Started; sleep 30")
    cmd.start()
    yield cmd
    if cmd.state is State.RUNNING:
        cmd.kill()


@pytest.fixture
def log_file(tmp_path):
    path = tmp_path / "app.log"
    path.write_text("")
    return path
