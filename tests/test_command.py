"""Tests for command.py: running, starting and inspecting real processes."""

import errno
import io
import logging
import os
import signal
import sys
import time
from pathlib import Path

import pytest
from typeguard import TypeCheckError

from testcli import (
    Command,
    LaunchError,
    ProcessExitError,
    State,
    StreamReadError,
    UsageError,
    command,
)


def test_env_is_passed_to_child():
    cmd = command("sh", "-c", "echo -n $FOO")
    cmd.set_env({"FOO": "bar"})
    cmd.run()
    assert cmd.succeeded()
    assert cmd.stdout() == "bar"
    assert cmd.error() is None
    assert cmd.exit_code == 0


def test_env_is_inherited_by_default(monkeypatch):
    monkeypatch.setenv("TESTCLI_PROBE", "inherited")
    cmd = command("sh", "-c", "echo $TESTCLI_PROBE")
    cmd.run()
    assert cmd.stdout() == "inherited\n"


def test_unknown_executable_fails():
    cmd = command("myunknowncommand")
    cmd.run()
    assert cmd.state is State.FINISHED
    assert cmd.failed()
    assert not cmd.succeeded()
    assert isinstance(cmd.error(), LaunchError)
    assert isinstance(cmd.error().cause, FileNotFoundError)
    assert str(cmd.error())
    assert cmd.exit_code is None
    assert cmd.stdout() == ""


def test_stdin_stream_is_fed_to_run():
    cmd = command("cat")
    cmd.set_stdin(io.BytesIO(b"foo\n"))
    cmd.run()
    assert cmd.succeeded()
    assert cmd.stdout() == "foo\n"


def test_stdin_text_is_fed_to_start():
    cmd = command("cat")
    cmd.configure(stdin="foo\n")
    cmd.start()
    cmd.wait()
    assert cmd.succeeded()
    assert cmd.stdout() == "foo\n"


def test_nonzero_exit_is_recorded_not_raised():
    cmd = command("sh", "-c", "echo out; echo err >&2; exit 3")
    cmd.run()
    assert cmd.failed()
    assert isinstance(cmd.error(), ProcessExitError)
    assert cmd.error().exit_code == 3
    assert str(cmd.error()) == "exit status 3"
    assert cmd.exit_code == 3
    assert cmd.stdout() == "out\n"
    assert cmd.stderr() == "err\n"


def test_contains_and_matches_ignore_case():
    cmd = command("sh", "-c", "echo 'cp: missing file operand' >&2; exit 1")
    cmd.run()
    assert cmd.failed()
    assert cmd.stderr_contains("MISSING")
    assert cmd.stderr_matches("MISSING FILE")
    assert cmd.stderr_matches(r"^cp: \w+")
    assert not cmd.stdout_contains("missing")


def test_stdout_matches():
    cmd = command("sh", "-c", "echo version 1.2.3")
    cmd.run()
    assert cmd.stdout_matches(r"VERSION \d+\.\d+\.\d+")
    assert not cmd.stdout_matches(r"version 2")


def test_invalid_pattern_is_a_usage_error():
    cmd = command("true")
    cmd.run()
    with pytest.raises(UsageError):
        cmd.stdout_matches("(unclosed")


def test_status_queries_need_finished_command(sleeper):
    fresh = command("true")
    for cmd in (fresh, sleeper):
        with pytest.raises(UsageError):
            cmd.error()
        with pytest.raises(UsageError):
            cmd.succeeded()
        with pytest.raises(UsageError):
            cmd.failed()
        with pytest.raises(UsageError):
            cmd.exit_code


def test_output_queries_need_started_command():
    cmd = command("echo", "hi")
    with pytest.raises(UsageError):
        cmd.stdout()
    with pytest.raises(UsageError):
        cmd.stderr()
    with pytest.raises(UsageError):
        cmd.stdout_contains("hi")
    with pytest.raises(UsageError):
        cmd.stderr_matches("hi")


def test_wait_and_kill_need_started_command():
    cmd = command("echo", "hi")
    with pytest.raises(UsageError):
        cmd.wait()
    with pytest.raises(UsageError):
        cmd.kill()
    assert cmd.state is State.INITIALIZED


def test_command_runs_only_once():
    cmd = command("true")
    cmd.run()
    with pytest.raises(UsageError):
        cmd.run()
    with pytest.raises(UsageError):
        cmd.start()


def test_started_command_is_running_and_shows_output(sleeper):
    time.sleep(0.2)
    assert sleeper.state is State.RUNNING
    assert sleeper.stdout_contains("Started")
    assert sleeper.stdout_contains("STARTED")


def test_kill_keeps_captured_output(sleeper):
    assert sleeper.stdout_contains("Started")
    sleeper.kill()
    assert sleeper.state is State.FINISHED
    assert "Started" in sleeper.stdout()
    assert sleeper.failed()
    assert sleeper.error().signal == signal.SIGKILL
    assert sleeper.exit_code == -signal.SIGKILL


def test_wait_and_kill_after_finish_do_nothing(sleeper):
    sleeper.kill()
    sleeper.kill()
    sleeper.wait()
    assert sleeper.state is State.FINISHED


def test_start_then_wait():
    cmd = command("sh", "-c", "echo out; echo err >&2; exit 2")
    cmd.start()
    cmd.wait()
    assert cmd.state is State.FINISHED
    assert cmd.exit_code == 2
    assert cmd.stdout() == "out\n"
    assert cmd.stderr() == "err\n"


def test_start_unknown_executable_finishes():
    cmd = command("myunknowncommand")
    cmd.start()
    assert cmd.state is State.FINISHED
    assert isinstance(cmd.error(), LaunchError)
    cmd.wait()


def test_incremental_output_from_tail(log_file):
    cmd = Command("tail", "-f", str(log_file), match_timeout=0.2)
    cmd.start()
    try:
        assert not cmd.stdout_contains("hello from the log")
        with open(log_file, "a") as f:
            f.write("hello from the log\n")
        cmd.match_timeout = 5.0
        assert cmd.stdout_contains("hello from the log")
    finally:
        cmd.kill()


def test_matcher_gives_up_after_timeout(sleeper):
    sleeper.match_timeout = 0.5
    start = time.monotonic()
    assert not sleeper.stdout_contains("never printed")
    elapsed = time.monotonic() - start
    assert 0.45 <= elapsed < 3


def test_matcher_on_finished_command_does_not_wait():
    cmd = Command("true", match_timeout=10.0)
    cmd.run()
    start = time.monotonic()
    assert not cmd.stdout_contains("anything")
    assert time.monotonic() - start < 2


def test_run_timeout_kills_process():
    cmd = command("sleep", "10")
    start = time.monotonic()
    cmd.run(timeout_seconds=0.3)
    assert time.monotonic() - start < 5
    assert cmd.timed_out
    assert cmd.failed()
    assert cmd.error().timed_out
    assert cmd.exit_code == -signal.SIGKILL


def test_run_without_timeout_did_not_time_out():
    cmd = command("true")
    cmd.run()
    assert not cmd.timed_out


def test_set_dir(tmp_path):
    cmd = command("pwd")
    cmd.set_dir(tmp_path)
    cmd.run()
    assert Path(cmd.stdout().strip()).resolve() == tmp_path.resolve()


def test_configuration_after_start_is_ignored(monkeypatch, caplog):
    monkeypatch.delenv("FOO", raising=False)
    cmd = command("sh", "-c", 'sleep 0.2; echo "FOO=$FOO"')
    cmd.start()
    cmd.set_env({"FOO": "bar"})
    cmd.wait()
    assert cmd.succeeded()
    assert cmd.stdout() == "FOO=\n"
    assert any(
        r.levelno == logging.WARNING and "set_env" in r.getMessage()
        for r in caplog.records
    )


def test_context_manager_kills_running_command():
    with command("sleep", "30") as cmd:
        cmd.start()
        assert cmd.state is State.RUNNING
    assert cmd.state is State.FINISHED
    assert cmd.failed()


def test_pump_read_failure_is_reported(tmp_path):
    cmd = command("sh", "-c", "sleep 0.3; echo first >&2")
    cmd.start()
    # A directory in place of the stderr pipe makes the next read fail.
    dir_fd = os.open(tmp_path, os.O_RDONLY)
    try:
        os.dup2(dir_fd, cmd._process.stderr.fileno())
    finally:
        os.close(dir_fd)
    with pytest.raises(StreamReadError) as excinfo:
        cmd.wait()
    assert excinfo.value.stream == "stderr"
    assert isinstance(excinfo.value.cause, IsADirectoryError)
    assert cmd.state is State.FINISHED
    assert cmd.succeeded()
    with pytest.raises(StreamReadError):
        cmd.stderr()


def test_read_failure_during_run_finishes_command(monkeypatch):
    def broken_read(fd):
        raise OSError(errno.EIO, "Input/output error")

    monkeypatch.setattr(sys.modules["testcli.command"], "read_chunk", broken_read)
    cmd = command("sh", "-c", "echo out")
    with pytest.raises(StreamReadError) as excinfo:
        cmd.run()
    assert excinfo.value.stream == "stdio"
    assert excinfo.value.cause.errno == errno.EIO
    assert cmd.state is State.FINISHED
    assert cmd.exit_code is not None
    assert cmd.stdout() == ""


def test_run_does_not_wait_for_background_children():
    cmd = command("sh", "-c", "sleep 30 & echo done")
    start = time.monotonic()
    cmd.run()
    assert time.monotonic() - start < 2
    assert cmd.succeeded()
    assert cmd.stdout() == "done\n"


def test_run_collects_output_written_before_exit():
    cmd = command("sh", "-c", "for i in 1 2 3; do echo line $i; echo err $i >&2; done")
    cmd.run()
    assert cmd.stdout() == "line 1\nline 2\nline 3\n"
    assert cmd.stderr() == "err 1\nerr 2\nerr 3\n"


def test_stdin_bytearray_is_fed_to_run():
    cmd = command("cat")
    cmd.set_stdin(bytearray(b"foo\n"))
    cmd.run()
    assert cmd.stdout() == "foo\n"



def test_arguments_are_type_checked():
    with pytest.raises(TypeCheckError):
        Command("echo", 1)


def test_repr_and_args():
    cmd = command("echo", "hello world")
    assert cmd.args == ("echo", "hello world")
    assert "initialized" in repr(cmd)
    assert cmd.pid is None
