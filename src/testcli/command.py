import enum
import logging
import os
import re
import select
import shlex
import signal
import subprocess
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Tuple, Union

from typeguard import typechecked

from .errors import (
    CommandError,
    LaunchError,
    ProcessExitError,
    StreamReadError,
    UsageError,
)
from .util import (
    DRAIN_TIMEOUT_SECONDS,
    MATCH_TIMEOUT_SECONDS,
    MAX_BYTES_PER_READ,
    POLL_INTERVAL_SECONDS,
    OutputBuffer,
    StdinSource,
    StreamPump,
    compile_pattern,
    contains,
    eventually,
    feed_stdin,
    matches,
    read_chunk,
    set_nonblocking,
)

logger = logging.getLogger(__name__)


class State(enum.Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    FINISHED = "finished"


@typechecked
class Command:
    """
    One invocation of an external program and everything it produced.

    Either call run(), which blocks until the program exits, or start(),
    which returns immediately and captures output on background threads
    until wait() or kill(). Output can be inspected while the program is
    still running; the *_contains and *_matches methods keep looking for up
    to match_timeout seconds before giving up.

    A Command runs at most once. Construct a new one to run again.
    """

    def __init__(
        self,
        name: str,
        *args: str,
        match_timeout: float = MATCH_TIMEOUT_SECONDS,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        drain_timeout: float = DRAIN_TIMEOUT_SECONDS,
    ) -> None:
        self._args: List[str] = [name, *args]
        self._env: Optional[Dict[str, str]] = None
        self._stdin: Optional[StdinSource] = None
        self._cwd: Optional[str] = None
        self._state = State.INITIALIZED
        self._process: Optional[subprocess.Popen] = None
        self._process_group_id: Optional[int] = None
        self._pumps: List[StreamPump] = []
        self._error: Optional[CommandError] = None
        self._exit_code: Optional[int] = None
        self._timed_out = False
        self._stdout = OutputBuffer("stdout")
        self._stderr = OutputBuffer("stderr")
        self.match_timeout = match_timeout
        self.poll_interval = poll_interval
        self.drain_timeout = drain_timeout

    def __repr__(self) -> str:
        return f"<Command {shlex.join(self._args)!r} {self._state.value}>"

    def __enter__(self) -> "Command":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._state is State.RUNNING:
            self.kill()

    @property
    def args(self) -> Tuple[str, ...]:
        return tuple(self._args)

    @property
    def state(self) -> State:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process is not None else None

    # Configuration

    def _configurable(self, what: str) -> bool:
        if self._state is not State.INITIALIZED:
            logger.warning(f"Ignoring {what} on {self!r}: it has already started")
            return False
        return True

    def set_env(self, env: Optional[Mapping[str, str]]) -> None:
        """
        Replaces the child's environment with env. The default, None, passes
        our own environment through.
        """
        if self._configurable("set_env"):
            self._env = dict(env) if env is not None else None

    def set_stdin(self, stdin: Optional[StdinSource]) -> None:
        """
        Data for the child's stdin: bytes, a str (sent UTF-8 encoded), or a
        readable stream. Without it, stdin is /dev/null.
        """
        if self._configurable("set_stdin"):
            self._stdin = stdin

    def set_dir(self, cwd: Optional[Union[str, os.PathLike]]) -> None:
        if self._configurable("set_dir"):
            self._cwd = os.fspath(cwd) if cwd is not None else None

    def configure(
        self,
        env: Optional[Mapping[str, str]] = None,
        stdin: Optional[StdinSource] = None,
        cwd: Optional[Union[str, os.PathLike]] = None,
    ) -> None:
        """Sets every option that is not None."""
        if env is not None:
            self.set_env(env)
        if stdin is not None:
            self.set_stdin(stdin)
        if cwd is not None:
            self.set_dir(cwd)

    # Execution

    def _popen(self, stdin) -> subprocess.Popen:
        p = subprocess.Popen(
            self._args,
            env=self._env,
            cwd=self._cwd,
            stdin=stdin,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
            bufsize=MAX_BYTES_PER_READ,
        )
        self._process = p
        self._process_group_id = os.getpgid(p.pid)
        logger.debug(f"Started {self._args[0]} pid={p.pid}")
        return p

    def _launch_failed(self, exn: OSError) -> None:
        logger.debug(f"Could not start {self._args[0]}: {exn}")
        self._error = LaunchError(self._args, exn)
        self._stdout.close()
        self._stderr.close()
        self._state = State.FINISHED

    def _kill_group(self) -> None:
        try:
            os.killpg(self._process_group_id, signal.SIGKILL)
        except ProcessLookupError:
            pass

    def _finish(self, exit_code: int) -> None:
        logger.debug(f"{self._args[0]} pid={self.pid} exited with {exit_code}")
        self._exit_code = exit_code
        if exit_code != 0:
            self._error = ProcessExitError(exit_code, timed_out=self._timed_out)
        self._stdout.close()
        self._stderr.close()
        self._state = State.FINISHED

    def _feed_stdin(self, p: subprocess.Popen) -> None:
        threading.Thread(
            target=feed_stdin,
            args=(p.stdin, self._stdin),
            name=f"testcli-stdin-{p.pid}",
            daemon=True,
        ).start()

    def run(self, timeout_seconds: Optional[float] = None) -> None:
        """
        Runs the program to completion and captures all of its output. A
        nonzero exit status or a failure to launch is recorded, see error().

        As soon as the program exits, whatever is left of its process group
        is killed, so background children do not keep run() waiting on the
        pipes. With timeout_seconds, the whole group is killed once the
        timeout elapses; timed_out then reports True.
        """
        self._require_initialized("run")
        try:
            p = self._popen(
                subprocess.PIPE if self._stdin is not None else subprocess.DEVNULL
            )
        except OSError as exn:
            self._launch_failed(exn)
            return

        if self._stdin is not None:
            self._feed_stdin(p)
        set_nonblocking(p.stdout)
        set_nonblocking(p.stderr)
        saved: Dict[int, List[bytes]] = {p.stdout.fileno(): [], p.stderr.fileno(): []}
        open_fds = list(saved)
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds
        drain_deadline = 0.0
        exit_code = None
        try:
            while open_fds or exit_code is None:
                if exit_code is None:
                    if deadline is not None and time.monotonic() >= deadline:
                        logger.debug(f"{self._args[0]} pid={p.pid} timed out after {timeout_seconds}s")
                        self._timed_out = True
                        self._kill_group()
                        exit_code = p.wait()
                    else:
                        exit_code = p.poll()
                    if exit_code is not None:
                        # Kills any background children left in the process group.
                        self._kill_group()
                        drain_deadline = time.monotonic() + self.drain_timeout
                elif time.monotonic() >= drain_deadline:
                    logger.warning(
                        f"Output of {self._args[0]} pid={p.pid} still open "
                        f"after {self.drain_timeout}s, output may be incomplete"
                    )
                    break
                readable, _, _ = select.select(open_fds, [], [], self.poll_interval)
                for fd in readable:
                    chunk = read_chunk(fd)
                    if chunk is None:
                        continue
                    if chunk:
                        saved[fd].append(chunk)
                    else:
                        open_fds.remove(fd)
        except OSError as exn:
            self._kill_group()
            self._finish(p.wait())
            raise StreamReadError("stdio", exn)
        finally:
            p.stdout.close()
            p.stderr.close()

        stdout, stderr = (b"".join(chunks) for chunks in saved.values())
        self._stdout.append(stdout.decode("utf-8", errors="ignore"))
        self._stderr.append(stderr.decode("utf-8", errors="ignore"))
        self._finish(exit_code)

    def start(self) -> None:
        """
        Starts the program and returns immediately. Its stdout and stderr are
        copied into this Command as they arrive.
        """
        self._require_initialized("start")
        try:
            p = self._popen(
                subprocess.PIPE if self._stdin is not None else subprocess.DEVNULL
            )
        except OSError as exn:
            self._launch_failed(exn)
            return

        self._pumps = [
            StreamPump(p.stdout, self._stdout, p.pid),
            StreamPump(p.stderr, self._stderr, p.pid),
        ]
        for pump in self._pumps:
            pump.start()
        if self._stdin is not None:
            self._feed_stdin(p)
        self._state = State.RUNNING

    def _drain(self) -> None:
        for pump in self._pumps:
            if not pump.join(self.drain_timeout):
                logger.warning(
                    f"{pump.name} of {self._args[0]} pid={self.pid} still open "
                    f"after {self.drain_timeout}s, output may be incomplete"
                )

    def wait(self) -> None:
        """
        Blocks until a started program exits. Does nothing if it has already
        finished.
        """
        self._require_started("wait")
        if self._state is State.FINISHED:
            return
        exit_code = self._process.wait()
        self._kill_group()
        self._drain()
        self._finish(exit_code)
        self._check_streams()

    def kill(self) -> None:
        """
        Kills a started program and its process group with SIGKILL. Output
        that has not been read from the pipes within drain_timeout is lost.
        Does nothing if the program has already finished.
        """
        self._require_started("kill")
        if self._state is State.FINISHED:
            logger.debug(f"{self!r} already finished, not killing")
            return
        logger.debug(f"Killing {self._args[0]} pid={self.pid}")
        self._kill_group()
        exit_code = self._process.wait()
        self._drain()
        self._finish(exit_code)

    # Lifecycle checks

    def _require_initialized(self, what: str) -> None:
        if self._state is not State.INITIALIZED:
            raise UsageError(
                f"{what}() on {self!r}: a command can only be started once"
            )

    def _require_started(self, what: str) -> None:
        # After start() the state is either running or finished.
        if self._state is State.INITIALIZED:
            raise UsageError(f"{what}() on {self!r}: you need to run this command first")

    def _require_finished(self, what: str) -> None:
        self._require_started(what)
        if self._state is not State.FINISHED:
            raise UsageError(f"{what}() on {self!r}: command is still executing")

    def _check_streams(self) -> None:
        for pump in self._pumps:
            if pump.error is not None:
                raise StreamReadError(pump.name, pump.error)

    # Exit status

    def error(self) -> Optional[CommandError]:
        """
        None if the program exited with status 0. Otherwise a LaunchError if
        it never started, or a ProcessExitError.
        """
        self._require_finished("error")
        return self._error

    def succeeded(self) -> bool:
        self._require_finished("succeeded")
        return self._error is None

    def failed(self) -> bool:
        self._require_finished("failed")
        return self._error is not None

    @property
    def exit_code(self) -> Optional[int]:
        """Negative for death by signal. None if the program never started."""
        self._require_finished("exit_code")
        return self._exit_code

    @property
    def timed_out(self) -> bool:
        self._require_finished("timed_out")
        return self._timed_out

    # Output

    def stdout(self) -> str:
        self._require_started("stdout")
        self._check_streams()
        return self._stdout.snapshot()

    def stderr(self) -> str:
        self._require_started("stderr")
        self._check_streams()
        return self._stderr.snapshot()

    def _eventually(self, what: str, buffer: OutputBuffer, predicate: Callable[[str], bool]) -> bool:
        self._require_started(what)
        self._check_streams()
        return eventually(
            buffer,
            predicate,
            timeout_seconds=self.match_timeout,
            interval_seconds=self.poll_interval,
        )

    def _compile(self, what: str, pattern: Union[str, re.Pattern]) -> re.Pattern:
        try:
            return compile_pattern(pattern)
        except re.error as exn:
            raise UsageError(f"{what}(): invalid pattern {pattern!r}: {exn}") from exn

    def stdout_contains(self, text: str) -> bool:
        """Case-insensitive. Waits up to match_timeout for text to appear."""
        return self._eventually("stdout_contains", self._stdout, contains(text))

    def stderr_contains(self, text: str) -> bool:
        """Case-insensitive. Waits up to match_timeout for text to appear."""
        return self._eventually("stderr_contains", self._stderr, contains(text))

    def stdout_matches(self, pattern: Union[str, re.Pattern]) -> bool:
        """
        Searches stdout for pattern, waiting up to match_timeout. String
        patterns are case-insensitive.
        """
        predicate = matches(self._compile("stdout_matches", pattern))
        return self._eventually("stdout_matches", self._stdout, predicate)

    def stderr_matches(self, pattern: Union[str, re.Pattern]) -> bool:
        """
        Searches stderr for pattern, waiting up to match_timeout. String
        patterns are case-insensitive.
        """
        predicate = matches(self._compile("stderr_matches", pattern))
        return self._eventually("stderr_matches", self._stderr, predicate)


def command(name: str, *args: str, **options) -> Command:
    """Creates a Command for the program name with the given arguments."""
    return Command(name, *args, **options)
