import fcntl
import logging
import os
import re
import threading
import time
from typing import IO, Callable, List, Optional, Union

MAX_BYTES_PER_READ = 1024
POLL_INTERVAL_SECONDS = 0.1
MATCH_TIMEOUT_SECONDS = 1.0
DRAIN_TIMEOUT_SECONDS = 1.0

logger = logging.getLogger(__name__)

StdinSource = Union[bytes, bytearray, str, IO]


def set_nonblocking(reader):
    fd = reader.fileno()
    fl = fcntl.fcntl(fd, fcntl.F_GETFL)
    fcntl.fcntl(fd, fcntl.F_SETFL, fl | os.O_NONBLOCK)


def read_chunk(fd: int) -> Optional[bytes]:
    """
    Reads what is available on a nonblocking fd. Returns None if nothing is
    available yet and b"" at EOF.
    """
    try:
        return os.read(fd, MAX_BYTES_PER_READ)
    except BlockingIOError:
        return None


class OutputBuffer:
    """
    Append-only text captured from one stream of a process. One thread
    appends, any number of threads read snapshots. Closing the buffer freezes
    it: later appends are discarded.
    """

    def __init__(self, name: str):
        self.name = name
        self._chunks: List[str] = []
        self._closed = False
        self._changed = threading.Condition()

    def append(self, text: str) -> bool:
        with self._changed:
            if self._closed:
                logger.debug(f"Discarding {len(text)} chars written to closed {self.name}")
                return False
            self._chunks.append(text)
            self._changed.notify_all()
            return True

    def close(self) -> None:
        with self._changed:
            self._closed = True
            self._changed.notify_all()

    @property
    def closed(self) -> bool:
        with self._changed:
            return self._closed

    def snapshot(self) -> str:
        with self._changed:
            text = "".join(self._chunks)
            # Keep a single chunk around so repeated polls do not re-join.
            self._chunks = [text] if text else []
            return text

    def wait(self, timeout_seconds: float) -> None:
        """
        Blocks until the next append or close, or until the timeout elapses.
        """
        with self._changed:
            if not self._closed:
                self._changed.wait(timeout_seconds)


class StreamPump:
    """
    Copies one output pipe of a running process into an OutputBuffer, a line
    at a time, on a daemon thread. The thread ends at EOF. A read error also
    ends it and is kept in `error` for the owner to report.
    """

    def __init__(self, stream: IO[bytes], buffer: OutputBuffer, pid: int):
        self.name = buffer.name
        self._stream = stream
        self._buffer = buffer
        self.error: Optional[Exception] = None
        self._thread = threading.Thread(
            target=self._pump, name=f"testcli-{buffer.name}-{pid}", daemon=True
        )

    def start(self) -> None:
        self._thread.start()

    def _pump(self) -> None:
        try:
            for line in iter(self._stream.readline, b""):
                self._buffer.append(line.decode("utf-8", errors="ignore"))
        except (OSError, ValueError) as exn:
            logger.error(f"Reading {self._buffer.name} failed: {exn}")
            self.error = exn
        finally:
            self._stream.close()
        logger.debug(f"Reached end of {self._buffer.name}")

    def join(self, timeout_seconds: Optional[float] = None) -> bool:
        """
        Waits for the pump to reach EOF. Returns False if it is still running
        when the timeout elapses.
        """
        self._thread.join(timeout_seconds)
        return not self._thread.is_alive()


def stdin_bytes(source: StdinSource) -> bytes:
    """Reads a whole stdin source into memory."""
    if isinstance(source, str):
        return source.encode()
    if isinstance(source, (bytes, bytearray)):
        return bytes(source)
    data = source.read()
    return data.encode() if isinstance(data, str) else data


def feed_stdin(fd: IO[bytes], source: StdinSource) -> None:
    """
    Copies source into the child's stdin and closes it. Meant to run on its
    own thread. A child that exits without reading all of its input is not an
    error.
    """
    try:
        if isinstance(source, (str, bytes, bytearray)):
            fd.write(stdin_bytes(source))
        else:
            while True:
                chunk = source.read(MAX_BYTES_PER_READ)
                if not chunk:
                    break
                fd.write(chunk.encode() if isinstance(chunk, str) else chunk)
                fd.flush()
    except BrokenPipeError:
        pass
    finally:
        try:
            fd.close()
        except BrokenPipeError:
            pass


def contains(text: str) -> Callable[[str], bool]:
    """Case-insensitive substring test."""
    needle = text.lower()
    return lambda haystack: needle in haystack.lower()


def matches(pattern: re.Pattern) -> Callable[[str], bool]:
    return lambda haystack: pattern.search(haystack) is not None


def compile_pattern(pattern: Union[str, re.Pattern]) -> re.Pattern:
    """
    Strings are compiled case-insensitively. A compiled pattern keeps its own
    flags.
    """
    if isinstance(pattern, str):
        return re.compile(pattern, re.IGNORECASE)
    return pattern


def eventually(
    buffer: OutputBuffer,
    predicate: Callable[[str], bool],
    timeout_seconds: float = MATCH_TIMEOUT_SECONDS,
    interval_seconds: float = POLL_INTERVAL_SECONDS,
) -> bool:
    """
    Returns True as soon as predicate holds for the buffer's contents, or
    False once timeout_seconds have passed without it holding. Between checks
    we sleep until the buffer changes, but never longer than interval_seconds.
    A closed buffer cannot change, so it is checked exactly once.
    """
    deadline = time.monotonic() + timeout_seconds
    while True:
        # Read closed before the snapshot: if it was already closed, the
        # snapshot is final.
        final = buffer.closed
        if predicate(buffer.snapshot()):
            return True
        if final:
            return False
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        buffer.wait(min(interval_seconds, remaining))
