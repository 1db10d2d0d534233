"""
Child process supervision.

ProcessInfo describes a child to start (command, args, output routing and
working directory). run() starts it with piped stdout/stderr and one daemon
reader thread per stream:

- Print: output is decoded incrementally as UTF-8 and the current line is
  pushed to the process bar (both \\n and \\r end a line)
- Create/Append: output is copied to a file in chunks with \\r stripped,
  flushed after every chunk. If the file cannot be opened, or a write
  fails, the stream degrades to the bar and the bar prefix is flagged.

Once started, a child moves through a one-shot state transition, see
benchbed.schemas.process.
"""

import codecs
import logging
import math
import re
import subprocess
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable, Optional, TYPE_CHECKING

from .schemas import ProcessState, ProcessStatus

if TYPE_CHECKING:
    from .program import Shutdown
    from .progress import ProcessBar, ProgressDisplay

logger = logging.getLogger(__name__)

# Poll interval for all cooperative waits, in seconds
SLEEP_TIME = 0.1

CHUNK_SIZE = 8192

_LINE_BREAK = re.compile(r"[\r\n]")
_PATH_SEPARATOR = re.compile(r"[/\\]")


class OutputMode(str, Enum):
    """Where a child's stream goes."""
    PRINT = "print"
    CREATE = "create"
    APPEND = "append"


@dataclass(frozen=True)
class OutputMap:
    mode: OutputMode = OutputMode.PRINT
    path: Optional[Path] = None


# =============================================================================
# Bounded waits
# =============================================================================


class TimeoutLoop:
    """
    Deadline-bounded polling loop.

    Attributes:
        duration_ms: Total time budget (None for no limit)
        sleep_ms: Pause between polls
    """

    def __init__(self, duration_ms: Optional[int], sleep_ms: int = int(SLEEP_TIME * 1000)):
        if sleep_ms <= 0:
            raise ValueError("sleep interval must be positive")
        self.duration_ms = duration_ms
        self.sleep_ms = sleep_ms

    @classmethod
    def from_sleep_times(cls, duration_ms: int, n: int) -> "TimeoutLoop":
        """Poll at most n times across duration_ms; the interval rounds up."""
        if n <= 0:
            raise ValueError("poll count must be positive")
        return cls(duration_ms, max(1, math.ceil(duration_ms / n)))

    @classmethod
    def unbounded(cls, sleep_ms: int = int(SLEEP_TIME * 1000)) -> "TimeoutLoop":
        return cls(None, sleep_ms)

    def wait_loop(self, f: Callable[[], bool]) -> bool:
        """
        Call f every interval until it returns True or the deadline passes.

        Returns:
            True if f returned True, False on timeout
        """
        sleep = self.sleep_ms / 1000
        deadline = None
        if self.duration_ms is not None:
            deadline = time.monotonic() + self.duration_ms / 1000

        while True:
            if f():
                return True
            if deadline is None:
                time.sleep(sleep)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(sleep, remaining))

    def __repr__(self) -> str:
        return f"TimeoutLoop(duration_ms={self.duration_ms}, sleep_ms={self.sleep_ms})"


# =============================================================================
# Output readers
# =============================================================================


class LineReader:
    """
    Incremental UTF-8 decoder that tracks the current output line.

    A partial multi-byte sequence at the end of a chunk is held for the next
    one. A line break does not clear the line immediately; the next
    character does, so the last line stays visible after the stream ends.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self._clear = False

    @property
    def line(self) -> str:
        return "".join(self._parts)

    def feed(self, data: bytes, final: bool = False) -> str:
        text = self._decoder.decode(data, final)
        for idx, piece in enumerate(_LINE_BREAK.split(text)):
            if idx > 0:
                self._clear = True
            if not piece:
                continue
            if self._clear:
                self._parts = []
                self._clear = False
            self._parts.append(piece)
        return self.line


def _read_to_bar(stream: BinaryIO, bar: "ProcessBar") -> None:
    reader = LineReader()
    try:
        while True:
            try:
                data = stream.read(CHUNK_SIZE)
            except OSError as e:
                bar.set_message(f"Error: {e}")
                break
            if not data:
                tail = reader.feed(b"", final=True)
                if tail:
                    bar.set_message(tail)
                break
            bar.set_message(reader.feed(data))
    finally:
        stream.close()


def _write_to_file(stream: BinaryIO, handle: BinaryIO, path: Path, bar: "ProcessBar", name: str) -> None:
    with handle:
        while True:
            try:
                data = stream.read(CHUNK_SIZE)
            except OSError:
                break
            if not data:
                break
            try:
                handle.write(data.replace(b"\r", b""))
                handle.flush()
            except OSError as e:
                logger.warning("Write failed %s: %s", path, e)
                bar.set_redirected(name)
                _read_to_bar(stream, bar)
                return
    stream.close()


def spawn_progress_writer(stream: BinaryIO, bar: "ProcessBar", name: str) -> threading.Thread:
    """Start a daemon thread pushing the stream's current line to bar."""
    thread = threading.Thread(target=_read_to_bar, args=(stream, bar), name=f"{name}-reader", daemon=True)
    thread.start()
    return thread


def spawn_file_writer(stream: BinaryIO, path: Path, append: bool, bar: "ProcessBar", name: str) -> threading.Thread:
    """
    Start a daemon thread copying the stream into path.

    If the file cannot be opened, the stream is shown on bar instead and the
    bar prefix is flagged with `!<name>`.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(path, "ab" if append else "wb")
    except OSError as e:
        logger.warning("Cannot open %s for %s, showing it live: %s", path, name, e)
        bar.set_redirected(name)
        return spawn_progress_writer(stream, bar, name)

    thread = threading.Thread(
        target=_write_to_file,
        args=(stream, handle, path, bar, name),
        name=f"{name}-writer",
        daemon=True,
    )
    thread.start()
    return thread


def _route(stream: BinaryIO, output: OutputMap, bar: "ProcessBar", name: str) -> threading.Thread:
    if output.mode == OutputMode.PRINT or output.path is None:
        return spawn_progress_writer(stream, bar, name)
    return spawn_file_writer(stream, output.path, output.mode == OutputMode.APPEND, bar, name)


# =============================================================================
# Processes
# =============================================================================


class RunningProcess:
    """A started child, its bar, and its one-shot state transition."""

    def __init__(self, process: subprocess.Popen, bar: "ProcessBar"):
        self.process = process
        self.pid = process.pid
        self.bar = bar
        self.state = ProcessState()
        self._lock = threading.Lock()

    def _transition(self, state: ProcessState) -> bool:
        with self._lock:
            if self.state.is_terminal:
                return False
            self.state = state
        self.bar.set_state(state)
        return True

    def _exit_state(self, code: int) -> ProcessState:
        if code == 0:
            return ProcessState(ProcessStatus.FINISHED)
        # Negative codes mean the child died from a signal
        return ProcessState(ProcessStatus.FAILED, code=code if code > 0 else None)

    def try_wait(self) -> bool:
        """Non-blocking poll. Returns True once the child has terminated."""
        if self.state.is_terminal:
            return True
        try:
            code = self.process.poll()
        except OSError as e:
            self._transition(ProcessState(ProcessStatus.ERROR, error=str(e)))
            return True
        if code is None:
            return False
        if self._transition(self._exit_state(code)):
            logger.debug("Process %d exited with %d", self.pid, code, extra={"event": "exit", "pid": self.pid})
        return True

    def kill(self) -> None:
        if self.try_wait():
            return
        try:
            self.process.kill()
        except OSError as e:
            logger.error("Failed to kill process %d: %s", self.pid, e)
            self._transition(ProcessState(ProcessStatus.ERROR, error=str(e)))
            return

        self._transition(ProcessState(ProcessStatus.KILLED))
        logger.info("Killed process %d", self.pid, extra={"event": "kill", "pid": self.pid})
        try:
            self.process.wait(timeout=1)
        except subprocess.TimeoutExpired:
            logger.warning("Process %d still alive after kill", self.pid)


@dataclass
class ProcessInfo:
    """
    A child process to start, and its handle once started.

    Attributes:
        command: Executable name or path
        args: Evaluated arguments
        stdout: Routing for standard output
        stderr: Routing for standard error
        working_dir: Working directory for the child (inherit when None)
        running: Set by run() once the child is started
    """
    command: str
    args: list[str] = field(default_factory=list)
    stdout: OutputMap = field(default_factory=OutputMap)
    stderr: OutputMap = field(default_factory=OutputMap)
    working_dir: Optional[Path] = None
    running: Optional[RunningProcess] = None

    def ident(self, ident_args: Optional[int] = None) -> str:
        """Display label: the command's file name followed by its arguments."""
        name = _PATH_SEPARATOR.split(self.command)[-1] or "?"
        args = self.args if ident_args is None else self.args[:ident_args]
        return " ".join([name, *args])

    def run(self, display: "ProgressDisplay", ident_args: Optional[int] = None) -> None:
        """
        Start the child and its reader threads.

        Raises:
            OSError: If the child could not be started
        """
        process = subprocess.Popen(
            [self.command, *self.args],
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.working_dir,
            bufsize=0,
        )
        bar = display.add_process_bar(self.ident(ident_args))
        self.running = RunningProcess(process, bar)

        _route(process.stdout, self.stdout, bar, "stdout")
        _route(process.stderr, self.stderr, bar, "stderr")

        logger.info(
            "Spawned %s (pid %d)",
            self.ident(),
            process.pid,
            extra={"event": "spawn", "pid": process.pid},
        )

    @property
    def state(self) -> Optional[ProcessState]:
        return self.running.state if self.running is not None else None

    def try_wait(self) -> bool:
        if self.running is None:
            return True
        return self.running.try_wait()

    def kill(self) -> None:
        if self.running is not None:
            self.running.kill()

    def wait_or_terminate(self, timeout: Optional[TimeoutLoop], shutdown: "Shutdown") -> Optional[ProcessState]:
        """
        Wait for the child to exit, killing it on timeout or shutdown.

        Returns:
            The final state (None if the child was never started)
        """
        running = self.running
        if running is None:
            return None

        def poll() -> bool:
            if shutdown.is_shutdown():
                running.kill()
                return True
            return running.try_wait()

        loop = timeout if timeout is not None else TimeoutLoop.unbounded()
        if not loop.wait_loop(poll):
            logger.warning("Process %d timed out after %sms", running.pid, loop.duration_ms)
            running.kill()
        return running.state
