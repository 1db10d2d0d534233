"""
Progress display.

Two rich Progress groups rendered together in one Live region:

- iteration bars, one per loop variable (prefix, bar, pos/len, ETA, elapsed)
- process spinners, one per spawned child (label plus its latest output line)

Reader threads update process bars concurrently; rich's Progress is
internally locked, and each ProcessBar serializes its own prefix/message
bookkeeping.
"""

import logging
import threading
from typing import Optional

from rich.console import Console, Group
from rich.live import Live
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from .schemas import ProcessState
from .utils import console as default_console
from .utils import fit_line, format_duration

logger = logging.getLogger(__name__)


class ProgressDisplay:
    """
    Live terminal display for one command program.

    With live=False the bars are tracked but never rendered, and println
    still goes to the console.
    """

    def __init__(self, console: Optional[Console] = None, live: bool = True):
        self.console = console or default_console
        self.iters = Progress(
            TextColumn("{task.description:<10}", style="bold dim", markup=False),
            BarColumn(),
            MofNCompleteColumn(),
            TimeRemainingColumn(),
            TextColumn(":"),
            TimeElapsedColumn(),
            TextColumn("{task.fields[message]}", markup=False),
            console=self.console,
        )
        self.processes = Progress(
            SpinnerColumn(finished_text="-"),
            TextColumn("{task.description}", style="bold dim", markup=False),
            TextColumn("{task.fields[message]}", markup=False),
            console=self.console,
        )
        self._live: Optional[Live] = None
        if live:
            self._live = Live(
                Group(self.iters, self.processes),
                console=self.console,
                refresh_per_second=10,
            )
        self._started = False

    def start(self) -> None:
        if self._live is not None and not self._started:
            self._live.start()
            self._started = True

    def stop(self) -> None:
        if self._live is not None and self._started:
            self._live.stop()
            self._started = False

    def println(self, text: str) -> None:
        """Print a line above the bars."""
        self.console.print(text, markup=False, highlight=False)

    def width(self) -> int:
        return self.console.width

    def add_iter(self, name: str, total: int) -> "IterProgress":
        return IterProgress(self.iters, name, total)

    def add_process_bar(self, ident: str) -> "ProcessBar":
        return ProcessBar(self, ident)


class IterProgress:
    """Progress bar for one loop variable."""

    def __init__(self, progress: Progress, name: str, total: int):
        self._progress = progress
        self.name = name
        self.total = total
        self.position = 0
        self.message = ""
        self.task_id: TaskID = progress.add_task(name, total=total, message="")

    def set(self, position: int) -> None:
        self.position = position
        self._progress.update(self.task_id, completed=position)

    def set_total(self, total: int) -> None:
        self.total = total
        self._progress.update(self.task_id, total=total)

    def set_message(self, message: str) -> None:
        self.message = message
        self._progress.update(self.task_id, message=message)

    def refresh(self) -> None:
        self._progress.refresh()

    def finish(self) -> None:
        self._progress.update(self.task_id, completed=self.total)
        self._progress.stop_task(self.task_id)

    def summary(self) -> str:
        """One-line summary: name, pos/len, ETA, elapsed, last message."""
        eta = elapsed = None
        for task in self._progress.tasks:
            if task.id == self.task_id:
                eta, elapsed = task.time_remaining, task.elapsed
                break
        return (
            f"{self.name} {self.position}/{self.total} "
            f"{format_duration(eta)} : {format_duration(elapsed)} {self.message}"
        )


class ProcessBar:
    """
    Spinner for one child process.

    The prefix is the process label, flagged with `!stdout`/`!stderr` when
    that stream could not be written to its file. Once a terminal state is
    set, later messages are ignored.
    """

    # Spinner plus two separating spaces
    EXTRA_SPACE = 3

    def __init__(self, display: ProgressDisplay, ident: str):
        self._display = display
        self._lock = threading.Lock()
        self.ident = ident
        self.stdout_redirected = False
        self.stderr_redirected = False
        self.message = ""
        self.state: Optional[ProcessState] = None
        self.task_id: TaskID = display.processes.add_task(ident, total=None, message="")
        with self._lock:
            self._refresh()

    def prefix(self) -> str:
        flags = []
        if self.stdout_redirected:
            flags.append("!stdout")
        if self.stderr_redirected:
            flags.append("!stderr")
        if flags:
            return " ".join(flags) + ": " + self.ident
        return self.ident

    def set_redirected(self, stream: str) -> None:
        """Flag a stream ("stdout" or "stderr") as degraded to the display."""
        with self._lock:
            if stream == "stdout":
                self.stdout_redirected = True
            else:
                self.stderr_redirected = True
            self._refresh()

    def set_message(self, message: str) -> None:
        with self._lock:
            if self.state is not None:
                return
            self.message = message
            self._refresh()

    def set_state(self, state: ProcessState) -> None:
        if not state.is_terminal:
            return
        with self._lock:
            if self.state is not None:
                return
            self.state = state
            self.message = str(state)
            self._refresh()
            self._display.processes.update(self.task_id, total=1, completed=1)

    def _refresh(self) -> None:
        available = max(self._display.width(), self.EXTRA_SPACE) - self.EXTRA_SPACE
        prefix, message = fit_line(self.prefix(), self.message, available)
        self._display.processes.update(self.task_id, description=prefix, message=message)
