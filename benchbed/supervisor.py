"""
ProcessSupervisor - Executes supervisor commands for command programs.

The supervisor owns the running children of one command program, its
progress display, and the per-loop iteration bars.

Command semantics:
- LimitSpawn(n): later spawns wait while n or more children run
- Sleep(ms): pause, waking early on shutdown
- Spawn: admission wait, refresh progress, evaluate, start; a spawn that
  fails to start is reported and skipped
- WaitAll(timeout, polls): wait for every child; kill what is left on
  timeout or shutdown

At program end the remaining children are drained one by one.
"""

import logging
import time
from pathlib import Path
from typing import Optional

from rich.console import Console

from .commands import LimitSpawn, Sleep, Spawn, SupervisorCommand, WaitAll
from .process import SLEEP_TIME, ProcessInfo, TimeoutLoop
from .program import Executable, Shutdown
from .progress import IterProgress, ProgressDisplay
from .schemas import Counter, Object, Struct, VarNameId, object_length
from .state import ProgramState

logger = logging.getLogger(__name__)


class ProcessSupervisor(Executable[SupervisorCommand]):
    """
    Runs supervisor commands and tracks the children they start.

    Attributes:
        spawn_limit: Admission limit set by LimitSpawn (None for unlimited)
        processes: Children that have not been seen to terminate
        spawned: Every child started since the last reset
        iters: Iteration bars keyed by loop variable
        display: Progress display for the current program
    """

    def __init__(
        self,
        console: Optional[Console] = None,
        live: bool = True,
        progress_file: Optional[Path] = None,
        ident_args: Optional[int] = None,
    ):
        self.console = console
        self.live = live
        self.ident_args = ident_args
        self.spawn_limit: Optional[int] = None
        self.processes: list[ProcessInfo] = []
        self.spawned: list[ProcessInfo] = []
        self.iters: dict[VarNameId, IterProgress] = {}
        self.spawn_failures = 0
        self.display = ProgressDisplay(console, live)
        self._progress_file = progress_file
        self._progress_handle = None
        self._shut_down = False

    # -------------------------------------------------------------------------
    # Executable
    # -------------------------------------------------------------------------

    def execute(self, command: SupervisorCommand, state: ProgramState, shutdown: Shutdown) -> None:
        if isinstance(command, LimitSpawn):
            self.spawn_limit = command.limit
        elif isinstance(command, Sleep):
            self.sleep(command.millis, shutdown)
        elif isinstance(command, Spawn):
            self.spawn(command, state, shutdown)
        elif isinstance(command, WaitAll):
            self.wait_all(command.timeout, 0, shutdown, command.polls)
        else:
            raise TypeError(f"Unknown supervisor command: {command!r}")

    def finish(self, state: ProgramState, shutdown: Shutdown) -> None:
        """Drain the children one by one; shutdown kills whatever is left."""
        for process in self.processes:
            process.wait_or_terminate(None, shutdown)
        if shutdown.is_shutdown():
            self.shutdown()
        self.processes.clear()
        self._finish_iters()

    def shutdown(self) -> None:
        """Kill every running child. Safe to call repeatedly."""
        for process in self.processes:
            process.kill()
        self.processes.clear()
        self._finish_iters()
        if not self._shut_down:
            self._shut_down = True
            logger.info("Supervisor shut down", extra={"event": "shutdown"})

    def set_iter(self, iter_var: VarNameId, index: int, value: Object, state: ProgramState) -> None:
        total = object_length(value)
        bar = self.iters.get(iter_var)
        if bar is None:
            bar = self.display.add_iter(state.names.name_of(iter_var), total)
            self.iters[iter_var] = bar
        elif bar.total != total:
            bar.set_total(total)

        bar.set(index)

        if isinstance(value, Struct):
            bar.set_message(value.base)
        elif isinstance(value, list):
            if index < len(value):
                item = state.deref(value[index])
                if isinstance(item, Struct):
                    bar.set_message(item.base)
        elif isinstance(value, Counter):
            bar.set_message(str(value.start + index))

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    def sleep(self, millis: int, shutdown: Shutdown) -> None:
        deadline = time.monotonic() + millis / 1000
        while not shutdown.is_shutdown():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            shutdown.wait(min(SLEEP_TIME, remaining))

    def spawn(self, spawn: Spawn, state: ProgramState, shutdown: Shutdown) -> None:
        """
        Start one child, honoring the admission limit.

        Raises:
            VariableAccessError: If the spawn fails to evaluate
        """
        if self.spawn_limit is not None and len(self.processes) >= self.spawn_limit:
            self.wait_all(None, self.spawn_limit, shutdown)
            if shutdown.is_shutdown():
                return

        for bar in self.iters.values():
            bar.refresh()
        self.write_progress()

        process = spawn.evaluate(state)
        self.display.start()
        try:
            process.run(self.display, self.ident_args)
        except (OSError, ValueError) as e:
            # ValueError: Popen rejects a NUL byte in the command, an argument or cwd
            self.spawn_failures += 1
            logger.error("Failed to spawn %s: %s", process.command, e, extra={"event": "spawn_failed"})
            self.display.println(f"Failed to spawn {process.command}: {e}")
            return

        self.processes.append(process)
        self.spawned.append(process)

    def wait_all(
        self,
        timeout: Optional[int],
        remaining: int,
        shutdown: Shutdown,
        polls: Optional[int] = None,
    ) -> None:
        """
        Poll children until fewer than max(remaining, 1) are running.

        Args:
            timeout: Milliseconds before the leftovers are killed (None waits forever)
            remaining: Stop waiting once fewer than this many children run
            shutdown: Cancellation flag; when set, every child is killed
            polls: Poll at most this many times within timeout
        """
        threshold = max(remaining, 1)
        if timeout is not None and polls is not None:
            loop = TimeoutLoop.from_sleep_times(timeout, polls)
        else:
            loop = TimeoutLoop(timeout)

        cancelled = False

        def poll() -> bool:
            nonlocal cancelled
            if shutdown.is_shutdown():
                cancelled = True
                return True
            self.processes = [process for process in self.processes if not process.try_wait()]
            return len(self.processes) < threshold

        if not self.processes and not shutdown.is_shutdown():
            return

        done = loop.wait_loop(poll)

        if cancelled:
            self.shutdown()
        elif not done:
            logger.warning(
                "Timed out after %sms with %d process(es) running, killing them",
                timeout,
                len(self.processes),
                extra={"event": "timeout"},
            )
            for process in self.processes:
                process.kill()
            self.processes.clear()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def reset(self, shutdown: Shutdown) -> None:
        """Drain leftovers and start fresh for the next program."""
        self.wait_all(None, 0, shutdown)
        self.shutdown()
        self.display.stop()
        self.processes = []
        self.spawned = []
        self.spawn_limit = None
        self.iters = {}
        self._shut_down = False
        self.display = ProgressDisplay(self.console, self.live)

    def close(self) -> None:
        self.display.stop()
        if self._progress_handle is not None:
            self._progress_handle.close()
            self._progress_handle = None

    def _finish_iters(self) -> None:
        for bar in self.iters.values():
            bar.finish()
        self.iters.clear()

    def write_progress(self) -> None:
        """
        Rewrite the progress file in place, one summary line per loop.

        Older, longer content is overwritten with spaces.
        """
        if self._progress_file is None:
            return

        if self._progress_handle is None:
            try:
                self._progress_file.parent.mkdir(parents=True, exist_ok=True)
                mode = "r+b" if self._progress_file.exists() else "w+b"
                self._progress_handle = open(self._progress_file, mode)
            except OSError as e:
                logger.warning("Cannot open progress file %s: %s", self._progress_file, e)
                self._progress_file = None
                return

        handle = self._progress_handle
        handle.seek(0, 2)
        previous = handle.tell()
        handle.seek(0)

        data = "".join(bar.summary() + "\n" for bar in self.iters.values()).encode("utf-8")
        handle.write(data)
        if len(data) < previous:
            handle.write(b" " * (previous - len(data)))
        handle.flush()
