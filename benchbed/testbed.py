"""
TestBed - Runs a bed's programs in order.

Run phases:
1. globals: seeds the root scope (kept for every later program)
2. template programs: render files, bind and yield results
3. command programs: drive the process supervisor; the supervisor is reset
   between programs (leftovers drained, fresh progress display)

A failing globals program aborts the run. A failing template or command
program is recorded, and the run moves on to the next program unless
fail_fast is set. The run succeeds only when no program failed.

Cancellation: cancel() sets the shared shutdown flag; every wait in the
interpreter and supervisor checks it on each tick, so the run winds down,
kills its children and sets `completed`.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Sequence

from rich.console import Console

from .config import BenchbedConfig
from .errors import BenchbedError, ProgramError
from .loader import BedDefinition
from .program import Executable, Program, Shutdown
from .state import ProgramState
from .supervisor import ProcessSupervisor
from .templates import TemplateBuilder, TemplateRunner

logger = logging.getLogger(__name__)

# Display name of the unnamed command program
DEFAULT_COMMANDS = "commands"


@dataclass
class TestBedResult:
    """Result of running a bed.

    - success: true if no program failed and the run was not cancelled
    - programs: programs that ran to completion, in order
    - failures: list of {program, error, origin} for failed programs
    - template_errors: templates that failed to render or save
    - spawn_failures: children that failed to start
    - cancelled: true if the run was cancelled
    - duration_ms: total execution time
    """
    __test__ = False

    success: bool = True
    programs: list[str] = field(default_factory=list)
    failures: list[dict[str, Optional[str]]] = field(default_factory=list)
    template_errors: int = 0
    spawn_failures: int = 0
    cancelled: bool = False
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        result = {
            "success": self.success,
            "programs": self.programs,
            "failures": self.failures,
            "template_errors": self.template_errors,
            "spawn_failures": self.spawn_failures,
            "duration_ms": self.duration_ms,
        }
        if self.cancelled:
            result["cancelled"] = True
        return result


class TestBed:
    """
    Orchestrates one bed run.

    Attributes:
        bed: The parsed bed definition
        state: Interpreter state shared by every program
        shutdown: Cancellation flag
        completed: Set once run() returns, cancelled or not
    """
    __test__ = False

    def __init__(
        self,
        bed: BedDefinition,
        config: Optional[BenchbedConfig] = None,
        console: Optional[Console] = None,
        live: Optional[bool] = None,
    ):
        config = config or BenchbedConfig()
        self.bed = bed
        self.fail_fast = config.should_fail_fast()
        self.state = ProgramState(bed.names)
        self.shutdown = Shutdown()
        self.completed = threading.Event()
        self.result: Optional[TestBedResult] = None

        builder = TemplateBuilder(
            config.get_template_output() or bed.output,
            config.get_template_includes() or bed.includes,
        )
        self.templates = TemplateRunner(builder, console)
        self.supervisor = ProcessSupervisor(
            console=console,
            live=config.use_live_display() if live is None else live,
            progress_file=config.progress_file,
            ident_args=config.get_ident_args(),
        )
        self.error: Optional[Exception] = None
        self._thread: Optional[threading.Thread] = None

    def _select(self, programs: Optional[Sequence[str]]):
        templates = self.bed.template_programs()
        commands = [
            (DEFAULT_COMMANDS if name is None else name, program)
            for name, program in self.bed.command_programs()
        ]
        if programs is None:
            return templates, commands

        known = {name for name, _ in templates} | {name for name, _ in commands}
        unknown = [name for name in programs if name not in known]
        if unknown:
            raise BenchbedError(f"Unknown program(s): {', '.join(unknown)}")

        wanted = set(programs)
        return (
            [(name, program) for name, program in templates if name in wanted],
            [(name, program) for name, program in commands if name in wanted],
        )

    def _run_program(
        self,
        name: str,
        program: Program,
        executable: Executable,
        result: TestBedResult,
        keep_scope: bool = False,
    ) -> bool:
        """Run one program. Returns False if it failed."""
        logger.info("Running program %s", name, extra={"event": "program_start", "program": name})
        try:
            program.run(executable, self.state, self.shutdown, keep_scope=keep_scope)
        except ProgramError as e:
            executable.shutdown()
            logger.error("Program %s failed: %s", name, e, extra={"event": "program_failed", "program": name})
            result.failures.append({"program": name, "error": str(e), "origin": e.origin})
            return False

        if not self.shutdown.is_shutdown():
            result.programs.append(name)
            logger.info("Program %s finished", name, extra={"event": "program_finish", "program": name})
        return True

    def run(self, programs: Optional[Sequence[str]] = None) -> TestBedResult:
        """
        Run globals, then the selected template and command programs.

        Args:
            programs: Program names to run (default: every program)

        Returns:
            TestBedResult

        Raises:
            BenchbedError: If a requested program does not exist
        """
        start = time.monotonic()
        templates, commands = self._select(programs)
        result = TestBedResult()
        try:
            if self._run_program("globals", self.bed.globals_program(), self.templates, result, keep_scope=True):
                for name, program in templates:
                    if self.shutdown.is_shutdown():
                        break
                    if not self._run_program(name, program, self.templates, result) and self.fail_fast:
                        break
                else:
                    self._run_commands(commands, result)
        finally:
            self.supervisor.close()
            result.template_errors = len(self.templates.errors)
            result.spawn_failures = self.supervisor.spawn_failures
            result.cancelled = self.shutdown.is_shutdown()
            result.success = not result.failures and not result.cancelled
            result.duration_ms = int((time.monotonic() - start) * 1000)
            self.result = result
            self.completed.set()

        logger.info(
            "Run %s in %dms",
            "succeeded" if result.success else "failed",
            result.duration_ms,
            extra={"event": "run_finish"},
        )
        return result

    def _run_commands(self, commands, result: TestBedResult) -> None:
        for idx, (name, program) in enumerate(commands):
            if self.shutdown.is_shutdown():
                break
            if idx > 0:
                self.supervisor.reset(self.shutdown)
            ok = self._run_program(name, program, self.supervisor, result)
            self.supervisor.display.stop()
            if not ok and self.fail_fast:
                break

    def start(self, programs: Optional[Sequence[str]] = None) -> threading.Thread:
        """Run in a background thread; `completed` is set when it ends."""
        self._thread = threading.Thread(target=self._run_in_thread, args=(programs,), name="benchbed-run", daemon=True)
        self._thread.start()
        return self._thread

    def _run_in_thread(self, programs: Optional[Sequence[str]]) -> None:
        try:
            self.run(programs)
        except Exception as e:
            self.error = e
            logger.exception("Run aborted: %s", e)
        finally:
            self.completed.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self.completed.wait(timeout)

    def cancel(self) -> bool:
        """Request shutdown. Returns True if this call set the flag."""
        was_set = self.shutdown.shutdown()
        if not was_set:
            logger.warning("Shutdown requested", extra={"event": "cancel"})
        return not was_set
