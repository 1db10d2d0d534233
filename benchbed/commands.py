"""
Supervisor commands.

Command payloads carried by Program instructions for the process
supervisor:

- LimitSpawn(n): at most n children running at once
- Sleep(ms): cancellation-aware pause
- Spawn: evaluate and start a child process
- WaitAll(timeout_ms, polls): wait for every child, killing leftovers on timeout
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterator, Optional, Union

from .errors import NotAStructError
from .expr import StringExpr
from .process import OutputMap, OutputMode, ProcessInfo
from .schemas import Counter, Struct, VarFieldId, VarNames
from .state import ProgramState


@dataclass(frozen=True)
class OutputTarget:
    """Unevaluated output routing: mode plus a path expression."""
    mode: OutputMode = OutputMode.PRINT
    path: Optional[StringExpr] = None

    def evaluate(self, state: ProgramState) -> OutputMap:
        if self.mode == OutputMode.PRINT or self.path is None:
            return OutputMap()
        return OutputMap(self.mode, Path(self.path.evaluate(state)))

    def describe(self, names: VarNames) -> str:
        if self.mode == OutputMode.PRINT or self.path is None:
            return "print"
        return f"{self.mode.value} {self.path.describe(names)}"


@dataclass(frozen=True)
class StringArg:
    """A single argument."""
    value: StringExpr

    def evaluate(self, state: ProgramState) -> Iterator[str]:
        yield self.value.evaluate(state)

    def describe(self, names: VarNames) -> str:
        return self.value.describe(names)


@dataclass(frozen=True)
class SplatArg:
    """
    One argument per element of a variable.

    A list yields each element's base, a counter each of its values and a
    struct its base.
    """
    path: VarFieldId

    def evaluate(self, state: ProgramState) -> Iterator[str]:
        value = state.get_object(self.path)
        if isinstance(value, Counter):
            for offset in range(value.length):
                yield str(value.start + offset)
        elif isinstance(value, Struct):
            yield value.base
        else:
            for item in value:
                item = state.deref(item)
                if not isinstance(item, Struct):
                    raise NotAStructError(
                        f"cannot splat `{self.path.describe(state.names)}`: element is not a struct"
                    )
                yield item.base

    def describe(self, names: VarNames) -> str:
        return "*" + self.path.describe(names)


Arg = Union[StringArg, SplatArg]


@dataclass(frozen=True)
class Spawn:
    command: StringExpr
    args: tuple[Arg, ...] = ()
    stdout: OutputTarget = field(default_factory=OutputTarget)
    stderr: OutputTarget = field(default_factory=OutputTarget)
    working_dir: Optional[StringExpr] = None

    def evaluate(self, state: ProgramState) -> ProcessInfo:
        """
        Resolve everything needed to start the child.

        Raises:
            VariableAccessError: If any part fails to resolve
        """
        args: list[str] = []
        for arg in self.args:
            args.extend(arg.evaluate(state))

        working_dir = None
        if self.working_dir is not None:
            working_dir = Path(self.working_dir.evaluate(state))

        return ProcessInfo(
            command=self.command.evaluate(state),
            args=args,
            stdout=self.stdout.evaluate(state),
            stderr=self.stderr.evaluate(state),
            working_dir=working_dir,
        )

    def describe(self, names: VarNames) -> str:
        parts = [self.command.describe(names)] + [arg.describe(names) for arg in self.args]
        text = "spawn " + " ".join(parts)
        if self.stdout.mode != OutputMode.PRINT:
            text += f" stdout={self.stdout.describe(names)}"
        if self.stderr.mode != OutputMode.PRINT:
            text += f" stderr={self.stderr.describe(names)}"
        if self.working_dir is not None:
            text += f" cwd={self.working_dir.describe(names)}"
        return text


@dataclass(frozen=True)
class LimitSpawn:
    limit: int

    def describe(self, names: VarNames) -> str:
        return f"limit {self.limit}"


@dataclass(frozen=True)
class Sleep:
    millis: int

    def describe(self, names: VarNames) -> str:
        return f"sleep {self.millis}ms"


@dataclass(frozen=True)
class WaitAll:
    """
    Wait for every running child.

    Attributes:
        timeout: Give up after this many milliseconds and kill what is left
        polls: Poll at most this many times within the timeout
    """
    timeout: Optional[int] = None
    polls: Optional[int] = None

    def describe(self, names: VarNames) -> str:
        if self.timeout is None:
            return "wait"
        if self.polls is None:
            return f"wait {self.timeout}ms"
        return f"wait {self.timeout}ms/{self.polls}"


SupervisorCommand = Union[LimitSpawn, Sleep, Spawn, WaitAll]
