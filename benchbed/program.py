"""
Program - The instruction interpreter.

A Program is a flat list of instructions. Program.run walks it with a
program counter, dispatching Command payloads to an Executable and handling
scopes, variables, iteration and jumps itself.

Execution contract:
1. A scope is pushed for the run and popped on exit (unless keep_scope)
2. The shutdown flag is checked before every instruction; when set, the
   executable's shutdown() is called and the run returns without finish()
3. Resolution errors abort the run as ProgramError(instruction index)
4. On normal completion the executable's finish() is called
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Generic, Optional, Sequence, TypeVar

from .errors import NotAReferenceError, ProgramError, VariableAccessError
from .schemas import (
    AssignVar,
    Command,
    ConditionalJump,
    Counter,
    CreateVar,
    Goto,
    Increment,
    Instruction,
    IterTarget,
    Object,
    PopScope,
    PushList,
    PushScope,
    RangeTarget,
    Ref,
    StartIter,
    VarNameId,
    VarNames,
    object_length,
)
from .state import ProgramState

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Shutdown:
    """
    Shared cancellation flag.

    Setting it is idempotent. shutdown() reports whether it was already set,
    so exactly one caller observes the transition.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()

    def shutdown(self) -> bool:
        """Set the flag. Returns the previous value."""
        with self._lock:
            was_set = self._event.is_set()
            self._event.set()
        return was_set

    def is_shutdown(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to timeout seconds, waking early on shutdown."""
        return self._event.wait(timeout)


class Executable(ABC, Generic[T]):
    """Domain executor driven by Program.run."""

    @abstractmethod
    def execute(self, command: T, state: ProgramState, shutdown: Shutdown) -> None:
        """Run one command."""

    @abstractmethod
    def finish(self, state: ProgramState, shutdown: Shutdown) -> None:
        """Called once after the last instruction of a completed run."""

    @abstractmethod
    def shutdown(self) -> None:
        """Stop everything in flight. Idempotent, never blocks indefinitely."""

    def set_iter(self, iter_var: VarNameId, index: int, value: Object, state: ProgramState) -> None:
        """Progress hook, called when a loop variable takes a new position."""


class Program(Generic[T]):
    """
    A compiled instruction list.

    Attributes:
        instructions: The flat instruction buffer
        origins: Optional source location for each instruction
    """

    def __init__(self, instructions: Sequence[Instruction], origins: Optional[Sequence[Optional[str]]] = None):
        self.instructions = list(instructions)
        self.origins = list(origins) if origins is not None else []

    def __len__(self) -> int:
        return len(self.instructions)

    def origin(self, idx: int) -> Optional[str]:
        if 0 <= idx < len(self.origins):
            return self.origins[idx]
        return None

    def run(
        self,
        executable: Executable[T],
        state: ProgramState,
        shutdown: Shutdown,
        keep_scope: bool = False,
    ) -> None:
        """
        Execute the program.

        Args:
            executable: Receives Command payloads and lifecycle calls
            state: Interpreter state, shared across programs of a bed
            shutdown: Cancellation flag, checked before every instruction
            keep_scope: Leave the run's scope on the stack (used to seed globals)

        Raises:
            ProgramError: If an instruction fails to resolve or evaluate
        """
        depth = state.depth
        state.new_scope()
        pc = 0
        try:
            while pc < len(self.instructions):
                if shutdown.is_shutdown():
                    logger.debug("Shutdown requested at instruction %d", pc)
                    executable.shutdown()
                    return
                try:
                    pc = self._step(pc, executable, state, shutdown)
                except VariableAccessError as e:
                    raise ProgramError(pc, e, self.origin(pc)) from e
            executable.finish(state, shutdown)
        finally:
            if not keep_scope:
                state.truncate(depth)

    def _step(self, pc: int, executable: Executable[T], state: ProgramState, shutdown: Shutdown) -> int:
        """Execute instruction pc and return the next program counter."""
        instruction = self.instructions[pc]

        if isinstance(instruction, Command):
            executable.execute(instruction.command, state, shutdown)
        elif isinstance(instruction, PushScope):
            state.new_scope()
        elif isinstance(instruction, PopScope):
            state.pop_scope()
        elif isinstance(instruction, CreateVar):
            state.insert_var(instruction.target, instruction.value.evaluate(state), instruction.scope)
        elif isinstance(instruction, AssignVar):
            state.assign_var(instruction.target, instruction.value.evaluate(state), instruction.scope)
        elif isinstance(instruction, PushList):
            state.push_list(instruction.target, instruction.value.evaluate(state))
        elif isinstance(instruction, StartIter):
            value = self._start_iter(instruction.target, state)
            if value is None:
                return instruction.jump
            state.insert_var(instruction.iter, value)
            executable.set_iter(instruction.iter, 0, self._iterated(value, state), state)
        elif isinstance(instruction, Increment):
            position = self._increment(instruction.target, instruction.iter, state)
            if position is None:
                return instruction.jump
            _, cursor = state.lookup(instruction.iter)
            executable.set_iter(instruction.iter, position, self._iterated(cursor, state), state)
        elif isinstance(instruction, ConditionalJump):
            cond = state.get_struct(instruction.cond)
            if cond.base != "false":
                return instruction.jump
        elif isinstance(instruction, Goto):
            return instruction.target
        else:
            raise TypeError(f"Unknown instruction: {instruction!r}")

        return pc + 1

    @staticmethod
    def _start_iter(target: IterTarget, state: ProgramState) -> Optional[Object]:
        """The first iteration value, or None when there is nothing to iterate."""
        if isinstance(target, RangeTarget):
            counter = Counter(target.start.evaluate(state), target.end.evaluate(state))
            return counter if counter.length > 0 else None

        scope, value = state.lookup(target.name)
        if object_length(state.deref(value)) == 0:
            return None
        return Ref(scope, target.name, 0)

    @staticmethod
    def _increment(target: IterTarget, iter_var: VarNameId, state: ProgramState) -> Optional[int]:
        """Advance the cursor. Returns the new position, or None once exhausted."""
        _, cursor = state.lookup(iter_var)

        if isinstance(cursor, Counter):
            cursor.offset += 1
            return cursor.offset if cursor.offset < cursor.length else None

        if not isinstance(cursor, Ref):
            raise NotAReferenceError(f"loop variable `{state.names.name_of(iter_var)}` is not a reference")

        iterated = state.deref(state.binding(cursor.scope, cursor.target))
        cursor.offset += 1
        return cursor.offset if cursor.offset < object_length(iterated) else None

    @staticmethod
    def _iterated(cursor: Object, state: ProgramState) -> Object:
        """The object a loop cursor walks over."""
        if isinstance(cursor, Ref):
            return state.deref(state.binding(cursor.scope, cursor.target))
        return cursor

    def listing(self, names: VarNames) -> str:
        """Numbered instruction listing, with source locations when known."""
        width = len(str(max(len(self.instructions) - 1, 0)))
        lines = []
        for idx, instruction in enumerate(self.instructions):
            line = f"{idx:>{width}}  {instruction.describe(names)}"
            origin = self.origin(idx)
            if origin:
                line = f"{line}  ; {origin}"
            lines.append(line)
        return "\n".join(lines)

    def __str__(self) -> str:
        return self.listing(VarNames())

    def __repr__(self) -> str:
        return f"Program(instructions={len(self.instructions)})"
