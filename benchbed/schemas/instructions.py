"""
Instruction set.

A Program is a flat list of these instructions, generic over the payload of
Command (the domain command type). Jump targets are absolute instruction
indexes; the loop compiler emits them as 0 and back-patches them once the
final offsets are known, so jump-carrying instructions are mutable.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, Optional, TypeVar, Union

from .names import VarFieldId, VarNameId, VarNames

if TYPE_CHECKING:
    from benchbed.expr import ObjectExpr, RangeExpr

T = TypeVar("T")


@dataclass(frozen=True)
class VariableTarget:
    """Iterate over the elements of a variable."""
    name: VarNameId

    def describe(self, names: VarNames) -> str:
        return names.name_of(self.name)


@dataclass(frozen=True)
class RangeTarget:
    """Iterate over the integers in [start, end)."""
    start: "RangeExpr"
    end: "RangeExpr"

    def describe(self, names: VarNames) -> str:
        return f"range({self.start.describe(names)}, {self.end.describe(names)})"


IterTarget = Union[VariableTarget, RangeTarget]


@dataclass(frozen=True)
class PushScope:
    def describe(self, names: VarNames) -> str:
        return "PushScope"


@dataclass(frozen=True)
class PopScope:
    def describe(self, names: VarNames) -> str:
        return "PopScope"


@dataclass(frozen=True)
class CreateVar:
    """Bind target in scope (or the innermost scope)."""
    target: VarNameId
    value: "ObjectExpr"
    scope: Optional[int] = None

    def describe(self, names: VarNames) -> str:
        where = f" @{self.scope}" if self.scope is not None else ""
        return f"CreateVar {names.name_of(self.target)}{where} = {self.value.describe(names)}"


@dataclass(frozen=True)
class AssignVar:
    """Overwrite an existing binding of target."""
    target: VarNameId
    value: "ObjectExpr"
    scope: Optional[int] = None

    def describe(self, names: VarNames) -> str:
        where = f" @{self.scope}" if self.scope is not None else ""
        return f"AssignVar {names.name_of(self.target)}{where} = {self.value.describe(names)}"


@dataclass(frozen=True)
class PushList:
    target: VarNameId
    value: "ObjectExpr"

    def describe(self, names: VarNames) -> str:
        return f"PushList {names.name_of(self.target)} <- {self.value.describe(names)}"


@dataclass
class StartIter:
    target: IterTarget
    iter: VarNameId
    jump: int = 0

    def describe(self, names: VarNames) -> str:
        return (
            f"StartIter {names.name_of(self.iter)} in {self.target.describe(names)}"
            f" else -> {self.jump}"
        )


@dataclass
class Increment:
    target: IterTarget
    iter: VarNameId
    jump: int = 0

    def describe(self, names: VarNames) -> str:
        return (
            f"Increment {names.name_of(self.iter)} in {self.target.describe(names)}"
            f" done -> {self.jump}"
        )


@dataclass
class ConditionalJump:
    """Jump unless cond resolves to a struct whose base is exactly "false"."""
    cond: VarFieldId
    jump: int = 0

    def describe(self, names: VarNames) -> str:
        return f"ConditionalJump {self.cond.describe(names)} != false -> {self.jump}"


@dataclass
class Goto:
    target: int

    def describe(self, names: VarNames) -> str:
        return f"Goto {self.target}"


@dataclass(frozen=True)
class Command(Generic[T]):
    """Hand the payload to the domain executor."""
    command: T

    def describe(self, names: VarNames) -> str:
        describe = getattr(self.command, "describe", None)
        if describe is not None:
            return f"Command {describe(names)}"
        return f"Command {self.command!r}"


Instruction = Union[
    PushScope,
    PopScope,
    CreateVar,
    AssignVar,
    PushList,
    StartIter,
    Increment,
    ConditionalJump,
    Goto,
    Command,
]
