"""
Expressions evaluated against a ProgramState.

- StringExpr: literal text interleaved with path interpolations
- RangeExpr: an integer bound, literal or parsed from a StringExpr
- ObjectExpr: builds a fresh Object (struct, list, counter, or clone)
"""

import copy
from dataclasses import dataclass, field
from typing import Union

from .errors import InvalidIndexError
from .schemas import Counter, Object, Struct, VarFieldId, VarNameId, VarNames
from .state import ProgramState


@dataclass(frozen=True)
class StringExpr:
    """Concatenation of literal text and resolved paths."""
    parts: tuple[Union[str, VarFieldId], ...] = ()

    @classmethod
    def literal(cls, text: str) -> "StringExpr":
        return cls((text,))

    def evaluate(self, state: ProgramState) -> str:
        out = []
        for part in self.parts:
            if isinstance(part, VarFieldId):
                out.append(state.get_string(part))
            else:
                out.append(part)
        return "".join(out)

    def describe(self, names: VarNames) -> str:
        out = []
        for part in self.parts:
            if isinstance(part, VarFieldId):
                out.append("${" + part.describe(names) + "}")
            else:
                out.append(part.replace("$", "$$"))
        return '"' + "".join(out) + '"'


@dataclass(frozen=True)
class RangeExpr:
    value: Union[int, StringExpr]

    def evaluate(self, state: ProgramState) -> int:
        if isinstance(self.value, int):
            return self.value
        text = self.value.evaluate(state)
        try:
            return int(text.strip())
        except ValueError:
            raise InvalidIndexError(f"range bound `{text}` is not an integer")

    def describe(self, names: VarNames) -> str:
        if isinstance(self.value, int):
            return str(self.value)
        return self.value.describe(names)


@dataclass(frozen=True)
class StructExpr:
    base: StringExpr
    properties: tuple[tuple[VarNameId, "ObjectExpr"], ...] = ()

    def evaluate(self, state: ProgramState) -> Object:
        return Struct(
            self.base.evaluate(state),
            {name: value.evaluate(state) for name, value in self.properties},
        )

    def describe(self, names: VarNames) -> str:
        if not self.properties:
            return self.base.describe(names)
        props = ", ".join(
            f"{names.name_of(name)}: {value.describe(names)}" for name, value in self.properties
        )
        return f"{self.base.describe(names)} {{{props}}}"


@dataclass(frozen=True)
class ListExpr:
    items: tuple["ObjectExpr", ...] = ()

    def evaluate(self, state: ProgramState) -> Object:
        return [item.evaluate(state) for item in self.items]

    def describe(self, names: VarNames) -> str:
        return "[" + ", ".join(item.describe(names) for item in self.items) + "]"


@dataclass(frozen=True)
class CounterExpr:
    start: RangeExpr
    end: RangeExpr

    def evaluate(self, state: ProgramState) -> Object:
        return Counter(self.start.evaluate(state), self.end.evaluate(state))

    def describe(self, names: VarNames) -> str:
        return f"range({self.start.describe(names)}, {self.end.describe(names)})"


@dataclass(frozen=True)
class CloneExpr:
    """Deep copy of the object a path resolves to."""
    path: VarFieldId

    def evaluate(self, state: ProgramState) -> Object:
        return copy.deepcopy(state.get_object(self.path))

    def describe(self, names: VarNames) -> str:
        return "ref " + self.path.describe(names)


ObjectExpr = Union[StructExpr, ListExpr, CounterExpr, CloneExpr]
