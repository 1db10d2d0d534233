"""
Runtime values.

Object is a tagged union of four shapes:

- Counter: a half-open integer range cursor
- Ref: a non-owning alias into another scope's binding (loop variables)
- Struct: a string base plus named sub-objects
- list: an ordered, position-indexed sequence of Objects

Refs are plain (scope index, name id, offset) triples resolved through
ProgramState, never pointers. Resolution fails with a MissingVariableError
when the target binding no longer exists.
"""

from dataclasses import dataclass, field
from typing import Union

from .names import VarNameId


@dataclass
class Counter:
    """
    Half-open integer range cursor.

    Attributes:
        start: First value of the range
        end: One past the last value
        offset: Current position, relative to start
    """
    start: int
    end: int
    offset: int = 0

    @property
    def length(self) -> int:
        return max(0, self.end - self.start)

    @property
    def value(self) -> int:
        return self.start + self.offset


@dataclass
class Ref:
    """
    Alias to the binding `target` in `scopes[scope]`, optionally selecting
    element `offset` of it.
    """
    scope: int
    target: VarNameId
    offset: int = 0


@dataclass
class Struct:
    """The primary leaf value."""
    base: str
    properties: dict[VarNameId, "Object"] = field(default_factory=dict)


Object = Union[Counter, Ref, Struct, list]


def object_length(value: "Object") -> int:
    """Number of iteration steps over a concrete (non-Ref) object."""
    if isinstance(value, list):
        return len(value)
    if isinstance(value, Counter):
        return value.length
    return 1
