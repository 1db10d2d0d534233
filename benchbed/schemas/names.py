"""
Name interning and compiled path expressions.

Every source-level variable and field name is interned into a VarNameId, a
small integer that stays stable for the lifetime of a compiled bed. Ids are
never reused.

A VarFieldId is a compiled path: a variable, optionally indexed into a list,
optionally projected through a chain of struct fields:

    hosts            VarFieldId(var=hosts)
    hosts[0]         VarFieldId(var=hosts, idx=0)
    hosts[pick]      VarFieldId(var=hosts, idx=VarFieldId(var=pick))
    server.ports[1]  VarFieldId(var=server, field=VarFieldId(var=ports, idx=1))
"""

from dataclasses import dataclass
from typing import Optional, Union

# VarNameId type alias for documentation
VarNameId = int


class VarNames:
    """Insertion-ordered unique set of names."""

    def __init__(self):
        self._ids: dict[str, VarNameId] = {}
        self._names: list[str] = []

    def intern(self, name: str) -> VarNameId:
        """Return the id for name, assigning the next free id on first use."""
        existing = self._ids.get(name)
        if existing is not None:
            return existing

        new_id = len(self._names)
        self._ids[name] = new_id
        self._names.append(name)
        return new_id

    def evaluate(self, var_id: VarNameId) -> Optional[str]:
        if 0 <= var_id < len(self._names):
            return self._names[var_id]
        return None

    def name_of(self, var_id: VarNameId) -> str:
        """Name for display; unknown ids render as `#<id>`."""
        name = self.evaluate(var_id)
        return name if name is not None else f"#{var_id}"

    def __contains__(self, name: str) -> bool:
        return name in self._ids

    def __len__(self) -> int:
        return len(self._names)

    def __repr__(self) -> str:
        return f"VarNames({self._names!r})"


@dataclass(frozen=True)
class VarFieldId:
    """
    A compiled variable path.

    Attributes:
        var: The variable (or, inside a field chain, property) name
        idx: Optional list index, either a literal or another path
        field: Optional projection through a struct property
    """
    var: VarNameId
    idx: Optional[Union[int, "VarFieldId"]] = None
    field: Optional["VarFieldId"] = None

    def describe(self, names: VarNames) -> str:
        text = names.name_of(self.var)
        if self.idx is not None:
            if isinstance(self.idx, VarFieldId):
                text += f"[{self.idx.describe(names)}]"
            else:
                text += f"[{self.idx}]"
        if self.field is not None:
            text += f".{self.field.describe(names)}"
        return text
