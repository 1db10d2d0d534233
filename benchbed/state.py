"""
ProgramState - The scope stack and path resolution.

The state owns a LIFO stack of scopes (VarNameId -> Object). Every read goes
through path resolution, which follows Refs until it reaches a concrete
value, so a Ref is never handed to a consumer.

Resolution of a VarFieldId:
1. Look `var` up from the innermost scope outward
2. Apply `idx` (list position, or element whose base matches a string key)
3. Project through `field` (struct property), recursively
"""

import logging
from typing import Optional

from .errors import (
    InvalidIndexError,
    MissingFieldError,
    MissingVariableError,
    NotAListError,
    NotAStructError,
)
from .schemas import Counter, Object, Ref, Struct, VarFieldId, VarNameId, VarNames

logger = logging.getLogger(__name__)

# Upper bound on Ref chains; a longer chain can only be a cycle
MAX_REF_DEPTH = 64


class ProgramState:
    """
    Mutable interpreter state for one bed.

    Popped scopes are cleared and parked on a free list so that loop bodies
    do not allocate a new dict on every iteration. A pushed scope is always
    empty.
    """

    def __init__(self, names: Optional[VarNames] = None):
        self.names = names if names is not None else VarNames()
        self.scopes: list[dict[VarNameId, Object]] = []
        self._scope_cache: list[dict[VarNameId, Object]] = []

    # -------------------------------------------------------------------------
    # Scope stack
    # -------------------------------------------------------------------------

    @property
    def depth(self) -> int:
        return len(self.scopes)

    def new_scope(self) -> int:
        """Push an empty scope and return its index."""
        scope = self._scope_cache.pop() if self._scope_cache else {}
        self.scopes.append(scope)
        return len(self.scopes) - 1

    def pop_scope(self) -> None:
        if not self.scopes:
            return
        scope = self.scopes.pop()
        scope.clear()
        self._scope_cache.append(scope)

    def truncate(self, depth: int) -> None:
        """Pop scopes until at most `depth` remain."""
        while len(self.scopes) > depth:
            self.pop_scope()

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def _name(self, var: VarNameId) -> str:
        return self.names.name_of(var)

    def lookup(self, var: VarNameId) -> tuple[int, Object]:
        """
        Find the innermost binding of var.

        Returns:
            (owning scope index, bound object)

        Raises:
            MissingVariableError: If no visible scope binds var
        """
        for idx in range(len(self.scopes) - 1, -1, -1):
            scope = self.scopes[idx]
            if var in scope:
                return idx, scope[var]
        raise MissingVariableError(self._name(var))

    def binding(self, scope: int, var: VarNameId) -> Object:
        if 0 <= scope < len(self.scopes):
            value = self.scopes[scope].get(var)
            if value is not None:
                return value
        raise MissingVariableError(self._name(var))

    def deref(self, value: Object, _depth: int = 0) -> Object:
        """Follow a Ref chain to a concrete value."""
        while isinstance(value, Ref):
            if _depth >= MAX_REF_DEPTH:
                raise InvalidIndexError("reference chain too deep")
            _depth += 1
            target = self.deref(self.binding(value.scope, value.target), _depth)
            value = self._select(target, value.offset)
        return value

    def _select(self, value: Object, offset: int) -> Object:
        """Element `offset` of a concrete value."""
        if isinstance(value, list):
            if 0 <= offset < len(value):
                return value[offset]
            raise InvalidIndexError(f"index {offset} out of range for list of {len(value)}")
        if isinstance(value, Counter):
            if 0 <= offset < value.length:
                return Counter(value.start, value.end, offset)
            raise InvalidIndexError(f"index {offset} out of range for counter of {value.length}")
        if offset == 0:
            return value
        raise InvalidIndexError(f"index {offset} on a single value")

    # -------------------------------------------------------------------------
    # Path resolution
    # -------------------------------------------------------------------------

    def get_object(self, path: VarFieldId) -> Object:
        """Resolve a compiled path to a concrete (never Ref) object."""
        _, value = self.lookup(path.var)
        return self._project(self.deref(value), path)

    def _project(self, value: Object, path: VarFieldId) -> Object:
        if path.idx is not None:
            value = self._index(value, path.idx)

        if path.field is not None:
            if not isinstance(value, Struct):
                raise NotAStructError(
                    f"cannot read field `{self._name(path.field.var)}` of a non-struct value"
                )
            prop = value.properties.get(path.field.var)
            if prop is None:
                raise MissingFieldError(self._name(path.field.var))
            return self._project(self.deref(prop), path.field)

        return value

    def _index(self, value: Object, idx) -> Object:
        if not isinstance(value, list):
            raise NotAListError()

        if isinstance(idx, VarFieldId):
            key = self.get_string(idx)
            try:
                position = int(key)
            except ValueError:
                for item in value:
                    item = self.deref(item)
                    if isinstance(item, Struct) and item.base == key:
                        return item
                raise InvalidIndexError(f"no element named `{key}`")
        else:
            position = idx

        if 0 <= position < len(value):
            return self.deref(value[position])
        raise InvalidIndexError(f"index {position} out of range for list of {len(value)}")

    def get_struct(self, path: VarFieldId) -> Struct:
        value = self.get_object(path)
        if not isinstance(value, Struct):
            raise NotAStructError(f"`{path.describe(self.names)}` is not a struct")
        return value

    def get_string(self, path: VarFieldId) -> str:
        """String form of a path: a struct's base, or a counter's value."""
        return self.object_string(self.get_object(path))

    def object_string(self, value: Object) -> str:
        value = self.deref(value)
        if isinstance(value, Struct):
            return value.base
        if isinstance(value, Counter):
            return str(value.value)
        raise NotAStructError("a list has no string value")

    # -------------------------------------------------------------------------
    # Mutation
    # -------------------------------------------------------------------------

    def insert_var(self, var: VarNameId, value: Object, scope: Optional[int] = None) -> None:
        """Bind var in `scope` (default innermost), growing the stack if needed."""
        if scope is None:
            if not self.scopes:
                self.new_scope()
            scope = len(self.scopes) - 1
        while len(self.scopes) <= scope:
            self.new_scope()
        self.scopes[scope][var] = value

    def assign_var(self, var: VarNameId, value: Object, scope: Optional[int] = None) -> None:
        """Overwrite an existing binding."""
        if scope is None:
            scope, _ = self.lookup(var)
        elif not (0 <= scope < len(self.scopes)) or var not in self.scopes[scope]:
            raise MissingVariableError(self._name(var))
        self.scopes[scope][var] = value

    def push_list(self, var: VarNameId, value: Object) -> None:
        _, target = self.lookup(var)
        target = self.deref(target)
        if not isinstance(target, list):
            raise NotAListError(f"`{self._name(var)}` is not a list")
        target.append(value)

    def new_ref(self, var: VarNameId, offset: int = 0) -> Ref:
        """A Ref to the innermost binding of var."""
        scope, _ = self.lookup(var)
        return Ref(scope, var, offset)

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def template_context(self) -> dict[str, str]:
        """
        Visible variables as strings, innermost binding winning.

        Lists are skipped, Refs are followed.
        """
        context: dict[str, str] = {}
        for scope in self.scopes:
            for var, value in scope.items():
                value = self.deref(value)
                name = self._name(var)
                if isinstance(value, list):
                    context.pop(name, None)
                    continue
                context[name] = self.object_string(value)
        return context

    def __repr__(self) -> str:
        return f"ProgramState(depth={len(self.scopes)}, names={len(self.names)})"
