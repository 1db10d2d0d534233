"""
Bed definition loader.

A bed is a YAML document describing variables, template programs and
command programs. The loader turns it into statement trees and compiles
them with benchbed.compiler.

Top-level keys:

    output: build            # template output directory (relative to the bed)
    includes: [templates]    # template search path (relative to the bed)
    globals: [...]           # set/assign/push statements seeding the root scope
    templates: {name: [...]} # named template programs
    commands: [...]          # the unnamed command program, or
    commands: {name: [...]}  # named command programs

Strings interpolate variables with `${path}`; `$$` is a literal `$`. A path
is `name`, `name[3]`, `name[other.path]` or `name.field...`.

Values:

    scalar                    struct with that base (true/false -> "true"/"false")
    [a, b]                    list
    {range: [start, end]}     counter over [start, end)
    {ref: path}               copy of the value at path
    {base: s, prop: value}    struct with properties

Statements (every program):

    set: {name: value}               bind in the current scope
    assign: {name: value}            overwrite an existing binding
    push: {name: value}              append to a list
    for: name | [names]              loop; with a list of names, `in` is a
    in: target | [targets]           list holding one target per name
    mode: combinations | group
    do: [...]
    if: path | [paths]               the block runs only when every guard
    do: [...]                        resolves to "false"

A loop target is a variable path, `{range: [s, e]}` or a literal list. A
path with an index or field, and a literal list, are bound to a hidden
variable named after the statement before the loop starts.

Command programs add `limit: n`, `sleep: ms`, `wait` (`null`, `ms`, or
`{timeout: ms, polls: n}`) and `spawn`. Template programs add `build` and
`yield`.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union

import yaml

from .commands import LimitSpawn, OutputTarget, Sleep, Spawn, SplatArg, StringArg, WaitAll
from .compiler import (
    ConditionalNode,
    ForLoop,
    ForLoopType,
    InstructionNode,
    LoopNode,
    Node,
    compile_program,
)
from .errors import BedLoadError
from .expr import CloneExpr, CounterExpr, ListExpr, ObjectExpr, RangeExpr, StringExpr, StructExpr
from .process import OutputMode
from .program import Program
from .schemas import (
    AssignVar,
    Command,
    CreateVar,
    IterTarget,
    PushList,
    RangeTarget,
    VarFieldId,
    VariableTarget,
    VarNames,
)
from .templates import BuildAssign, BuildObjectExpr, TemplateBuild, Yield

logger = logging.getLogger(__name__)

COMMAND_PROGRAM = "command"
TEMPLATE_PROGRAM = "template"
GLOBALS_PROGRAM = "globals"

_COMMON_KEYS = ("set", "assign", "push", "for", "if")
_PROGRAM_KEYS = {
    COMMAND_PROGRAM: _COMMON_KEYS + ("limit", "sleep", "spawn", "wait"),
    TEMPLATE_PROGRAM: _COMMON_KEYS + ("build", "yield"),
    GLOBALS_PROGRAM: ("set", "assign", "push"),
}
_BLOCK_KEYS = {"for": {"for", "in", "mode", "do"}, "if": {"if", "do"}}


# =============================================================================
# Paths and strings
# =============================================================================


def _is_ident_char(char: str, first: bool) -> bool:
    if char.isalpha() or char == "_":
        return True
    return not first and (char.isdigit() or char == "-")


class _PathParser:
    """Recursive-descent parser for variable paths."""

    def __init__(self, text: str, names: VarNames, location: str):
        self.text = text
        self.names = names
        self.location = location
        self.pos = 0

    def error(self, message: str) -> BedLoadError:
        return BedLoadError(self.location, f"{message} in path `{self.text}` at column {self.pos}")

    def peek(self) -> str:
        return self.text[self.pos] if self.pos < len(self.text) else ""

    def parse(self) -> VarFieldId:
        path = self.path()
        if self.pos != len(self.text):
            raise self.error(f"unexpected `{self.peek()}`")
        return path

    def ident(self) -> str:
        start = self.pos
        while self.pos < len(self.text) and _is_ident_char(self.text[self.pos], self.pos == start):
            self.pos += 1
        if start == self.pos:
            raise self.error("expected a name")
        return self.text[start:self.pos]

    def path(self) -> VarFieldId:
        var = self.names.intern(self.ident())

        idx: Optional[Union[int, VarFieldId]] = None
        if self.peek() == "[":
            self.pos += 1
            start = self.pos
            while self.peek().isdigit():
                self.pos += 1
            if self.pos > start:
                idx = int(self.text[start:self.pos])
            else:
                idx = self.path()
            if self.peek() != "]":
                raise self.error("expected `]`")
            self.pos += 1

        field_path = None
        if self.peek() == ".":
            self.pos += 1
            field_path = self.path()

        return VarFieldId(var, idx, field_path)


def parse_path(text: str, names: VarNames, location: str = "<path>") -> VarFieldId:
    """Parse `name[idx].field...` into a VarFieldId."""
    return _PathParser(str(text).strip(), names, location).parse()


def parse_string(text: str, names: VarNames, location: str = "<string>") -> StringExpr:
    """Parse a string with `${path}` interpolations."""
    parts: list[Union[str, VarFieldId]] = []
    literal: list[str] = []
    pos = 0

    while pos < len(text):
        char = text[pos]
        if char == "$" and text.startswith("$$", pos):
            literal.append("$")
            pos += 2
        elif char == "$" and text.startswith("${", pos):
            end = text.find("}", pos + 2)
            if end < 0:
                raise BedLoadError(location, f"unterminated `${{` in `{text}`")
            if literal:
                parts.append("".join(literal))
                literal = []
            parts.append(parse_path(text[pos + 2:end], names, location))
            pos = end + 1
        else:
            literal.append(char)
            pos += 1

    if literal:
        parts.append("".join(literal))
    return StringExpr(tuple(parts))


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


# =============================================================================
# Values
# =============================================================================


def _range_expr(value: Any, names: VarNames, location: str) -> RangeExpr:
    if isinstance(value, bool):
        raise BedLoadError(location, "range bound must be an integer")
    if isinstance(value, int):
        return RangeExpr(value)
    if isinstance(value, str):
        return RangeExpr(parse_string(value, names, location))
    raise BedLoadError(location, f"range bound must be an integer or string, got {type(value).__name__}")


def _range_bounds(data: Any, names: VarNames, location: str) -> tuple[RangeExpr, RangeExpr]:
    if not isinstance(data, list) or len(data) != 2:
        raise BedLoadError(location, "range needs exactly two bounds: [start, end]")
    return _range_expr(data[0], names, location), _range_expr(data[1], names, location)


def parse_object(data: Any, names: VarNames, location: str) -> ObjectExpr:
    """Parse a YAML value into an object expression."""
    if isinstance(data, list):
        return ListExpr(tuple(
            parse_object(item, names, f"{location}[{idx}]") for idx, item in enumerate(data)
        ))

    if isinstance(data, dict):
        if "range" in data:
            if len(data) != 1:
                raise BedLoadError(location, "`range` takes no other keys")
            start, end = _range_bounds(data["range"], names, location)
            return CounterExpr(start, end)
        if "ref" in data:
            if len(data) != 1:
                raise BedLoadError(location, "`ref` takes no other keys")
            return CloneExpr(parse_path(data["ref"], names, location))
        if "base" in data:
            base = parse_string(_scalar_text(data["base"]), names, f"{location}.base")
            properties = tuple(
                (names.intern(str(key)), parse_object(value, names, f"{location}.{key}"))
                for key, value in data.items()
                if key != "base"
            )
            return StructExpr(base, properties)
        raise BedLoadError(location, "a mapping value needs `range`, `ref` or `base`")

    return StructExpr(parse_string(_scalar_text(data), names, location))


def _template_build(data: Any, names: VarNames, location: str) -> TemplateBuild:
    if not isinstance(data, list) or len(data) != 2:
        raise BedLoadError(location, "build needs [template, output_name]")
    return TemplateBuild(
        parse_string(_scalar_text(data[0]), names, location),
        parse_string(_scalar_text(data[1]), names, location),
    )


def parse_build_object(data: Any, names: VarNames, location: str) -> BuildObjectExpr:
    """
    Parse a built object.

    Either a plain string, or a mapping whose base comes from `build:
    [template, output_name]` or `base: string`. Other keys are properties,
    each a value or a `{build: [...]}`.
    """
    if not isinstance(data, dict):
        return BuildObjectExpr(parse_string(_scalar_text(data), names, location))

    if ("build" in data) == ("base" in data):
        raise BedLoadError(location, "a built object needs exactly one of `build` or `base`")

    if "build" in data:
        base = _template_build(data["build"], names, f"{location}.build")
    else:
        base = parse_string(_scalar_text(data["base"]), names, f"{location}.base")

    properties = []
    for key, value in data.items():
        if key in ("build", "base"):
            continue
        prop_location = f"{location}.{key}"
        if isinstance(value, dict) and set(value) == {"build"}:
            prop = _template_build(value["build"], names, prop_location)
        else:
            prop = parse_object(value, names, prop_location)
        properties.append((names.intern(str(key)), prop))

    return BuildObjectExpr(base, tuple(properties))


# =============================================================================
# Statements
# =============================================================================


def _bindings(data: Any, location: str) -> dict:
    if not isinstance(data, dict) or not data:
        raise BedLoadError(location, "expected a mapping of name: value")
    return data


def _as_list(data: Any) -> list:
    return data if isinstance(data, list) else [data]


def _iter_target(data: Any, names: VarNames, location: str) -> tuple[Optional[IterTarget], Optional[ObjectExpr]]:
    """
    Parse a loop target.

    Returns (target, None) for a bare variable or a range, and
    (None, expr) when the value must first be bound to a hidden variable.
    """
    if isinstance(data, dict) and set(data) == {"range"}:
        start, end = _range_bounds(data["range"], names, location)
        return RangeTarget(start, end), None
    if isinstance(data, list):
        return None, parse_object(data, names, location)
    if isinstance(data, str):
        path = parse_path(data, names, location)
        if path.idx is None and path.field is None:
            return VariableTarget(path.var), None
        return None, CloneExpr(path)
    raise BedLoadError(location, "a loop target is a variable path, {range: [start, end]} or a list")


def _output_target(data: Any, names: VarNames, location: str) -> OutputTarget:
    if data is None or data == "print":
        return OutputTarget()
    if isinstance(data, dict) and len(data) == 1:
        (mode, path), = data.items()
        if mode in ("create", "append"):
            return OutputTarget(OutputMode(mode), parse_string(_scalar_text(path), names, location))
    raise BedLoadError(location, "output is `print`, {create: path} or {append: path}")


def _spawn(data: Any, names: VarNames, location: str) -> Spawn:
    if isinstance(data, str):
        return Spawn(parse_string(data, names, location))
    if not isinstance(data, dict) or "command" not in data:
        raise BedLoadError(location, "spawn needs a `command`")

    unknown = set(data) - {"command", "args", "stdout", "stderr", "cwd"}
    if unknown:
        raise BedLoadError(location, f"unknown spawn keys: {', '.join(sorted(map(str, unknown)))}")

    args = []
    for idx, arg in enumerate(_as_list(data.get("args", []))):
        arg_location = f"{location}.args[{idx}]"
        if isinstance(arg, dict):
            if set(arg) != {"splat"}:
                raise BedLoadError(arg_location, "an argument is a string or {splat: path}")
            args.append(SplatArg(parse_path(arg["splat"], names, arg_location)))
        else:
            args.append(StringArg(parse_string(_scalar_text(arg), names, arg_location)))

    working_dir = None
    if data.get("cwd") is not None:
        working_dir = parse_string(_scalar_text(data["cwd"]), names, f"{location}.cwd")

    return Spawn(
        command=parse_string(_scalar_text(data["command"]), names, f"{location}.command"),
        args=tuple(args),
        stdout=_output_target(data.get("stdout"), names, f"{location}.stdout"),
        stderr=_output_target(data.get("stderr"), names, f"{location}.stderr"),
        working_dir=working_dir,
    )


def _wait(data: Any, location: str) -> WaitAll:
    if data is None:
        return WaitAll()
    if isinstance(data, int) and not isinstance(data, bool):
        return WaitAll(timeout=data)
    if isinstance(data, dict) and set(data) <= {"timeout", "polls"}:
        timeout, polls = data.get("timeout"), data.get("polls")
        if polls is not None and (timeout is None or polls <= 0):
            raise BedLoadError(location, "`polls` needs a `timeout` and must be positive")
        return WaitAll(timeout=timeout, polls=polls)
    raise BedLoadError(location, "wait is null, a timeout in ms, or {timeout: ms, polls: n}")


def _non_negative_int(data: Any, key: str, location: str) -> int:
    if isinstance(data, bool) or not isinstance(data, int) or data < 0:
        raise BedLoadError(location, f"`{key}` needs a non-negative integer")
    return data


class _StatementParser:
    """Parses the statement list of one program into compiler nodes."""

    def __init__(self, names: VarNames, kind: str):
        self.names = names
        self.kind = kind

    def block(self, data: Any, location: str) -> list[Node]:
        if data is None:
            return []
        if not isinstance(data, list):
            raise BedLoadError(location, "expected a list of statements")
        nodes: list[Node] = []
        for idx, item in enumerate(data):
            nodes.extend(self.statement(item, f"{location}[{idx}]"))
        return nodes

    def statement(self, data: Any, location: str) -> list[Node]:
        if isinstance(data, str):
            # Bare keyword, e.g. `- wait`
            data = {data: None}
        if not isinstance(data, dict) or not data:
            raise BedLoadError(location, "a statement is a mapping")

        allowed = _PROGRAM_KEYS[self.kind]
        keys = [key for key in data if key in allowed]
        if not keys:
            raise BedLoadError(
                location,
                f"unknown statement `{next(iter(data))}` in a {self.kind} program",
            )
        key = keys[0]

        extra = set(data) - _BLOCK_KEYS.get(key, {key})
        if extra:
            raise BedLoadError(location, f"unexpected keys for `{key}`: {', '.join(sorted(map(str, extra)))}")

        handler = getattr(self, f"_{key}")
        return handler(data, location)

    def _emit(self, instruction, location: str) -> list[Node]:
        return [InstructionNode(instruction, location)]

    def _bind(self, data: dict, key: str, location: str, make) -> list[Node]:
        nodes: list[Node] = []
        for name, value in _bindings(data[key], f"{location}.{key}").items():
            value_location = f"{location}.{key}.{name}"
            target = self.names.intern(str(name))
            value_expr = parse_object(value, self.names, value_location)
            nodes.append(InstructionNode(make(target, value_expr), value_location))
        return nodes

    def _set(self, data: dict, location: str) -> list[Node]:
        return self._bind(data, "set", location, CreateVar)

    def _assign(self, data: dict, location: str) -> list[Node]:
        return self._bind(data, "assign", location, AssignVar)

    def _push(self, data: dict, location: str) -> list[Node]:
        return self._bind(data, "push", location, PushList)

    def _for(self, data: dict, location: str) -> list[Node]:
        if isinstance(data["for"], list):
            iters = data["for"]
            targets = data.get("in")
            if not iters or not isinstance(targets, list) or len(iters) != len(targets):
                raise BedLoadError(location, "`for` needs one `in` target per loop variable")
        else:
            iters = [data["for"]]
            targets = [data.get("in")]

        mode = data.get("mode", ForLoopType.COMBINATIONS.value)
        try:
            ty = ForLoopType(mode)
        except ValueError:
            raise BedLoadError(location, f"unknown loop mode `{mode}` (group or combinations)")

        nodes: list[Node] = []
        loop_targets: list[IterTarget] = []
        for idx, data_target in enumerate(targets):
            target_location = f"{location}.in" if len(targets) == 1 else f"{location}.in[{idx}]"
            target, expr = _iter_target(data_target, self.names, target_location)
            if expr is not None:
                hidden = self.names.intern(target_location)
                nodes.append(InstructionNode(CreateVar(hidden, expr), target_location))
                target = VariableTarget(hidden)
            loop_targets.append(target)

        loop = ForLoop(ty, [self.names.intern(str(name).strip()) for name in iters], loop_targets)
        body = self.block(data.get("do"), f"{location}.do")
        nodes.append(LoopNode(loop, body, location))
        return nodes

    def _if(self, data: dict, location: str) -> list[Node]:
        conditions = [
            parse_path(cond, self.names, f"{location}.if") for cond in _as_list(data["if"])
        ]
        body = self.block(data.get("do"), f"{location}.do")
        return [ConditionalNode(conditions, body, location)]

    def _limit(self, data: dict, location: str) -> list[Node]:
        return self._emit(Command(LimitSpawn(_non_negative_int(data["limit"], "limit", location))), location)

    def _sleep(self, data: dict, location: str) -> list[Node]:
        return self._emit(Command(Sleep(_non_negative_int(data["sleep"], "sleep", location))), location)

    def _wait(self, data: dict, location: str) -> list[Node]:
        return self._emit(Command(_wait(data["wait"], location)), location)

    def _spawn(self, data: dict, location: str) -> list[Node]:
        return self._emit(Command(_spawn(data["spawn"], self.names, f"{location}.spawn")), location)

    def _build(self, data: dict, location: str) -> list[Node]:
        nodes: list[Node] = []
        for name, value in _bindings(data["build"], f"{location}.build").items():
            value_location = f"{location}.build.{name}"
            expr = parse_build_object(value, self.names, value_location)
            nodes.append(InstructionNode(Command(BuildAssign(self.names.intern(str(name)), expr)), value_location))
        return nodes

    def _yield(self, data: dict, location: str) -> list[Node]:
        nodes: list[Node] = []
        for name, value in _bindings(data["yield"], f"{location}.yield").items():
            value_location = f"{location}.yield.{name}"
            if isinstance(value, dict) and "build" in value:
                expr = parse_build_object(value, self.names, value_location)
            else:
                expr = parse_object(value, self.names, value_location)
            nodes.append(InstructionNode(Command(Yield(self.names.intern(str(name)), expr)), value_location))
        return nodes


# =============================================================================
# Beds
# =============================================================================


@dataclass
class BedDefinition:
    """
    A parsed bed.

    Attributes:
        names: Interned variable and field names
        output: Template output directory
        includes: Template search path
        globals: Statements seeding the root scope
        templates: Named template programs, in definition order
        commands: Command programs; the unnamed program is keyed by None
    """
    names: VarNames
    output: Path
    includes: list[Path] = field(default_factory=list)
    globals: list[Node] = field(default_factory=list)
    templates: dict[str, list[Node]] = field(default_factory=dict)
    commands: dict[Optional[str], list[Node]] = field(default_factory=dict)
    source: Optional[Path] = None

    def globals_program(self) -> Program:
        return compile_program(self.globals)

    def template_programs(self) -> list[tuple[str, Program]]:
        return [(name, compile_program(nodes)) for name, nodes in self.templates.items()]

    def command_program(self, name: Optional[str]) -> Optional[Program]:
        nodes = self.commands.get(name)
        if nodes is None:
            return None
        return compile_program(nodes)

    def command_programs(self) -> list[tuple[Optional[str], Program]]:
        return [(name, compile_program(nodes)) for name, nodes in self.commands.items()]

    def program(self, name: Optional[str]) -> Optional[Program]:
        """Look a program up by name: `globals`, a template, or a command program."""
        if name == "globals":
            return self.globals_program()
        if name in self.templates:
            return compile_program(self.templates[name])
        return self.command_program(name)


def _resolve(base_dir: Path, value: Any) -> Path:
    path = Path(str(value)).expanduser()
    return path if path.is_absolute() else base_dir / path


def parse_bed(data: Any, base_dir: Optional[Path] = None, source: Optional[Path] = None) -> BedDefinition:
    """
    Build a BedDefinition from a decoded YAML document.

    Args:
        data: The decoded document
        base_dir: Directory relative paths are resolved against (default: cwd)
        source: File the document came from, for diagnostics

    Raises:
        BedLoadError: If the document is malformed
    """
    base_dir = base_dir if base_dir is not None else Path.cwd()

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise BedLoadError("<bed>", "a bed is a mapping")

    unknown = set(data) - {"output", "includes", "globals", "templates", "commands"}
    if unknown:
        raise BedLoadError("<bed>", f"unknown keys: {', '.join(sorted(map(str, unknown)))}")

    names = VarNames()
    globals_parser = _StatementParser(names, GLOBALS_PROGRAM)
    template_parser = _StatementParser(names, TEMPLATE_PROGRAM)
    command_parser = _StatementParser(names, COMMAND_PROGRAM)

    includes = [_resolve(base_dir, path) for path in _as_list(data.get("includes") or [])]
    bed = BedDefinition(
        names=names,
        output=_resolve(base_dir, data.get("output") or "output"),
        includes=includes or [base_dir],
        globals=globals_parser.block(data.get("globals"), "globals"),
        source=source,
    )

    templates = data.get("templates") or {}
    if not isinstance(templates, dict):
        raise BedLoadError("templates", "expected a mapping of name: statements")
    for name, statements in templates.items():
        bed.templates[str(name)] = template_parser.block(statements, f"templates.{name}")

    commands = data.get("commands")
    if isinstance(commands, list):
        bed.commands[None] = command_parser.block(commands, "commands")
    elif isinstance(commands, dict):
        for name, statements in commands.items():
            bed.commands[str(name)] = command_parser.block(statements, f"commands.{name}")
    elif commands is not None:
        raise BedLoadError("commands", "expected a list of statements or a mapping of name: statements")

    logger.debug(
        "Parsed bed: %d template program(s), %d command program(s), %d name(s)",
        len(bed.templates),
        len(bed.commands),
        len(names),
    )
    return bed


def load_bed(path: Path) -> BedDefinition:
    """
    Load a bed definition from a YAML file.

    Relative `output` and `includes` paths resolve against the bed's directory.

    Raises:
        BedLoadError: If the file is missing, not valid YAML, or malformed
    """
    path = Path(path)
    if not path.exists():
        raise BedLoadError(str(path), "bed file not found")

    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise BedLoadError(str(path), f"invalid YAML syntax: {e}")

    return parse_bed(data, path.parent.resolve(), path)
