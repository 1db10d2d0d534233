"""
Compiler - Lowers statement trees to flat Programs.

Statement nodes:
- InstructionNode: a single instruction, emitted as-is
- LoopNode: a for loop (group or combinations) around a body
- ConditionalNode: guarded block

Loops are emitted recursively. The body callback receives the builder so
nested statements append to the same buffer; jump targets are back-patched
once the loop's end is known.

Group (lock-step) layout:

    PushScope
    StartIter x N         -> end
  goto:
    PushScope
    <body>
    PopScope
    Increment x N         -> end
    Goto goto
  end:
    PopScope

Combinations nest one single-iterator loop per target, innermost varying
fastest.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence, Union

from .program import Program
from .schemas import (
    ConditionalJump,
    Goto,
    Increment,
    Instruction,
    IterTarget,
    PopScope,
    PushScope,
    StartIter,
    VarFieldId,
    VarNameId,
)


class ForLoopType(str, Enum):
    """How multiple loop targets advance."""
    GROUP = "group"
    COMBINATIONS = "combinations"


class ProgramBuilder:
    """
    Append-only instruction buffer with per-instruction origins.

    `origin` is the source location stamped on everything emitted until it
    changes.
    """

    def __init__(self):
        self.instructions: list[Instruction] = []
        self.origins: list[Optional[str]] = []
        self.origin: Optional[str] = None

    def __len__(self) -> int:
        return len(self.instructions)

    def emit(self, instruction: Instruction) -> int:
        self.instructions.append(instruction)
        self.origins.append(self.origin)
        return len(self.instructions) - 1

    def build(self) -> Program:
        return Program(self.instructions, self.origins)


Body = Callable[[ProgramBuilder], None]


def build_group_loop(
    iters: Sequence[VarNameId],
    targets: Sequence[IterTarget],
    builder: ProgramBuilder,
    body: Body,
) -> None:
    """Lock-step loop; runs min(len(target)) times."""
    builder.emit(PushScope())
    starts = [builder.emit(StartIter(target, it)) for it, target in zip(iters, targets)]

    goto = builder.emit(PushScope())
    body(builder)
    builder.emit(PopScope())

    increments = [builder.emit(Increment(target, it)) for it, target in zip(iters, targets)]
    builder.emit(Goto(goto))
    end = builder.emit(PopScope())

    for idx in starts + increments:
        builder.instructions[idx].jump = end


def build_combination_loop(
    iters: Sequence[VarNameId],
    targets: Sequence[IterTarget],
    builder: ProgramBuilder,
    body: Body,
) -> None:
    """Cartesian loop; runs product(len(target)) times."""
    if not iters:
        builder.emit(PushScope())
        body(builder)
        builder.emit(PopScope())
        return

    builder.emit(PushScope())
    start = builder.emit(StartIter(targets[0], iters[0]))
    goto = len(builder)

    build_combination_loop(iters[1:], targets[1:], builder, body)

    increment = builder.emit(Increment(targets[0], iters[0]))
    builder.emit(Goto(goto))
    end = builder.emit(PopScope())

    builder.instructions[start].jump = end
    builder.instructions[increment].jump = end


@dataclass
class ForLoop:
    ty: ForLoopType
    iters: list[VarNameId]
    targets: list[IterTarget]

    def build(self, builder: ProgramBuilder, body: Body) -> None:
        if len(self.iters) != len(self.targets):
            raise ValueError("loop needs one target per iterator")
        if self.ty == ForLoopType.GROUP:
            build_group_loop(self.iters, self.targets, builder, body)
        else:
            build_combination_loop(self.iters, self.targets, builder, body)


# =============================================================================
# Statement nodes
# =============================================================================


@dataclass
class InstructionNode:
    instruction: Instruction
    origin: Optional[str] = None


@dataclass
class LoopNode:
    loop: ForLoop
    body: list["Node"] = field(default_factory=list)
    origin: Optional[str] = None


@dataclass
class ConditionalNode:
    """Block that runs only when every guard resolves to "false"."""
    conditions: list[VarFieldId]
    body: list["Node"] = field(default_factory=list)
    origin: Optional[str] = None


Node = Union[InstructionNode, LoopNode, ConditionalNode]


def build_node(node: Node, builder: ProgramBuilder) -> None:
    builder.origin = node.origin

    if isinstance(node, InstructionNode):
        builder.emit(node.instruction)
    elif isinstance(node, LoopNode):
        origin = node.origin

        def body(inner: ProgramBuilder) -> None:
            for child in node.body:
                build_node(child, inner)
            inner.origin = origin

        node.loop.build(builder, body)
    elif isinstance(node, ConditionalNode):
        guards = [builder.emit(ConditionalJump(cond)) for cond in node.conditions]
        builder.emit(PushScope())
        for child in node.body:
            build_node(child, builder)
        builder.origin = node.origin
        builder.emit(PopScope())
        end = len(builder)
        for idx in guards:
            builder.instructions[idx].jump = end
    else:
        raise TypeError(f"Unknown node: {node!r}")


def compile_program(nodes: Sequence[Node]) -> Program:
    """Compile a statement list to a Program."""
    builder = ProgramBuilder()
    for node in nodes:
        build_node(node, builder)
    return builder.build()
