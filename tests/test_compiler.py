"""Tests for benchbed.compiler.

Tests the emitted instruction layout of group loops, combination loops and
conditionals, and source-origin bookkeeping.
"""

import pytest

from benchbed.compiler import (
    ConditionalNode,
    ForLoop,
    ForLoopType,
    InstructionNode,
    LoopNode,
    ProgramBuilder,
    build_combination_loop,
    build_group_loop,
    compile_program,
)
from benchbed.expr import StringExpr, StructExpr
from benchbed.schemas import (
    Command,
    ConditionalJump,
    CreateVar,
    Goto,
    Increment,
    PopScope,
    PushScope,
    StartIter,
    VarFieldId,
    VariableTarget,
)


def _kinds(program):
    return [type(instruction).__name__ for instruction in program.instructions]


def _empty_body(builder):
    pass


class TestGroupLoop:
    """Tests for lock-step loop layout."""

    def test_layout(self):
        builder = ProgramBuilder()
        build_group_loop([1], [VariableTarget(0)], builder, _empty_body)
        program = builder.build()

        assert _kinds(program) == [
            "PushScope", "StartIter", "PushScope", "PopScope", "Increment", "Goto", "PopScope",
        ]
        assert program.instructions[1].jump == 6
        assert program.instructions[4].jump == 6
        assert program.instructions[5].target == 2

    def test_every_iterator_jumps_to_end(self):
        builder = ProgramBuilder()
        targets = [VariableTarget(0), VariableTarget(1), VariableTarget(2)]
        build_group_loop([3, 4, 5], targets, builder, _empty_body)
        program = builder.build()

        end = len(program) - 1
        jumps = [i.jump for i in program.instructions if isinstance(i, (StartIter, Increment))]
        assert len(jumps) == 6
        assert set(jumps) == {end}
        assert isinstance(program.instructions[end], PopScope)


class TestCombinationLoop:
    """Tests for cartesian loop layout."""

    def test_layout_two_targets(self):
        builder = ProgramBuilder()
        build_combination_loop([2, 3], [VariableTarget(0), VariableTarget(1)], builder, _empty_body)
        program = builder.build()

        assert _kinds(program) == [
            "PushScope", "StartIter",
            "PushScope", "StartIter",
            "PushScope", "PopScope",
            "Increment", "Goto", "PopScope",
            "Increment", "Goto", "PopScope",
        ]
        outer_start, inner_start = program.instructions[1], program.instructions[3]
        assert outer_start.jump == 11
        assert inner_start.jump == 8
        assert program.instructions[6].jump == 8
        assert program.instructions[7].target == 4
        assert program.instructions[9].jump == 11
        assert program.instructions[10].target == 2

    def test_no_targets_wraps_body_in_scope(self):
        builder = ProgramBuilder()
        build_combination_loop([], [], builder, lambda b: b.emit(Command("x")))
        assert _kinds(builder.build()) == ["PushScope", "Command", "PopScope"]


class TestForLoop:
    """Tests for ForLoop dispatch."""

    def test_mismatched_targets(self):
        loop = ForLoop(ForLoopType.GROUP, [1, 2], [VariableTarget(0)])
        with pytest.raises(ValueError):
            loop.build(ProgramBuilder(), _empty_body)

    @pytest.mark.parametrize("ty,expected", [(ForLoopType.GROUP, 9), (ForLoopType.COMBINATIONS, 12)])
    def test_dispatch(self, ty, expected):
        builder = ProgramBuilder()
        ForLoop(ty, [2, 3], [VariableTarget(0), VariableTarget(1)]).build(builder, _empty_body)
        assert len(builder) == expected


class TestConditional:
    """Tests for guarded block layout."""

    def test_guards_jump_past_pop_scope(self):
        body = [InstructionNode(CreateVar(5, StructExpr(StringExpr.literal("x"))))]
        node = ConditionalNode([VarFieldId(0), VarFieldId(1)], body)
        program = compile_program([node])

        assert _kinds(program) == ["ConditionalJump", "ConditionalJump", "PushScope", "CreateVar", "PopScope"]
        assert program.instructions[0].jump == 5
        assert program.instructions[1].jump == 5

    def test_empty_body(self):
        program = compile_program([ConditionalNode([VarFieldId(0)])])
        assert _kinds(program) == ["ConditionalJump", "PushScope", "PopScope"]
        assert program.instructions[0].jump == 3


class TestOrigins:
    """Tests for per-instruction source locations."""

    def test_nested_origins(self):
        loop = ForLoop(ForLoopType.COMBINATIONS, [1], [VariableTarget(0)])
        nodes = [
            InstructionNode(Command("a"), "main[0]"),
            LoopNode(loop, [InstructionNode(Command("b"), "main[1].do[0]")], "main[1]"),
            InstructionNode(Command("c"), "main[2]"),
        ]
        program = compile_program(nodes)

        origins = dict(zip(_kinds(program), program.origins))
        assert program.origin(0) == "main[0]"
        assert program.origins[-1] == "main[2]"
        commands = [i for i, ins in enumerate(program.instructions) if isinstance(ins, Command)]
        assert program.origin(commands[1]) == "main[1].do[0]"
        # Loop bookkeeping after the body is attributed to the loop itself
        assert origins["Goto"] == "main[1]"

    def test_origin_out_of_range(self):
        program = compile_program([InstructionNode(Command("a"))])
        assert program.origin(0) is None
        assert program.origin(10) is None

    def test_listing(self, names):
        flag = names.intern("flag")
        program = compile_program([
            ConditionalNode([VarFieldId(flag)], [InstructionNode(Goto(0), "main[0].do[0]")], "main[0]"),
        ])
        listing = program.listing(names).splitlines()
        assert listing[0] == "0  ConditionalJump flag != false -> 4  ; main[0]"
        assert listing[2] == "2  Goto 0  ; main[0].do[0]"
        assert isinstance(program.instructions[0], ConditionalJump)
        assert isinstance(program.instructions[1], PushScope)
