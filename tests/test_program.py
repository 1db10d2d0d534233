"""Tests for benchbed.program: the instruction interpreter.

Tests cover:
- Loop execution counts (group vs combinations) and iteration order
- Empty loop targets
- Conditionals
- Variable mutation from loop bodies
- Error wrapping, shutdown and scope restoration
"""

import pytest

from benchbed.compiler import ConditionalNode, ForLoop, ForLoopType, InstructionNode, LoopNode, compile_program
from benchbed.errors import MissingVariableError, NotAReferenceError, ProgramError
from benchbed.expr import CounterExpr, ListExpr, RangeExpr, StringExpr, StructExpr
from benchbed.program import Program, Shutdown
from benchbed.schemas import (
    AssignVar,
    Command,
    CreateVar,
    Increment,
    PushList,
    RangeTarget,
    Struct,
    VarFieldId,
    VariableTarget,
)

from conftest import RecordingExecutable


# =============================================================================
# FIXTURES
# =============================================================================


def lit(text):
    return StructExpr(StringExpr.literal(text))


def strings(*items):
    return ListExpr(tuple(lit(item) for item in items))


def interp(names, *parts):
    """StringExpr from literal strings and variable names prefixed with `$`."""
    compiled = []
    for part in parts:
        if part.startswith("$"):
            compiled.append(VarFieldId(names.intern(part[1:])))
        else:
            compiled.append(part)
    return StringExpr(tuple(compiled))


def set_var(names, name, value, origin=None):
    return InstructionNode(CreateVar(names.intern(name), value), origin)


def loop(names, ty, iters, targets, body, origin=None):
    targets = [
        target if isinstance(target, RangeTarget) else VariableTarget(names.intern(target))
        for target in targets
    ]
    return LoopNode(ForLoop(ty, [names.intern(i) for i in iters], targets), body, origin)


def rng(start, end):
    return RangeTarget(RangeExpr(start), RangeExpr(end))


def probe_strings(names, *variables):
    ids = [names.intern(v) for v in variables]
    return lambda state: "".join(state.get_string(VarFieldId(i)) for i in ids)


class TestLoops:
    """Tests for loop execution."""

    def test_group_runs_shortest_length(self, names, state, shutdown):
        recorder = RecordingExecutable()
        program = compile_program([
            set_var(names, "a", strings("1", "2", "3")),
            set_var(names, "b", strings("1", "2", "3", "4", "5")),
            set_var(names, "c", strings("1", "2")),
            loop(names, ForLoopType.GROUP, ["x", "y", "z"], ["a", "b", "c"], [InstructionNode(Command("tick"))]),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.commands == ["tick", "tick"]
        assert recorder.finished == 1

    def test_combinations_run_product(self, names, state, shutdown):
        recorder = RecordingExecutable()
        program = compile_program([
            set_var(names, "a", strings("1", "2", "3")),
            set_var(names, "b", strings("1", "2", "3", "4", "5")),
            set_var(names, "c", strings("1", "2")),
            loop(names, ForLoopType.COMBINATIONS, ["x", "y", "z"], ["a", "b", "c"], [InstructionNode(Command("tick"))]),
        ])
        program.run(recorder, state, shutdown)
        assert len(recorder.commands) == 30

    def test_combinations_innermost_varies_fastest(self, names, state, shutdown):
        recorder = RecordingExecutable(probe_strings(names, "x", "i"))
        program = compile_program([
            set_var(names, "xs", strings("a", "b")),
            loop(names, ForLoopType.COMBINATIONS, ["x", "i"], ["xs", rng(0, 2)], [InstructionNode(Command("run"))]),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.snapshots == ["a0", "a1", "b0", "b1"]

    def test_group_advances_in_lock_step(self, names, state, shutdown):
        recorder = RecordingExecutable(probe_strings(names, "x", "i"))
        program = compile_program([
            set_var(names, "xs", strings("a", "b", "c")),
            loop(names, ForLoopType.GROUP, ["x", "i"], ["xs", rng(5, 7)], [InstructionNode(Command("run"))]),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.snapshots == ["a5", "b6"]

    @pytest.mark.parametrize("ty", [ForLoopType.GROUP, ForLoopType.COMBINATIONS])
    def test_empty_target_skips_body(self, names, state, shutdown, ty):
        recorder = RecordingExecutable()
        program = compile_program([
            set_var(names, "empty", ListExpr(())),
            set_var(names, "xs", strings("a")),
            loop(names, ty, ["x", "e"], ["xs", "empty"], [InstructionNode(Command("run"))]),
            InstructionNode(Command("after")),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.commands == ["after"]

    def test_empty_range_skips_body(self, names, state, shutdown):
        recorder = RecordingExecutable()
        program = compile_program([
            loop(names, ForLoopType.COMBINATIONS, ["i"], [rng(3, 3)], [InstructionNode(Command("run"))]),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.commands == []

    def test_inner_range_bound_from_outer_variable(self, names, state, shutdown):
        recorder = RecordingExecutable(probe_strings(names, "i", "j"))
        inner_end = RangeExpr(interp(names, "$i"))
        program = compile_program([
            loop(names, ForLoopType.COMBINATIONS, ["i"], [rng(0, 3)], [
                loop(names, ForLoopType.COMBINATIONS, ["j"], [RangeTarget(RangeExpr(0), inner_end)], [
                    InstructionNode(Command("run")),
                ]),
            ]),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.snapshots == ["10", "20", "21"]

    def test_loop_over_counter_variable(self, names, state, shutdown):
        recorder = RecordingExecutable(probe_strings(names, "n"))
        program = compile_program([
            set_var(names, "counts", CounterExpr(RangeExpr(2), RangeExpr(5))),
            loop(names, ForLoopType.COMBINATIONS, ["n"], ["counts"], [InstructionNode(Command("run"))]),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.snapshots == ["2", "3", "4"]

    def test_set_iter_reports_positions(self, names, state, shutdown):
        recorder = RecordingExecutable()
        program = compile_program([
            set_var(names, "xs", strings("a", "b", "c")),
            loop(names, ForLoopType.COMBINATIONS, ["x"], ["xs"], []),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.iters == [("x", 0), ("x", 1), ("x", 2)]

    def test_loop_scopes_are_released(self, names, state, shutdown):
        recorder = RecordingExecutable(lambda s: s.depth)
        program = compile_program([
            loop(names, ForLoopType.COMBINATIONS, ["i"], [rng(0, 2)], [
                set_var(names, "tmp", lit("v")),
            ]),
            InstructionNode(Command("after")),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.snapshots == [1]
        assert state.depth == 0


class TestMutation:
    """Tests for assignments and list pushes from loop bodies."""

    def test_assign_reaches_outer_binding(self, names, state, shutdown):
        recorder = RecordingExecutable(probe_strings(names, "last"))
        program = compile_program([
            set_var(names, "last", lit("none")),
            loop(names, ForLoopType.COMBINATIONS, ["x"], ["xs"], [
                InstructionNode(AssignVar(names.intern("last"), StructExpr(interp(names, "$x")))),
            ]),
            InstructionNode(Command("done")),
        ])
        state.insert_var(names.intern("xs"), [Struct("a"), Struct("b")])
        program.run(recorder, state, shutdown)
        assert recorder.snapshots == ["b"]

    def test_push_collects_values(self, names, state, shutdown):
        program = compile_program([
            loop(names, ForLoopType.COMBINATIONS, ["i"], [rng(0, 3)], [
                InstructionNode(PushList(names.intern("out"), StructExpr(interp(names, "n", "$i")))),
            ]),
        ])
        state.insert_var(names.intern("out"), [])
        program.run(RecordingExecutable(), state, shutdown)
        assert [item.base for item in state.scopes[0][names.intern("out")]] == ["n0", "n1", "n2"]


class TestConditionals:
    """Tests for guarded blocks."""

    @pytest.mark.parametrize("value,runs", [("false", True), ("true", False), ("no", False), ("", False)])
    def test_single_guard(self, names, state, shutdown, value, runs):
        recorder = RecordingExecutable()
        program = compile_program([
            set_var(names, "flag", lit(value)),
            ConditionalNode([VarFieldId(names.intern("flag"))], [InstructionNode(Command("body"))]),
            InstructionNode(Command("after")),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.commands == (["body", "after"] if runs else ["after"])

    def test_every_guard_must_be_false(self, names, state, shutdown):
        recorder = RecordingExecutable()
        program = compile_program([
            set_var(names, "a", lit("false")),
            set_var(names, "b", lit("true")),
            ConditionalNode(
                [VarFieldId(names.intern("a")), VarFieldId(names.intern("b"))],
                [InstructionNode(Command("body"))],
            ),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.commands == []

    def test_skipped_block_leaves_scope_balanced(self, names, state, shutdown):
        recorder = RecordingExecutable(lambda s: s.depth)
        program = compile_program([
            set_var(names, "flag", lit("true")),
            ConditionalNode([VarFieldId(names.intern("flag"))], [InstructionNode(Command("body"))]),
            InstructionNode(Command("after")),
        ])
        program.run(recorder, state, shutdown)
        assert recorder.snapshots == [1]


class TestErrors:
    """Tests for ProgramError wrapping."""

    def test_missing_variable_carries_index_and_origin(self, names, state, shutdown):
        recorder = RecordingExecutable()
        program = compile_program([
            InstructionNode(Command("first"), "main[0]"),
            set_var(names, "y", StructExpr(interp(names, "$missing")), "main[1].set.y"),
        ])
        with pytest.raises(ProgramError) as exc_info:
            program.run(recorder, state, shutdown)

        error = exc_info.value
        assert error.instruction == 1
        assert error.origin == "main[1].set.y"
        assert isinstance(error.cause, MissingVariableError)
        assert "instruction 1 (main[1].set.y): missing variable `missing`" == str(error)
        assert recorder.finished == 0

    def test_scope_restored_after_error(self, names, state, shutdown):
        program = compile_program([set_var(names, "y", StructExpr(interp(names, "$missing")))])
        state.new_scope()
        with pytest.raises(ProgramError):
            program.run(RecordingExecutable(), state, shutdown)
        assert state.depth == 1

    def test_increment_of_non_reference(self, names, state, shutdown):
        xs, x = names.intern("xs"), names.intern("x")
        program = Program([Increment(VariableTarget(xs), x, 1)])
        state.insert_var(x, Struct("plain"))
        with pytest.raises(ProgramError) as exc_info:
            program.run(RecordingExecutable(), state, shutdown)
        assert isinstance(exc_info.value.cause, NotAReferenceError)

    def test_range_bound_not_an_integer(self, names, state, shutdown):
        program = compile_program([
            set_var(names, "n", lit("many")),
            loop(names, ForLoopType.COMBINATIONS, ["i"], [RangeTarget(RangeExpr(0), RangeExpr(interp(names, "$n")))], []),
        ])
        with pytest.raises(ProgramError, match="not an integer"):
            program.run(RecordingExecutable(), state, shutdown)


class TestLifecycle:
    """Tests for shutdown and scope handling around a run."""

    def test_shutdown_before_start(self, names, state):
        shutdown = Shutdown()
        shutdown.shutdown()
        recorder = RecordingExecutable()
        compile_program([InstructionNode(Command("run"))]).run(recorder, state, shutdown)
        assert recorder.commands == []
        assert recorder.shutdowns == 1
        assert recorder.finished == 0

    def test_shutdown_mid_run(self, names, state):
        shutdown = Shutdown()

        def stop_after_two(s):
            if len(recorder.commands) == 2:
                shutdown.shutdown()

        recorder = RecordingExecutable(stop_after_two)
        program = compile_program([
            loop(names, ForLoopType.COMBINATIONS, ["i"], [rng(0, 10)], [InstructionNode(Command("run"))]),
        ])
        program.run(recorder, state, shutdown)
        assert len(recorder.commands) == 2
        assert recorder.shutdowns == 1
        assert recorder.finished == 0
        assert state.depth == 0

    def test_keep_scope(self, names, state, shutdown):
        program = compile_program([set_var(names, "g", lit("global"))])
        program.run(RecordingExecutable(), state, shutdown, keep_scope=True)
        assert state.depth == 1
        assert state.get_string(VarFieldId(names.intern("g"))) == "global"

    def test_shutdown_flag(self):
        shutdown = Shutdown()
        assert shutdown.shutdown() is False
        assert shutdown.shutdown() is True
        assert shutdown.is_shutdown()
        assert shutdown.wait(0) is True
