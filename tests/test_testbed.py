"""Tests for benchbed.testbed.TestBed: whole-bed runs."""

import sys
import time

import pytest

from benchbed.config import BenchbedConfig
from benchbed.errors import BenchbedError
from benchbed.loader import parse_bed
from benchbed.schemas import ProcessStatus
from benchbed.testbed import TestBed, TestBedResult


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def bed_dir(tmp_path):
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "host.conf").write_text("host={{ host }}\n")
    return tmp_path


@pytest.fixture
def make_testbed(bed_dir, quiet_console):
    created = []

    def make(data, **config):
        bed = parse_bed(data, bed_dir)
        testbed = TestBed(bed, config=BenchbedConfig(config), console=quiet_console, live=False)
        created.append(testbed)
        return testbed

    yield make
    for testbed in created:
        testbed.cancel()
        testbed.wait(10)


def py(code, *args):
    """A spawn statement running the current interpreter."""
    return {"spawn": {"command": sys.executable, "args": ["-c", code, *args]}}


FULL_BED = {
    "includes": ["templates"],
    "output": "build",
    "globals": [{"set": {"hosts": ["alpha", "beta"]}}],
    "templates": {
        "render": [
            {"for": "host", "in": "hosts", "do": [
                {"yield": {"configs": {"build": ["host.conf", "${host}.conf"]}}},
            ]},
        ],
    },
    "commands": [
        {"for": "cfg", "in": "configs", "do": [
            py("import sys; assert open(sys.argv[1]).read().startswith('host=')", "${cfg}"),
        ]},
    ],
}


class TestRun:
    """Tests for complete runs."""

    def test_full_run(self, make_testbed, bed_dir):
        testbed = make_testbed(FULL_BED)
        result = testbed.run()

        assert result.success
        assert result.programs == ["globals", "render", "commands"]
        assert (bed_dir / "build" / "alpha.conf").read_text() == "host=alpha\n"
        assert (bed_dir / "build" / "beta.conf").read_text() == "host=beta\n"
        assert testbed.completed.is_set()
        assert testbed.result is result

    def test_children_see_rendered_files(self, make_testbed, bed_dir):
        testbed = make_testbed(FULL_BED)
        testbed.run()
        spawned = testbed.supervisor.spawned
        assert [info.args[-1] for info in spawned] == [
            str(bed_dir / "build" / "alpha.conf"),
            str(bed_dir / "build" / "beta.conf"),
        ]
        assert all(info.state.status == ProcessStatus.FINISHED for info in spawned)

    def test_path_and_list_targets(self, make_testbed):
        testbed = make_testbed({
            "globals": [{"set": {"server": {"base": "srv", "ports": ["1", "2", "3"]}}}],
            "commands": [
                {"for": "p", "in": "server.ports", "do": [py("pass", "${p}")]},
                {"for": "h", "in": ["alpha", "beta"], "do": [py("pass", "${h}")]},
            ],
        })
        result = testbed.run()
        assert result.success, result.failures
        assert [info.args[-1] for info in testbed.supervisor.spawned] == ["1", "2", "3", "alpha", "beta"]

    def test_program_selection(self, make_testbed):
        testbed = make_testbed({
            "globals": [{"set": {"x": 1}}],
            "commands": {"first": [{"sleep": 1}], "second": [{"sleep": 1}]},
        })
        result = testbed.run(["second"])
        assert result.programs == ["globals", "second"]

    def test_unknown_program(self, make_testbed):
        testbed = make_testbed({"commands": {"first": [{"sleep": 1}]}})
        with pytest.raises(BenchbedError, match="Unknown program"):
            testbed.run(["nope"])

    def test_command_programs_run_in_order_with_reset(self, make_testbed):
        testbed = make_testbed({
            "commands": {
                "first": [{"limit": 1}, py("pass")],
                "second": [py("pass")],
            },
        })
        result = testbed.run()
        assert result.success
        assert result.programs == ["globals", "first", "second"]
        # The supervisor is reset between programs
        assert testbed.supervisor.spawn_limit is None
        assert len(testbed.supervisor.spawned) == 1


class TestFailures:
    """Tests for failure handling."""

    def test_globals_failure_aborts(self, make_testbed):
        testbed = make_testbed({
            "globals": [{"set": {"x": {"ref": "missing"}}}],
            "commands": [{"sleep": 1}],
        })
        result = testbed.run()
        assert not result.success
        assert result.programs == []
        assert result.failures[0]["program"] == "globals"
        assert result.failures[0]["origin"] == "globals[0].set.x"
        assert "missing variable `missing`" in result.failures[0]["error"]

    def test_template_failure_continues(self, make_testbed):
        testbed = make_testbed({
            "templates": {"broken": [{"set": {"y": "${missing}"}}]},
            "commands": [{"sleep": 1}],
        })
        result = testbed.run()
        assert not result.success
        assert result.programs == ["globals", "commands"]
        assert [f["program"] for f in result.failures] == ["broken"]

    def test_fail_fast_stops(self, make_testbed):
        testbed = make_testbed(
            {
                "templates": {"broken": [{"set": {"y": "${missing}"}}]},
                "commands": [{"sleep": 1}],
            },
            behavior={"fail_fast": True},
        )
        result = testbed.run()
        assert result.programs == ["globals"]

    def test_template_errors_do_not_fail_the_run(self, make_testbed):
        testbed = make_testbed({
            "templates": {"render": [{"build": {"x": {"build": ["absent.conf", "x.conf"]}}}]},
        })
        result = testbed.run()
        assert result.success
        assert result.template_errors == 1

    def test_spawn_failures_are_counted(self, make_testbed):
        testbed = make_testbed({"commands": [{"spawn": "/nonexistent/benchbed-test-binary"}]})
        result = testbed.run()
        assert result.success
        assert result.spawn_failures == 1


class TestCancel:
    """Tests for background runs and cancellation."""

    def test_background_run(self, make_testbed):
        testbed = make_testbed({"commands": [py("pass")]})
        testbed.start()
        assert testbed.wait(30)
        assert testbed.result.success
        assert testbed.error is None

    def test_cancel_kills_children(self, make_testbed):
        testbed = make_testbed({"commands": [py("import time; time.sleep(30)"), "wait"]})
        testbed.start()

        deadline = time.monotonic() + 10
        while not testbed.supervisor.spawned and time.monotonic() < deadline:
            time.sleep(0.02)

        assert testbed.cancel() is True
        assert testbed.cancel() is False
        assert testbed.wait(10)

        result = testbed.result
        assert result.cancelled
        assert not result.success
        assert testbed.supervisor.spawned[0].state.status == ProcessStatus.KILLED

    def test_background_error_is_recorded(self, make_testbed):
        testbed = make_testbed({"commands": {"first": [{"sleep": 1}]}})
        testbed.start(["nope"])
        assert testbed.wait(10)
        assert isinstance(testbed.error, BenchbedError)
        assert testbed.result is None


class TestResult:
    """Tests for TestBedResult."""

    def test_to_dict(self):
        result = TestBedResult(programs=["globals"], duration_ms=12)
        assert result.to_dict() == {
            "success": True,
            "programs": ["globals"],
            "failures": [],
            "template_errors": 0,
            "spawn_failures": 0,
            "duration_ms": 12,
        }

    def test_to_dict_cancelled(self):
        assert TestBedResult(success=False, cancelled=True).to_dict()["cancelled"] is True
