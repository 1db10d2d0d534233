import io
import sys

import pytest
from rich.console import Console

from benchbed.program import Executable, Shutdown
from benchbed.schemas import VarNames
from benchbed.state import ProgramState


class RecordingExecutable(Executable):
    """Executable that records every call it receives."""

    def __init__(self, state_probe=None):
        self.commands = []
        self.iters = []
        self.finished = 0
        self.shutdowns = 0
        self.state_probe = state_probe
        self.snapshots = []

    def execute(self, command, state, shutdown):
        self.commands.append(command)
        if self.state_probe is not None:
            self.snapshots.append(self.state_probe(state))

    def finish(self, state, shutdown):
        self.finished += 1

    def shutdown(self):
        self.shutdowns += 1

    def set_iter(self, iter_var, index, value, state):
        self.iters.append((state.names.name_of(iter_var), index))


@pytest.fixture
def names():
    return VarNames()


@pytest.fixture
def state(names):
    return ProgramState(names)


@pytest.fixture
def shutdown():
    return Shutdown()


@pytest.fixture
def recorder():
    return RecordingExecutable()


@pytest.fixture
def quiet_console():
    """A console writing into a buffer, wide enough for untruncated labels."""
    return Console(file=io.StringIO(), width=120, force_terminal=False, color_system=None)


@pytest.fixture
def python():
    """Command-line prefix running an inline Python snippet."""
    return [sys.executable, "-c"]


@pytest.fixture(autouse=True)
def no_progress_env(monkeypatch):
    monkeypatch.delenv("BENCHBED_PROGRESS", raising=False)
