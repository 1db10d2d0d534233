"""
Process lifecycle schema.

A supervised child moves from RUNNING to exactly one terminal status:

    RUNNING -> KILLED     killed on timeout or shutdown
    RUNNING -> ERROR      the OS refused a kill or a status poll
    RUNNING -> FAILED     exited with a non-zero (or no) exit code
    RUNNING -> FINISHED   exited successfully

The transition is one-shot; later transitions are ignored.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ProcessStatus(str, Enum):
    """Status of a supervised child process."""
    RUNNING = "running"
    KILLED = "killed"
    ERROR = "error"
    FAILED = "failed"
    FINISHED = "finished"


@dataclass(frozen=True)
class ProcessState:
    """
    Status plus its detail.

    Attributes:
        status: Lifecycle status
        code: Exit code for FAILED (None when killed by a signal)
        error: OS error text for ERROR
    """
    status: ProcessStatus = ProcessStatus.RUNNING
    code: Optional[int] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status != ProcessStatus.RUNNING

    def __str__(self) -> str:
        if self.status == ProcessStatus.FAILED:
            return f"Failed({self.code})"
        if self.status == ProcessStatus.ERROR:
            return f"Error({self.error})"
        return self.status.value.capitalize()
