"""
benchbed.schemas - Data structures shared by the interpreter and its executors.

VarNames -> VarFieldId -> Object -> Instruction

Lifecycle:
1. VarNames: every source name interned once, ids stable for the bed's lifetime
2. VarFieldId: compiled variable paths (var, optional index, optional field chain)
3. Object: runtime values (Counter, Ref, Struct, list) bound in scopes
4. Instruction: flat bytecode executed by Program.run
5. ProcessState: lifecycle of a supervised child (RUNNING -> terminal status)
"""

from .names import VarNameId, VarNames, VarFieldId
from .objects import Counter, Ref, Struct, Object, object_length
from .process import ProcessStatus, ProcessState
from .instructions import (
    Instruction,
    IterTarget,
    VariableTarget,
    RangeTarget,
    PushScope,
    PopScope,
    CreateVar,
    AssignVar,
    PushList,
    StartIter,
    Increment,
    ConditionalJump,
    Goto,
    Command,
)

__all__ = [
    # Names
    "VarNameId",
    "VarNames",
    "VarFieldId",
    # Objects
    "Counter",
    "Ref",
    "Struct",
    "Object",
    "object_length",
    # Processes
    "ProcessStatus",
    "ProcessState",
    # Instructions
    "Instruction",
    "IterTarget",
    "VariableTarget",
    "RangeTarget",
    "PushScope",
    "PopScope",
    "CreateVar",
    "AssignVar",
    "PushList",
    "StartIter",
    "Increment",
    "ConditionalJump",
    "Goto",
    "Command",
]
