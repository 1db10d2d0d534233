"""
Error classes for benchbed.

Variable access errors are raised by every path resolution and expression
evaluation. They never crash the interpreter; the interpreter wraps them in a
ProgramError carrying the failing instruction index and stops the run.

Error handling contract:
- Errors are exceptions, not values
- Resolution errors abort the current program run
- Spawn and output-routing failures degrade and are reported, never raised
"""

from typing import Optional


class BenchbedError(Exception):
    """Base exception for benchbed."""
    pass


class ConfigError(BenchbedError):
    """Configuration validation error."""
    pass


class BedLoadError(BenchbedError):
    """Raised when a bed definition is malformed."""

    def __init__(self, location: str, message: str):
        self.location = location
        super().__init__(f"{location}: {message}")


# =============================================================================
# Variable access
# =============================================================================


class VariableAccessError(BenchbedError):
    """Base class for variable and path resolution failures."""
    pass


class NotAStructError(VariableAccessError):
    def __init__(self, message: str = "value is not a struct"):
        super().__init__(message)


class NotAReferenceError(VariableAccessError):
    def __init__(self, message: str = "value is not a reference"):
        super().__init__(message)


class NotAListError(VariableAccessError):
    def __init__(self, message: str = "value is not a list"):
        super().__init__(message)


class InvalidIndexError(VariableAccessError):
    def __init__(self, message: str = "invalid index"):
        super().__init__(message)


class MissingFileError(VariableAccessError):
    """Part of the resolution family; missing files on disk surface as OSError instead."""

    def __init__(self, message: str = "missing file"):
        super().__init__(message)


class MissingVariableError(VariableAccessError):
    """A variable name could not be found in any visible scope."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"missing variable `{name}`")


class MissingFieldError(VariableAccessError):
    """A struct has no property with the requested name."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"missing field `{name}`")


# =============================================================================
# Execution
# =============================================================================


class ProgramError(BenchbedError):
    """
    Raised when a program run aborts.

    Attributes:
        instruction: Index of the failing instruction
        cause: The underlying VariableAccessError
        origin: Source location recorded by the loader, if any
    """

    def __init__(self, instruction: int, cause: Exception, origin: Optional[str] = None):
        self.instruction = instruction
        self.cause = cause
        self.origin = origin
        where = f"instruction {instruction}"
        if origin:
            where = f"{where} ({origin})"
        super().__init__(f"{where}: {cause}")


class TemplateBuildError(BenchbedError):
    """
    Raised when a template cannot be rendered or saved.

    kind is one of: missing_template, render, write
    """

    def __init__(self, template_path: str, output_path: str, kind: str, cause: Optional[Exception] = None):
        self.template_path = template_path
        self.output_path = output_path
        self.kind = kind
        self.cause = cause

        if kind == "missing_template":
            detail = f"template not found: {cause}"
        elif kind == "render":
            detail = f"failed to render template: {cause}"
        else:
            detail = f"failed to save render: {cause}"

        super().__init__(f"Template `{template_path}` -> `{output_path}` {detail}")
