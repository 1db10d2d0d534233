"""
Template programs - Render files from the variable state via Jinja2.

Template programs run before command programs. Their commands build
objects whose base (or properties) may be rendered files:

    build(template, output_name)  renders `template` with every visible
                                  variable as context and writes it to
                                  `<output>/<output_name>`, evaluating to
                                  the written path

Commands:
- BuildAssign(output, object): bind the built object in the current scope
- Yield(output, object): append the object to the list `output` in the
  root scope, creating the list on first use

A render or write failure is reported and the program carries on;
variable resolution errors still abort the program.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, Union

from jinja2 import Environment, FileSystemLoader, TemplateError, TemplateNotFound, select_autoescape
from rich.console import Console

from .errors import TemplateBuildError
from .expr import ObjectExpr, StringExpr
from .program import Executable, Shutdown
from .schemas import Object, Struct, VarNameId, VarNames
from .state import ProgramState
from .utils import console as default_console

logger = logging.getLogger(__name__)


class TemplateBuilder:
    """
    Jinja2 environment over a list of include directories.

    Attributes:
        output: Directory rendered files are written to
        includes: Template search path, first match wins
    """

    def __init__(self, output: Path, includes: Sequence[Path]):
        self.output = Path(output)
        self.includes = [Path(path) for path in includes]
        self.environment = Environment(
            loader=FileSystemLoader([str(path) for path in self.includes]),
            autoescape=select_autoescape(["html", "htm"]),
            keep_trailing_newline=True,
        )
        self.rendered: list[str] = []

    def build(self, template_path: str, output_name: str, state: ProgramState) -> str:
        """
        Render a template into the output directory.

        Args:
            template_path: Template name, relative to an include directory
            output_name: File name (or relative path) under the output directory
            state: Supplies the render context

        Returns:
            Path of the written file

        Raises:
            TemplateBuildError: If the template is missing, fails to render,
                or the result cannot be written
            VariableAccessError: If the context cannot be resolved
        """
        output_file = self.output / output_name
        output_path = str(output_file)

        try:
            template = self.environment.get_template(template_path)
        except TemplateNotFound as e:
            raise TemplateBuildError(template_path, output_path, "missing_template", e) from e
        except TemplateError as e:
            raise TemplateBuildError(template_path, output_path, "render", e) from e

        context = state.template_context()
        try:
            rendered = template.render(context)
        except TemplateError as e:
            raise TemplateBuildError(template_path, output_path, "render", e) from e

        try:
            output_file.parent.mkdir(parents=True, exist_ok=True)
            output_file.write_text(rendered, encoding="utf-8")
        except OSError as e:
            raise TemplateBuildError(template_path, output_path, "write", e) from e

        logger.debug("Rendered %s -> %s", template_path, output_path, extra={"event": "template"})
        self.rendered.append(output_path)
        return output_path


# =============================================================================
# Expressions
# =============================================================================


@dataclass(frozen=True)
class TemplateBuild:
    """`build(template, output_name)`; evaluates to the written path."""
    template: StringExpr
    output: StringExpr

    def evaluate(self, state: ProgramState, builder: TemplateBuilder) -> str:
        return builder.build(self.template.evaluate(state), self.output.evaluate(state), state)

    def describe(self, names: VarNames) -> str:
        return f"build({self.template.describe(names)}, {self.output.describe(names)})"


@dataclass(frozen=True)
class BuildObjectExpr:
    """A struct whose base and properties may be rendered templates."""
    base: Union[StringExpr, TemplateBuild]
    properties: tuple[tuple[VarNameId, Union[ObjectExpr, TemplateBuild]], ...] = ()

    def evaluate(self, state: ProgramState, builder: TemplateBuilder) -> Struct:
        if isinstance(self.base, TemplateBuild):
            base = self.base.evaluate(state, builder)
        else:
            base = self.base.evaluate(state)

        properties = {}
        for name, value in self.properties:
            if isinstance(value, TemplateBuild):
                properties[name] = Struct(value.evaluate(state, builder))
            else:
                properties[name] = value.evaluate(state)
        return Struct(base, properties)

    def describe(self, names: VarNames) -> str:
        if not self.properties:
            return self.base.describe(names)
        props = ", ".join(
            f"{names.name_of(name)}: {value.describe(names)}" for name, value in self.properties
        )
        return f"{self.base.describe(names)} {{{props}}}"


@dataclass(frozen=True)
class BuildAssign:
    output: VarNameId
    object: BuildObjectExpr

    def describe(self, names: VarNames) -> str:
        return f"build {names.name_of(self.output)} = {self.object.describe(names)}"


@dataclass(frozen=True)
class Yield:
    output: VarNameId
    object: Union[BuildObjectExpr, ObjectExpr]

    def describe(self, names: VarNames) -> str:
        return f"yield {names.name_of(self.output)} <- {self.object.describe(names)}"


TemplateCommand = Union[BuildAssign, Yield]


def yield_value(output: VarNameId, value: Object, state: ProgramState) -> None:
    """Append value to the root-scope list `output`, creating it if needed."""
    if not state.scopes:
        state.new_scope()
    root = state.scopes[0]
    existing = root.get(output)
    if isinstance(existing, list):
        existing.append(value)
    else:
        root[output] = [value]


# =============================================================================
# Executor
# =============================================================================


class TemplateRunner(Executable[TemplateCommand]):
    """
    Executes template commands.

    Attributes:
        builder: Renders and writes templates
        errors: Build failures reported so far
    """

    def __init__(self, builder: TemplateBuilder, console: Optional[Console] = None):
        self.builder = builder
        self.console = console or default_console
        self.errors: list[TemplateBuildError] = []

    def execute(self, command: TemplateCommand, state: ProgramState, shutdown: Shutdown) -> None:
        try:
            if isinstance(command, BuildAssign):
                state.insert_var(command.output, self._build(command.object, state))
            elif isinstance(command, Yield):
                yield_value(command.output, self._build(command.object, state), state)
            else:
                raise TypeError(f"Unknown template command: {command!r}")
        except TemplateBuildError as e:
            self.errors.append(e)
            logger.error("%s", e, extra={"event": "template_failed"})
            self.console.print(f"{e}\n", markup=False, highlight=False)

    def _build(self, expr: Union[BuildObjectExpr, ObjectExpr], state: ProgramState) -> Object:
        if isinstance(expr, BuildObjectExpr):
            return expr.evaluate(state, self.builder)
        return expr.evaluate(state)

    def finish(self, state: ProgramState, shutdown: Shutdown) -> None:
        logger.debug("Template program finished, %d file(s) rendered", len(self.builder.rendered))

    def shutdown(self) -> None:
        pass
