"""
CLI interface for benchbed.

Provides commands to inspect and run beds.

A bed is a YAML file of variables, template programs and command programs
(see benchbed.loader). `run` executes it with a live progress display;
`show` prints the compiled instruction listing of its programs.
"""


import json
import time
from pathlib import Path

import click
from dotenv import load_dotenv

from benchbed import __version__


def _get_config(ctx):
    """Return the loaded config or exit with the load error."""
    if "config" not in ctx.obj:
        click.echo(f"✗ Config not loaded: {ctx.obj.get('config_error', 'Unknown error')}", err=True)
        raise SystemExit(1)
    return ctx.obj["config"]


def _load_bed(bed_path: Path):
    from benchbed.errors import BedLoadError
    from benchbed.loader import load_bed

    try:
        return load_bed(bed_path)
    except BedLoadError as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


def _program_key(bed, name: str):
    """Map the display name of the unnamed command program back to its key."""
    from benchbed.testbed import DEFAULT_COMMANDS

    if name == DEFAULT_COMMANDS and None in bed.commands:
        return None
    return name


@click.group()
@click.version_option(version=__version__, prog_name="benchbed")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (default: ./benchbed.yaml when present)",
)
@click.pass_context
def main(ctx, config_path):
    """
    benchbed - Templated process test bed.

    Render files from templates, then launch and supervise batches of
    processes over variable combinations.
    """
    from benchbed.config import load_config
    from benchbed.utils import setup_logging

    load_dotenv()

    ctx.ensure_object(dict)
    try:
        config = load_config(config_path)
    except Exception as e:
        # Commands that need the config report this themselves
        ctx.obj["config_error"] = str(e)
        return

    ctx.obj["config"] = config
    setup_logging(
        log_file=config.get_log_file_path(),
        log_level=config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )


@main.command("run")
@click.argument("bed", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--program", "-p", "programs", multiple=True, help="Run only this program (repeatable)")
@click.option("--no-live", is_flag=True, help="Disable the live progress display")
@click.option("--json", "as_json", is_flag=True, help="Print the run result as JSON")
@click.pass_context
def run(ctx, bed: Path, programs: tuple, no_live: bool, as_json: bool):
    """
    Run a bed.

    BED is the path to the bed YAML file. Globals always run first;
    --program selects which template and command programs follow.

    Examples:

        benchbed run bench.yaml

        benchbed run bench.yaml -p render -p sweep

        BENCHBED_PROGRESS=progress.txt benchbed run bench.yaml
    """
    from benchbed.testbed import TestBed
    from benchbed.utils import console, format_duration, print_error, print_success

    config = _get_config(ctx)
    definition = _load_bed(bed)

    testbed = TestBed(definition, config=config, live=False if no_live else None)
    testbed.start(list(programs) or None)

    # Ctrl-C cancels the run; the worker kills its children and finishes
    while True:
        try:
            if testbed.wait(0.1):
                break
        except KeyboardInterrupt:
            if testbed.cancel():
                console.print("Forcefully shutting down", markup=False)

    if testbed.error is not None:
        click.echo(f"✗ Run aborted: {testbed.error}", err=True)
        raise SystemExit(1)

    result = testbed.result
    if as_json:
        click.echo(json.dumps(result.to_dict(), indent=2))
    elif result.success:
        print_success(f"{bed.name} completed in {format_duration(result.duration_ms / 1000)}")
    else:
        for failure in result.failures:
            print_error(f"{failure['program']}: {failure['error']}")
        if result.cancelled:
            print_error(f"{bed.name} cancelled")
        else:
            print_error(f"{bed.name} failed")

    if not result.success:
        raise SystemExit(1)


@main.command("show")
@click.argument("bed", type=click.Path(dir_okay=False, path_type=Path))
@click.option("--program", "-p", "program_name", help="Show only this program")
def show(bed: Path, program_name: str = None):
    """
    Show the compiled instructions of a bed's programs.

    Example:

        benchbed show bench.yaml -p sweep
    """
    from benchbed.testbed import DEFAULT_COMMANDS

    definition = _load_bed(bed)

    if program_name is not None:
        program = definition.program(_program_key(definition, program_name))
        if program is None:
            click.echo(f"✗ Unknown program: {program_name}", err=True)
            raise SystemExit(1)
        click.echo(program.listing(definition.names))
        return

    sections = [("globals", definition.globals_program())]
    sections.extend(definition.template_programs())
    sections.extend(
        (DEFAULT_COMMANDS if name is None else name, program)
        for name, program in definition.command_programs()
    )
    for idx, (name, program) in enumerate(sections):
        if idx > 0:
            click.echo()
        click.echo(f"{name}:")
        listing = program.listing(definition.names)
        if listing:
            click.echo(listing)


@main.command("programs")
@click.argument("bed", type=click.Path(dir_okay=False, path_type=Path))
def list_programs(bed: Path):
    """List the programs a bed defines."""
    from benchbed.testbed import DEFAULT_COMMANDS

    definition = _load_bed(bed)

    click.echo("templates:")
    for name in definition.templates:
        click.echo(f"  {name}")
    click.echo("commands:")
    for name in definition.commands:
        click.echo(f"  {DEFAULT_COMMANDS if name is None else name}")


@main.command("check")
@click.argument("bed", type=click.Path(dir_okay=False, path_type=Path))
def check(bed: Path):
    """Validate a bed without running it."""
    start = time.monotonic()
    definition = _load_bed(bed)
    count = len(definition.templates) + len(definition.commands)
    elapsed = (time.monotonic() - start) * 1000
    click.echo(f"✓ {bed.name}: {count} program(s), {len(definition.names)} name(s) ({elapsed:.0f}ms)")


if __name__ == "__main__":
    main()
