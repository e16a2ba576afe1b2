"""
Command line entry point.

    pipeline run pipelines/delivery.yml --set STAGING_URL=http://localhost:8080/health
    pipeline show delivery
"""
import asyncio
import functools
import os
import sys
from typing import Dict, Optional, Tuple

import click
from dotenv import load_dotenv

from engine.config import settings
from engine.database import RunRepository, initialize_database
from engine.pipeline.engine import PipelineDefinition
from engine.pipeline.exceptions import DefinitionError, ResourceConflict
from engine.pipeline.loader import load_definition
from engine.pipeline.types import PipelineStatus
from engine.service import build_engine, load_catalog
from utils.logger import configure_logging, get_logger

logger = get_logger(__name__)

EXIT_CODES = {
    PipelineStatus.SUCCESS: 0,
    PipelineStatus.UNSTABLE: 0,
    PipelineStatus.FAILURE: 1,
    PipelineStatus.ABORTED: 2,
}
EXIT_CONFLICT = 3


def async_command(func):
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        return asyncio.run(func(*args, **kwargs))
    return wrapper


def parse_assignments(values: Tuple[str, ...]) -> Dict[str, str]:
    parsed = {}
    for value in values:
        key, sep, rest = value.partition("=")
        if not sep or not key:
            raise click.BadParameter(f"expected KEY=VALUE, got '{value}'", param_hint="--set")
        parsed[key] = rest
    return parsed


def resolve_definition(target: str) -> PipelineDefinition:
    """A YAML file path, or the name of a known pipeline."""
    try:
        if os.path.isfile(target):
            return load_definition(target)
        catalog = load_catalog(settings)
    except DefinitionError as e:
        raise click.ClickException(str(e))
    if target not in catalog:
        raise click.ClickException(f"No pipeline file or definition named '{target}'. "
                                   f"Known: {sorted(catalog)}")
    return catalog[target]


@click.group()
@click.option("--log-level", default=None, help="Override LOG_LEVEL")
def cli(log_level: Optional[str]):
    """Run declarative delivery pipelines."""
    load_dotenv()
    configure_logging(log_level or settings.log_level, settings.log_color)


@cli.command()
@click.argument("definition")
@click.option("--set", "assignments", multiple=True, metavar="KEY=VALUE",
              help="Environment value for this run (repeatable)")
@click.option("--run-number", type=int, default=None, help="Explicit run number")
@click.option("--record/--no-record", default=True, help="Store the result in the run history")
@async_command
async def run(definition: str, assignments: Tuple[str, ...], run_number: Optional[int], record: bool):
    """Run DEFINITION (a YAML file or a pipeline name) to completion."""
    pipeline = resolve_definition(definition)
    overrides = parse_assignments(assignments)

    repository = None
    if record:
        initialize_database()
        repository = RunRepository()
    engine = build_engine(settings, repository)

    try:
        result = await engine.run(pipeline, overrides=overrides, run_number=run_number)
    except ResourceConflict as e:
        click.echo(str(e), err=True)
        sys.exit(EXIT_CONFLICT)

    for stage in result.stages:
        line = f"{stage.stage_name:<24} {stage.status.value.upper():<9} {stage.duration_seconds:7.1f}s"
        if stage.skip_reason:
            line += f"  ({stage.skip_reason})"
        elif stage.message:
            line += f"  {stage.message}"
        click.echo(line)
    for error in result.cleanup_errors:
        click.echo(f"cleanup: {error}", err=True)

    click.echo(f"{result.pipeline_name} #{result.run_number}: {result.status.value.upper()}")
    if result.status == PipelineStatus.UNSTABLE:
        click.echo("Warning: the run finished UNSTABLE", err=True)
    sys.exit(EXIT_CODES[result.status])


@cli.command()
@click.argument("definition")
def show(definition: str):
    """Print the stages of DEFINITION without running it."""
    pipeline = resolve_definition(definition)
    options = pipeline.options
    click.echo(f"{pipeline.name} (timeout {options.timeout_seconds:.0f}s, "
               f"concurrent runs {'allowed' if options.allow_concurrent_runs else 'disallowed'})")
    for stage in pipeline.stages:
        when = f" when {stage.condition.describe()}" if stage.condition is not None else ""
        required = "" if stage.required else " [optional]"
        click.echo(f"  {stage.name}{when}{required}")
        for step in stage.body:
            click.echo(f"    - {step.describe()}")


@cli.command(name="list")
def list_pipelines():
    """List the known pipeline names."""
    try:
        catalog = load_catalog(settings)
    except DefinitionError as e:
        raise click.ClickException(str(e))
    for name in sorted(catalog):
        click.echo(name)


if __name__ == "__main__":
    cli()
