"""vmprovision CLI - run, status, reset and versions commands."""

import json
import sys
from pathlib import Path
from typing import List, Optional

import click

from vmprovision.cache import ArtifactCache
from vmprovision.catalog import OPTIONAL_CATALOGS, load_default_steps, load_steps
from vmprovision.cli.reporter import ClickReporter, echo_summary, echo_versions
from vmprovision.config import get_config
from vmprovision.environment import DiscoveredEnvironment
from vmprovision.errors import StepDefinitionError
from vmprovision.ledger import CompletionLedger
from vmprovision.probe import EnvironmentProbe
from vmprovision.runner import PipelineRunner
from vmprovision.steps import Step
from vmprovision.telemetry import configure_tracing, shutdown_tracing

steps_file_option = click.option(
    "--steps-file",
    "-s",
    type=click.Path(dir_okay=False, path_type=Path),
    default=None,
    help="YAML step file (defaults to the built-in language runtime pipeline)",
)
with_option = click.option(
    "--with",
    "extras",
    multiple=True,
    type=click.Choice(sorted(OPTIONAL_CATALOGS)),
    help="Append an optional built-in step catalog (repeatable)",
)
ledger_dir_option = click.option(
    "--ledger-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Completion marker directory [env: VMPROVISION_LEDGER_DIR]",
)


def _load_steps(steps_file: Optional[Path], extras=()) -> List[Step]:
    if steps_file is not None and extras:
        raise click.UsageError("--with only applies to the built-in pipeline, not --steps-file")
    try:
        if steps_file is None:
            return load_default_steps(extras)
        return load_steps(steps_file)
    except (FileNotFoundError, StepDefinitionError) as e:
        raise click.ClickException(str(e))


def _ledger(ledger_dir: Optional[Path]) -> CompletionLedger:
    return CompletionLedger(ledger_dir or get_config().ledger_path)


@click.command("run")
@steps_file_option
@with_option
@ledger_dir_option
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Artifact cache root [env: VMPROVISION_CACHE_DIR]",
)
@click.option("--no-cache", is_flag=True, help="Ignore the artifact cache for this run")
@click.option("--dry-run", is_flag=True, help="Show what would run without changing anything")
@click.option(
    "--otlp-endpoint",
    envvar="OTEL_EXPORTER_OTLP_ENDPOINT",
    default=None,
    help="Export run/step spans to this OTLP gRPC endpoint",
)
@click.option(
    "--format",
    "-f",
    "output_format",
    type=click.Choice(["table", "json"]),
    default="table",
    help="Output format",
)
def run(steps_file, extras, ledger_dir, cache_dir, no_cache, dry_run, otlp_endpoint, output_format):
    """Run the provisioning pipeline, resuming where the last run stopped.

    Steps already recorded in the ledger are skipped. The first failing step
    stops the run; running the command again retries it.

    Examples:

        # Built-in language runtimes
        vmprovision run

        # Custom step file, preview only
        vmprovision run --steps-file steps.yaml --dry-run
    """
    config = get_config()
    steps = _load_steps(steps_file, extras)

    ledger = _ledger(ledger_dir)
    cache = None if no_cache else ArtifactCache(cache_dir or config.cache_path)

    endpoint = otlp_endpoint or config.otlp_endpoint
    tracing = configure_tracing(endpoint, config.service_name) if endpoint else False

    runner = PipelineRunner(
        ledger=ledger,
        cache=cache,
        reporter=ClickReporter(quiet=output_format == "json"),
        dry_run=dry_run,
    )
    try:
        result = runner.run(steps)
    except StepDefinitionError as e:
        raise click.ClickException(str(e))
    finally:
        if tracing:
            shutdown_tracing()

    versions = []
    if not dry_run:
        probe = EnvironmentProbe(timeout=config.probe_timeout_seconds)
        versions = probe.collect(result.environment)

    if output_format == "json":
        payload = result.to_dict()
        payload["versions"] = {v.label: v.version for v in versions}
        click.echo(json.dumps(payload, indent=2))
    else:
        echo_summary(result, versions, dry_run=dry_run)

    sys.exit(result.exit_code)


@click.command("status")
@steps_file_option
@with_option
@ledger_dir_option
def status(steps_file, extras, ledger_dir):
    """Show which steps are complete."""
    steps = _load_steps(steps_file, extras)
    ledger = _ledger(ledger_dir)

    click.echo()
    click.echo(click.style("=== Provisioning Status ===", fg="cyan"))
    click.echo(f"Ledger: {ledger.path}")
    click.echo()

    done = 0
    for step in steps:
        if ledger.is_complete(step.name):
            done += 1
            when = ledger.completed_at(step.name)
            suffix = f"  {when}" if when else ""
            click.echo(f"  {click.style('[DONE]', fg='green')} {step.name:15} {step.label}{suffix}")
        else:
            click.echo(f"  {click.style('[    ]', fg='yellow')} {step.name:15} {step.label}")

    known = {s.name for s in steps}
    unknown = [name for name in ledger.completed_steps() if name not in known]
    if unknown:
        click.echo()
        click.echo(f"Markers for steps not in this pipeline: {', '.join(unknown)}")

    click.echo()
    click.echo(f"Progress: {done}/{len(steps)} steps completed")
    if ledger.run_complete():
        click.echo(click.style("Last run completed successfully", fg="green"))


@click.command("reset")
@click.argument("names", nargs=-1)
@click.option("--all", "reset_all", is_flag=True, help="Remove every completion marker")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@ledger_dir_option
def reset(names, reset_all, yes, ledger_dir):
    """Force steps to run again on the next run.

    Examples:

        vmprovision reset ruby

        vmprovision reset --all --yes
    """
    if not names and not reset_all:
        raise click.UsageError("Give one or more step names, or --all")
    if names and reset_all:
        raise click.UsageError("Step names and --all are mutually exclusive")

    ledger = _ledger(ledger_dir)

    if reset_all:
        if not yes:
            click.confirm(f"Remove all completion markers in {ledger.path}?", abort=True)
        removed = ledger.reset_all()
        click.echo(f"Removed {removed} marker(s)")
        return

    for name in names:
        try:
            removed = ledger.reset(name)
        except StepDefinitionError as e:
            raise click.ClickException(str(e))
        if removed:
            click.echo(f"{click.style('reset', fg='green')} {name}")
        else:
            click.echo(f"{click.style('not complete', fg='yellow')} {name}")


@click.command("versions")
@steps_file_option
@with_option
@ledger_dir_option
def versions(steps_file, extras, ledger_dir):
    """Show installed tool versions.

    Tools installed by completed steps are looked up with the PATH and
    variables those steps declare, even if the shell profile has not been
    reloaded yet.
    """
    config = get_config()
    ledger = _ledger(ledger_dir)
    env = DiscoveredEnvironment.from_os()
    for step in _load_steps(steps_file, extras):
        if ledger.is_complete(step.name):
            env = env.applied(step.env)

    found = EnvironmentProbe(timeout=config.probe_timeout_seconds).collect(env)
    click.echo(click.style("Installed tools:", bold=True))
    echo_versions(found)
