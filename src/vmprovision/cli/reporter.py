"""Terminal output for provisioning runs."""

from __future__ import annotations

from typing import List, Sequence

import click

from vmprovision.probe import ToolVersion
from vmprovision.runner import PipelineResult, RunReporter
from vmprovision.steps import Step

__all__ = ["ClickReporter", "echo_summary", "echo_versions"]


def _duration(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"


class ClickReporter(RunReporter):
    """Prints one line per step transition, in the style of the setup scripts."""

    def __init__(self, quiet: bool = False):
        self.quiet = quiet

    def _echo(self, message: str, err: bool = False) -> None:
        if not self.quiet:
            click.echo(message, err=err)

    def run_started(self, steps: Sequence[Step], cache_available: bool) -> None:
        self._echo(click.style("=== Provisioning ===", fg="cyan"))
        cache_state = "available" if cache_available else "unavailable"
        self._echo(f"{len(steps)} steps, artifact cache {cache_state}")
        self._echo("")

    def step_started(self, step: Step) -> None:
        self._echo(f"{click.style('==>', fg='blue')} Installing {step.label}...")

    def step_skipped(self, step: Step) -> None:
        self._echo(f"  {click.style('[SKIP]', fg='yellow')} {step.label} (already installed)")

    def step_pending(self, step: Step, cache_hit: bool) -> None:
        source = " (from cache)" if cache_hit else ""
        self._echo(f"  {click.style('[TODO]', fg='blue')} {step.label}{source}")

    def step_restored(self, step: Step, duration_seconds: float) -> None:
        self._echo(
            f"  {click.style('[OK]', fg='green')} {step.label} "
            f"restored from cache ({_duration(duration_seconds)})"
        )

    def step_completed(self, step: Step, duration_seconds: float) -> None:
        self._echo(f"  {click.style('[OK]', fg='green')} {step.label} ({_duration(duration_seconds)})")

    def step_failed(self, step: Step, error: str) -> None:
        self._echo(f"  {click.style('[FAIL]', fg='red')} {step.label}", err=True)
        self._echo(f"      {click.style(error, fg='red')}", err=True)

    def cache_fallback(self, step: Step, error: str) -> None:
        self._echo(
            f"  {click.style('[WARN]', fg='yellow')} cached {step.label} unusable, building instead: {error}"
        )

    def cache_store_failed(self, step: Step, error: str) -> None:
        self._echo(f"  {click.style('[WARN]', fg='yellow')} could not cache {step.label}: {error}")


def echo_versions(versions: List[ToolVersion]) -> None:
    width = max((len(v.label) for v in versions), default=0) + 1
    for version in versions:
        label = f"{version.label}:".ljust(width + 1)
        value = version.display() if version.found else click.style(version.display(), fg="yellow")
        click.echo(f"  {label} {value}")


def echo_summary(result: PipelineResult, versions: List[ToolVersion], dry_run: bool = False) -> None:
    """Final report: counts, versions and, on failure, how to resume."""
    click.echo()
    if dry_run:
        click.echo(click.style("=== Dry run ===", fg="cyan"))
        click.echo(f"Already complete: {len(result.skipped)}")
        click.echo(f"Would run:        {len(result.pending)}")
        return

    if result.success:
        click.echo(click.style("=== Setup complete ===", fg="green", bold=True))
    else:
        click.echo(click.style("=== Setup incomplete ===", fg="red", bold=True))

    restored = f" ({len(result.restored)} from cache)" if result.restored else ""
    click.echo(f"Skipped:   {len(result.skipped)}")
    click.echo(f"Completed: {len(result.completed)}{restored}")
    click.echo(f"Failed:    {0 if result.success else 1}")

    if versions:
        click.echo()
        click.echo(click.style("Installed tools:", bold=True))
        echo_versions(versions)

    if not result.success:
        click.echo()
        click.echo(click.style(f"Step '{result.failed}' failed: {result.error}", fg="red"), err=True)
        if result.not_attempted:
            click.echo(
                f"Remaining steps were not attempted: {', '.join(result.not_attempted)}",
                err=True,
            )
        click.echo(
            "Fix the problem and run the same command again; completed steps will be skipped.",
            err=True,
        )
