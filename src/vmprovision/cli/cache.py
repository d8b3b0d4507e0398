"""vmprovision CLI - artifact cache commands."""

from pathlib import Path

import click

from vmprovision.cache import ArtifactCache
from vmprovision.config import get_config


def _size(num_bytes: int) -> str:
    size = float(num_bytes)
    for unit in ("B", "KiB", "MiB"):
        if size < 1024:
            return f"{size:.0f}{unit}" if unit == "B" else f"{size:.1f}{unit}"
        size /= 1024
    return f"{size:.1f}GiB"


@click.group()
def cache():
    """Inspect the artifact cache."""
    pass


@cache.command("list")
@click.option(
    "--cache-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Artifact cache root [env: VMPROVISION_CACHE_DIR]",
)
def cache_list(cache_dir):
    """List cached build artifacts."""
    artifact_cache = ArtifactCache(cache_dir or get_config().cache_path)

    if not artifact_cache.available():
        click.echo(
            click.style("Artifact cache unavailable", fg="yellow")
            + f" ({artifact_cache.runtimes_dir} does not exist)"
        )
        return

    entries = artifact_cache.entries()
    if not entries:
        click.echo(f"No cached artifacts in {artifact_cache.runtimes_dir}")
        return

    click.echo(click.style(f"Cached artifacts in {artifact_cache.runtimes_dir}:", bold=True))
    for entry in entries:
        click.echo(
            f"  {str(entry.key):30} {_size(entry.size_bytes):>10}  "
            f"{entry.modified_at.strftime('%Y-%m-%d %H:%M')}"
        )
    click.echo(f"\nTotal: {len(entries)} artifact(s)")
