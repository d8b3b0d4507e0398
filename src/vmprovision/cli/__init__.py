"""
vmprovision CLI - Provision a development VM, resumably.

Commands:
    vmprovision run         Run the provisioning pipeline
    vmprovision status      Show completed and pending steps
    vmprovision reset       Force steps to run again
    vmprovision versions    Show installed tool versions
    vmprovision cache       Inspect the artifact cache
"""

import click

from vmprovision.config import get_config
from vmprovision.logger import configure_logging

from .cache import cache
from .provision import reset, run, status, versions


@click.group()
@click.version_option(package_name="vmprovision")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default=None,
    help="Logging level [env: VMPROVISION_LOG_LEVEL]",
)
@click.option(
    "--log-format",
    type=click.Choice(["json", "text"]),
    default=None,
    help="Log format [env: VMPROVISION_LOG_FORMAT]",
)
def main(log_level, log_format):
    """vmprovision - resumable development VM provisioning."""
    config = get_config()
    configure_logging(log_level or config.log_level, log_format or config.log_format)


main.add_command(run)
main.add_command(status)
main.add_command(reset)
main.add_command(versions)
main.add_command(cache)


if __name__ == "__main__":
    main()
