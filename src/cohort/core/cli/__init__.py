"""Cohort CLI — entry point for preview and config commands."""

import click

from cohort import __version__


@click.group()
@click.version_option(version=__version__, package_name="cohort")
def main() -> None:
    """Cohort — participant activity scheduling."""


# Register subcommands (lazy imports keep startup fast)
from .config_cmd import config
from .preview_cmd import preview

main.add_command(preview)
main.add_command(config)
