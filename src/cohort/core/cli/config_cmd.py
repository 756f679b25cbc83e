"""cohort config — inspect the effective configuration."""

from __future__ import annotations

import click


@click.group()
def config() -> None:
    """Inspect configuration."""


@config.command()
@click.option("--config", "config_file", type=click.Path(exists=True, dir_okay=False), default=None)
def show(config_file: str | None) -> None:
    """Print the validated configuration as YAML."""
    import yaml

    from cohort.core.cli.common import load_config

    validated = load_config(config_file).validated()
    click.echo(yaml.safe_dump(validated.model_dump(), sort_keys=False), nl=False)
