"""Shared setup logic for CLI commands."""

from __future__ import annotations

import click


def load_config(config_file: str | None):
    """Load and validate config, turning failures into a CLI error."""
    from cohort.core.config import Config
    from cohort.core.exceptions import ConfigurationError

    try:
        config = Config(config_file=config_file)
        config.validated()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    return config


def setup_cli_logging(config) -> None:
    from cohort.core.utils.logging import setup_logging_from_config

    setup_logging_from_config(config)
