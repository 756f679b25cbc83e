"""
Layered configuration for cohort services.

Sources, lowest precedence first:
    1. Schema defaults (``CohortConfig`` field defaults)
    2. Deployment defaults passed to ``Config(defaults=...)``
    3. Config file (YAML or JSON)
    4. Environment variables (``COHORT_SECTION__KEY``)

Usage:
    config = Config(config_file="config/cohort.yaml")

    config.get("schedule.max_date_range_days")   # raw merged value
    config.validated().recompute.base_delay_ms    # typed, validated view
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import TYPE_CHECKING, Any

import yaml
from loguru import logger

from .exceptions import ConfigurationError

if TYPE_CHECKING:
    from .config_schema import CohortConfig

_DEFAULT_ENV_PREFIX = "COHORT_"

_FILE_LOADERS = {
    ".yaml": yaml.safe_load,
    ".yml": yaml.safe_load,
    ".json": json.load,
}


def _merge(target: dict[str, Any], overrides: dict[str, Any]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            _merge(existing, value)
        else:
            target[key] = value


def _env_value(raw: str) -> Any:
    """Parse an env var the way YAML would read it, so ``8`` is an int and ``true`` a bool."""
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:
        return raw


class Config:
    """
    Merged configuration tree for one process.

    Env vars use double-underscore for nesting:
    COHORT_RECOMPUTE__MAX_FAILURES=3 -> config["recompute"]["max_failures"] = 3
    """

    def __init__(
        self,
        config_file: str | None = None,
        env_prefix: str = _DEFAULT_ENV_PREFIX,
        defaults: dict[str, Any] | None = None,
    ):
        """
        Args:
            config_file: Path to a YAML or JSON configuration file.
            env_prefix: Prefix for environment variable overrides; empty disables them.
            defaults: Deployment-specific values layered over the schema defaults.
        """
        self.config_file = config_file
        self.env_prefix = env_prefix or ""
        self.config_data: dict[str, Any] = self._schema_defaults()

        if defaults:
            _merge(self.config_data, defaults)
        if config_file:
            _merge(self.config_data, self._read_file(Path(config_file)))
        self._apply_env()

    @staticmethod
    def _schema_defaults() -> dict[str, Any]:
        from .config_schema import CohortConfig

        return CohortConfig().model_dump()

    @staticmethod
    def _read_file(path: Path) -> dict[str, Any]:
        if not path.exists():
            raise ConfigurationError(f"Config file not found: {path}")
        loader = _FILE_LOADERS.get(path.suffix.lower())
        if loader is None:
            raise ConfigurationError(f"Unsupported config file type: {path}")
        with open(path) as f:
            data = loader(f) or {}
        if not isinstance(data, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping, got {type(data).__name__}")
        logger.debug(f"Loaded config from {path}")
        return data

    def _apply_env(self) -> None:
        if not self.env_prefix:
            return
        for env_key, raw in os.environ.items():
            if not env_key.startswith(self.env_prefix):
                continue
            *sections, leaf = env_key[len(self.env_prefix) :].lower().split("__")
            node = self.config_data
            for section in sections:
                if not isinstance(node.get(section), dict):
                    node[section] = {}
                node = node[section]
            node[leaf] = _env_value(raw)

    def get(self, key_path: str, default: Any = None) -> Any:
        """Look up a dot-separated path such as ``"locks.expiry_seconds"``."""
        node: Any = self.config_data
        for part in key_path.split("."):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return node

    def set(self, key_path: str, value: Any) -> None:
        *sections, leaf = key_path.split(".")
        node = self.config_data
        for section in sections:
            node = node.setdefault(section, {})
        node[leaf] = value

    def validated(self) -> CohortConfig:
        """Typed view of the merged tree. Raises ConfigurationError on invalid values."""
        from pydantic import ValidationError

        from .config_schema import CohortConfig

        try:
            return CohortConfig.model_validate(self.config_data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e


_config_instance: Config | None = None


def get_config(
    config_file: str | None = None,
    env_prefix: str = _DEFAULT_ENV_PREFIX,
) -> Config:
    """Process-wide Config, created on first use."""
    global _config_instance
    if _config_instance is None:
        _config_instance = Config(config_file=config_file, env_prefix=env_prefix)
    return _config_instance


def reset_config() -> None:
    global _config_instance
    _config_instance = None
