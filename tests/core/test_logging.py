"""Tests for cohort.core.utils.logging."""

import os

from loguru import logger

from cohort.core.config import Config
from cohort.core.utils.logging import setup_logging, setup_logging_from_config


def test_file_sink_receives_messages(tmp_dir):
    path = os.path.join(tmp_dir, "cohort.log")
    setup_logging(level="INFO", log_file=path)
    try:
        logger.info("reconciled 3 activities")
        logger.debug("not written at INFO")
    finally:
        logger.remove()

    with open(path) as f:
        text = f.read()
    assert "reconciled 3 activities" in text
    assert "not written" not in text


def test_setup_from_config(tmp_dir):
    path = os.path.join(tmp_dir, "from-config.log")
    config = Config(env_prefix="", defaults={"logging": {"level": "debug", "file": path}})
    setup_logging_from_config(config)
    try:
        logger.debug("cache hit")
    finally:
        logger.remove()

    with open(path) as f:
        assert "cache hit" in f.read()
