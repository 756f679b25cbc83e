"""Cohort — participant activity scheduling for research studies."""

__version__ = "0.1.0"
