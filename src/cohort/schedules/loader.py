"""Load schedule plans from YAML.

Plan files look like::

    plans:
      - guid: daily-mood
        study_id: study
        strategy:
          kind: simple
          schedule:
            label: Daily mood
            interval: P1D
            times: ["09:00", "18:00"]
            expires: PT6H
            activities:
              - label: Mood survey
                guid: mood
                survey: {guid: survey-guid}

Durations are ISO 8601 (``P1D``, ``PT12H``, ``P1W``) or mappings of
``timedelta`` keyword arguments (``{hours: 12}``). Every ``schedule`` key
anywhere inside a strategy config is turned into a :class:`Schedule`, so
``ab_test`` groups and ``criteria`` entries load the same way as ``simple``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import time, timedelta
from pathlib import Path
from typing import Any

import yaml

from cohort.core.exceptions import ConfigurationError

from .models import ENROLLMENT, Schedule, SchedulePlan, Strategy, activity_from_dict

_DURATION_RE = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


def parse_duration(value: Any) -> timedelta | None:
    if value is None:
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, Mapping):
        try:
            return timedelta(**{str(k): float(v) for k, v in value.items()})
        except TypeError as e:
            raise ConfigurationError(f"Invalid duration {dict(value)}: {e}") from e
    match = _DURATION_RE.match(str(value).strip().upper())
    if match is None or str(value).strip().upper() in ("P", "PT"):
        raise ConfigurationError(f"Invalid ISO 8601 duration: {value!r}")
    return timedelta(**{k: int(v) for k, v in match.groupdict().items() if v is not None})


def parse_time(value: Any) -> time:
    if isinstance(value, time):
        return value
    # YAML 1.1 reads unquoted 09:00 as a sexagesimal integer (minutes).
    if isinstance(value, int):
        return time(value // 60, value % 60)
    try:
        return time.fromisoformat(str(value))
    except ValueError as e:
        raise ConfigurationError(f"Invalid time of day: {value!r}") from e


def schedule_from_dict(data: Mapping[str, Any]) -> Schedule:
    activities = data.get("activities") or []
    try:
        return Schedule(
            label=data.get("label", ""),
            activities=tuple(activity_from_dict(a) for a in activities),
            event_id=data.get("event_id", ENROLLMENT),
            delay=parse_duration(data.get("delay")) or timedelta(0),
            interval=parse_duration(data.get("interval")),
            times=tuple(parse_time(t) for t in data.get("times") or ()),
            expires=parse_duration(data.get("expires")),
        )
    except (KeyError, ValueError) as e:
        raise ConfigurationError(f"Invalid schedule '{data.get('label', '')}': {e}") from e


def _load_schedules(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {
            k: schedule_from_dict(v) if k == "schedule" and isinstance(v, Mapping) else _load_schedules(v)
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [_load_schedules(v) for v in value]
    return value


def plan_from_dict(data: Mapping[str, Any]) -> SchedulePlan:
    strategy = dict(data.get("strategy") or {})
    kind = strategy.pop("kind", None)
    if not data.get("guid") or not data.get("study_id") or not kind:
        raise ConfigurationError(f"Schedule plan needs guid, study_id and strategy.kind: {dict(data)}")
    return SchedulePlan(
        guid=data["guid"],
        study_id=data["study_id"],
        strategy=Strategy(kind=kind, config=_load_schedules(strategy)),
        label=data.get("label", ""),
        min_app_version=data.get("min_app_version"),
        max_app_version=data.get("max_app_version"),
    )


def plans_from_dicts(items: list[Mapping[str, Any]]) -> list[SchedulePlan]:
    return [plan_from_dict(item) for item in items]


def load_plans(path: str | Path) -> list[SchedulePlan]:
    """Read a YAML plan file. Raises ConfigurationError if it is missing or malformed."""
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Plan file not found: {path}")
    with open(path) as f:
        data = yaml.safe_load(f) or {}
    if isinstance(data, list):
        return plans_from_dicts(data)
    return plans_from_dicts(data.get("plans") or [])
