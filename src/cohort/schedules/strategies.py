"""Schedule strategies — decide which Schedule, if any, a participant gets.

A plan's ``Strategy`` is a tagged variant ``(kind, config)``. Dispatch goes
through a registered-handler table rather than a class hierarchy; third
parties extend it with :func:`register_strategy`.

Built-in kinds:

``simple``
    ``{"schedule": Schedule}`` — everyone gets the same schedule.
``ab_test``
    ``{"groups": [{"percentage": 50, "schedule": Schedule}, ...]}`` —
    participants are bucketed by a stable hash of their health code.
``criteria``
    ``{"schedules": [{"schedule": Schedule, "min_app_version": 2,
    "max_app_version": None, "all_of_groups": [...], "none_of_groups": [...]}]}``
    — the first entry whose criteria match the participant wins.
"""

from __future__ import annotations

import dataclasses
import hashlib
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from loguru import logger

from cohort.core.exceptions import ConfigurationError

from .models import ClientInfo, Participant, Schedule, SchedulePlan


class Subject(Protocol):
    """Anything describing a participant: a ScheduleContext or a Participant."""

    health_code: str
    client_info: ClientInfo
    data_groups: frozenset[str]


StrategyHandler = Callable[[Mapping[str, Any], SchedulePlan, Subject], Schedule | None]

_HANDLERS: dict[str, StrategyHandler] = {}


def register_strategy(kind: str, handler: StrategyHandler) -> None:
    """Register (or replace) the handler for a strategy kind."""
    _HANDLERS[kind] = handler


def registered_kinds() -> list[str]:
    return sorted(_HANDLERS)


def schedule_for(plan: SchedulePlan, subject: Subject) -> Schedule | None:
    """Return the schedule *plan* assigns to *subject*, stamped with the plan GUID.

    None means the plan does not apply to this participant.
    """
    handler = _HANDLERS.get(plan.strategy.kind)
    if handler is None:
        raise ConfigurationError(
            f"Schedule plan {plan.guid} uses unknown strategy '{plan.strategy.kind}'. Available: {registered_kinds()}"
        )
    schedule = handler(plan.strategy.config, plan, subject)
    if schedule is None:
        return None
    return dataclasses.replace(schedule, schedule_plan_guid=plan.guid)


def schedule_participants(
    plan: SchedulePlan, participants: Iterable[Participant]
) -> list[tuple[Participant, Schedule]]:
    """Batch form of :func:`schedule_for` used by the bulk recompute path."""
    results = []
    for participant in participants:
        schedule = schedule_for(plan, participant)
        if schedule is not None:
            results.append((participant, schedule))
    logger.debug(f"Plan {plan.guid}: {len(results)} participant schedule(s)")
    return results


# ---------------------------------------------------------------------------
# Built-in handlers
# ---------------------------------------------------------------------------


def _simple(config: Mapping[str, Any], plan: SchedulePlan, subject: Subject) -> Schedule | None:
    schedule = config.get("schedule")
    if not isinstance(schedule, Schedule):
        raise ConfigurationError(f"Schedule plan {plan.guid}: simple strategy requires a 'schedule'")
    return schedule


def bucket_of(health_code: str) -> int:
    """Stable 0-99 bucket for a health code."""
    digest = hashlib.sha256(health_code.encode("utf-8")).hexdigest()
    return int(digest, 16) % 100


def _ab_test(config: Mapping[str, Any], plan: SchedulePlan, subject: Subject) -> Schedule | None:
    groups = config.get("groups") or []
    total = sum(int(g.get("percentage", 0)) for g in groups)
    if total != 100:
        raise ConfigurationError(f"Schedule plan {plan.guid}: A/B group percentages sum to {total}, not 100")

    bucket = bucket_of(subject.health_code)
    ceiling = 0
    for group in groups:
        ceiling += int(group.get("percentage", 0))
        if bucket < ceiling:
            return group["schedule"]
    return None


def _matches(entry: Mapping[str, Any], subject: Subject) -> bool:
    version = subject.client_info.app_version
    min_version = entry.get("min_app_version")
    max_version = entry.get("max_app_version")
    if version is not None:
        if min_version is not None and version < min_version:
            return False
        if max_version is not None and version > max_version:
            return False
    groups = subject.data_groups
    if not set(entry.get("all_of_groups") or ()).issubset(groups):
        return False
    if set(entry.get("none_of_groups") or ()) & groups:
        return False
    return True


def _criteria(config: Mapping[str, Any], plan: SchedulePlan, subject: Subject) -> Schedule | None:
    for entry in config.get("schedules") or []:
        if _matches(entry, subject):
            return entry["schedule"]
    return None


register_strategy("simple", _simple)
register_strategy("ab_test", _ab_test)
register_strategy("criteria", _criteria)
