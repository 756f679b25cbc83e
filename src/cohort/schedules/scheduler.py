"""Interval scheduler — expands a Schedule into dated occurrences.

Occurrences are computed in the context's events zone (the participant's
initial time zone) so their GUIDs stay stable if the participant travels,
then reported in the request's zone.
"""

from __future__ import annotations

from collections.abc import Iterator
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from .models import ScheduledActivity, Task, occurrence_guid

if TYPE_CHECKING:
    from .models import Schedule, ScheduleContext, SchedulePlan

# Upper bound on occurrences per schedule per pass; a window is at most a few weeks.
_MAX_OCCURRENCES = 2000


def anchor_event(schedule: Schedule, context: ScheduleContext) -> datetime | None:
    """Return the first of the schedule's trigger events the participant has recorded."""
    for event_id in schedule.event_ids:
        timestamp = context.events.get(event_id)
        if timestamp is not None:
            return timestamp
    return None


def _occurrence_times(schedule: Schedule, first: datetime, not_before: datetime) -> Iterator[datetime]:
    """Yield candidate occurrence times, in order, starting at *first*.

    Recurring schedules skip whole intervals that end before *not_before*,
    so a participant enrolled long ago doesn't walk years of occurrences.
    """
    interval = schedule.interval
    if not schedule.times:
        current = first
        if interval is not None and current < not_before:
            current = current + interval * ((not_before - current) // interval)
        while True:
            yield current
            if interval is None:
                return
            current = current + interval

    zone = first.tzinfo
    day = first.date()
    step_days = max((interval or timedelta(days=1)).days, 1)
    if interval is not None and day < not_before.date():
        day = day + timedelta(days=((not_before.date() - day).days // step_days) * step_days)
    while True:
        for t in sorted(schedule.times):
            candidate = datetime.combine(day, t, tzinfo=zone)
            if candidate >= first:
                yield candidate
                if interval is None:
                    return
        day = day + timedelta(days=step_days)


def occurrences(schedule: Schedule, context: ScheduleContext) -> list[datetime]:
    """Occurrence times (events zone) in the half-open window [starts_on, ends_on)."""
    anchor = anchor_event(schedule, context)
    if anchor is None:
        return []

    zone = context.events_zone
    first = anchor.astimezone(zone) + schedule.delay
    starts_on = context.starts_on.astimezone(zone)
    ends_on = context.ends_on.astimezone(zone)

    result: list[datetime] = []
    for count, occurrence in enumerate(_occurrence_times(schedule, first, starts_on)):
        if occurrence >= ends_on or count >= _MAX_OCCURRENCES:
            break
        if occurrence >= starts_on:
            result.append(occurrence)
        elif schedule.one_time:
            # A one-time activity from before the window stays pending until it expires.
            if schedule.expires is None or occurrence + schedule.expires > context.now:
                result.append(occurrence)
    return result


def expand_schedule(schedule: Schedule, plan: SchedulePlan, context: ScheduleContext) -> list[ScheduledActivity]:
    """Expand *schedule* into ScheduledActivity instances for *context*."""
    expanded: list[ScheduledActivity] = []
    for occurrence in occurrences(schedule, context):
        expires_on = occurrence + schedule.expires if schedule.expires is not None else None
        for activity in schedule.activities:
            sa = ScheduledActivity(
                guid=occurrence_guid(activity.guid, occurrence),
                health_code=context.health_code,
                activity=activity,
                scheduled_on=occurrence,
                expires_on=expires_on,
                schedule_plan_guid=schedule.schedule_plan_guid or plan.guid,
            )
            expanded.append(sa.in_zone(context.time_zone))
    return expanded


def expand_tasks(schedule: Schedule, plan: SchedulePlan, context: ScheduleContext) -> list[Task]:
    """Legacy expansion: one Task per activity per occurrence, grouped by run key."""
    tasks: list[Task] = []
    for sa in expand_schedule(schedule, plan, context):
        local = sa.scheduled_on.astimezone(context.events_zone).replace(tzinfo=None)
        tasks.append(
            Task(
                guid=sa.guid,
                health_code=sa.health_code,
                activity=sa.activity,
                scheduled_on=sa.scheduled_on,
                run_key=f"{plan.guid}:{local.isoformat(timespec='milliseconds')}",
                expires_on=sa.expires_on,
                schedule_plan_guid=sa.schedule_plan_guid,
            )
        )
    return tasks
