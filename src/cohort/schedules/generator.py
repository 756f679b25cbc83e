"""Schedule generation — plans + participant context -> candidate activities.

For each plan visible to the participant's study and app, the plan's
strategy picks a Schedule (or none), the scheduler expands it over the
context window, and every resulting activity has its references resolved.
Candidates come back unordered and unsaved; reconciliation decides what
to keep and persist.
"""

from __future__ import annotations

import dataclasses
from datetime import datetime

from loguru import logger

from cohort.core.exceptions import EntityNotFoundError

from .lookups import ActivityEventSource, ConsentLookup, ReferenceLookups, SchedulePlanProvider
from .models import ENROLLMENT, Schedule, ScheduleContext, ScheduledActivity, SchedulePlan
from .resolver import ReferenceResolver
from .strategies import schedule_for


def build_event_map(
    context: ScheduleContext,
    event_source: ActivityEventSource,
    consent_lookup: ConsentLookup | None = None,
) -> dict[str, datetime]:
    """Participant trigger events, normalized to the context's events zone.

    Always contains ``enrollment``. If the event store has none, it comes
    from the consent record, and failing that from account creation.
    """
    zone = context.events_zone
    recorded = event_source.get_event_map(context.health_code)

    events: dict[str, datetime] = {}
    if ENROLLMENT not in recorded:
        enrolled_on = None
        if consent_lookup is not None:
            enrolled_on = consent_lookup.get_consent_signed_on(context.health_code, context.study_id)
            if enrolled_on is not None:
                logger.warning(
                    f"Enrollment missing from event table for {context.health_code}, pulling from consent record"
                )
        if enrolled_on is None:
            enrolled_on = context.account_created_on
        if enrolled_on is not None:
            events[ENROLLMENT] = enrolled_on.astimezone(zone)

    for name, timestamp in recorded.items():
        events[name] = timestamp.astimezone(zone)
    return events


class ScheduleGenerator:
    """Produces candidate ScheduledActivity lists for a participant.

    Args:
        plan_provider: Source of the study's schedule plans.
        lookups: Backing services for reference resolution.
        strict_references: Raise on an unresolvable reference instead of
            skipping the one affected activity.
    """

    def __init__(
        self,
        plan_provider: SchedulePlanProvider,
        lookups: ReferenceLookups,
        *,
        strict_references: bool = False,
    ) -> None:
        self._plan_provider = plan_provider
        self._lookups = lookups
        self._strict_references = strict_references

    def new_resolver(self) -> ReferenceResolver:
        return ReferenceResolver(self._lookups)

    def generate(self, context: ScheduleContext) -> list[ScheduledActivity]:
        """Generate candidates for every plan applicable to *context*.

        ``context.events`` must already hold the participant's event map.
        """
        resolver = self.new_resolver()
        plans = self._plan_provider.get_schedule_plans(context.study_id, context.client_info)
        if context.schedule_plan_guid:
            plans = [p for p in plans if p.guid == context.schedule_plan_guid]

        activities: list[ScheduledActivity] = []
        for plan in plans:
            schedule = schedule_for(plan, context)
            if schedule is None:
                continue
            activities.extend(self.expand(plan, schedule, context, resolver))
        return activities

    def expand(
        self,
        plan: SchedulePlan,
        schedule: Schedule,
        context: ScheduleContext,
        resolver: ReferenceResolver,
    ) -> list[ScheduledActivity]:
        """Expand one plan's schedule and resolve the references of each occurrence."""
        expanded = schedule.get_scheduled_activities(plan, context)
        logger.debug(f"Plan {plan.guid}: {len(expanded)} occurrence(s) for {context.health_code}")

        resolved: list[ScheduledActivity] = []
        for scheduled in expanded:
            try:
                activity = resolver.resolve(context, scheduled.activity)
            except EntityNotFoundError as e:
                if self._strict_references:
                    raise
                logger.warning(f"Skipping {scheduled.guid}: {e}")
                continue
            if activity is not scheduled.activity:
                scheduled = dataclasses.replace(scheduled, activity=activity)
            resolved.append(scheduled)
        return resolved
