"""ScheduledActivityService — the participant-facing scheduling operations.

Each request builds the participant's event map, generates candidates,
reconciles them with the store (saving what changed) and returns the
ordered, visibility-filtered list. The request path takes no lock; the
deterministic occurrence GUIDs make a race with a concurrent recompute
an idempotent double upsert.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from loguru import logger

from cohort.core.config import Config
from cohort.core.exceptions import BadRequestError

from .generator import ScheduleGenerator, build_event_map
from .lookups import ActivityEventSource, ConsentLookup, ReferenceLookups, SchedulePlanProvider
from .models import (
    ForwardCursorPagedList,
    ScheduleContext,
    ScheduledActivity,
    client_data_size,
    utc_now,
)
from .reconcile import ReconcileMode, ReconciliationEngine, order_activities, v3_visible, v4_visible
from .store import ActivityStore

_EITHER_BOTH_DATES_OR_NEITHER = (
    "Only one date of a date range provided (both scheduled_on_start and scheduled_on_end required)"
)
_AMBIGUOUS_TIMEZONE_ERROR = "scheduled_on_start and scheduled_on_end must be in the same time zone"


def validate_schedule_context(context: ScheduleContext, max_date_range_days: int) -> None:
    """Reject malformed windows. Raises BadRequestError listing every problem."""
    errors: dict[str, list[str]] = {}

    def _add(key: str, message: str) -> None:
        errors.setdefault(key, []).append(message)

    if not context.health_code:
        _add("health_code", "is required")
    if not context.study_id:
        _add("study_id", "is required")

    aware = True
    for key in ("starts_on", "ends_on"):
        value = getattr(context, key)
        if value is None:
            _add(key, "is required")
            aware = False
        elif value.tzinfo is None:
            _add(key, "must include a time zone")
            aware = False

    if aware:
        if context.ends_on < context.starts_on:
            _add("ends_on", "must not be before starts_on")
        if context.ends_on < context.now:
            _add("ends_on", "must be after the time of the request")
        if context.ends_on - context.starts_on > timedelta(days=max_date_range_days):
            _add("ends_on", f"window must be {max_date_range_days} days or less")

    if errors:
        summary = "; ".join(f"{k} {m}" for k, msgs in errors.items() for m in msgs)
        raise BadRequestError(f"ScheduleContext is invalid: {summary}", errors)


class ScheduledActivityService:
    """Generates, reconciles and updates a participant's scheduled activities."""

    def __init__(
        self,
        *,
        store: ActivityStore,
        plan_provider: SchedulePlanProvider,
        lookups: ReferenceLookups,
        event_source: ActivityEventSource,
        consent_lookup: ConsentLookup | None = None,
        config: Config | None = None,
    ) -> None:
        settings = (config or Config(env_prefix="")).validated().schedule
        self._settings = settings
        self._store = store
        self._event_source = event_source
        self._consent_lookup = consent_lookup
        self._generator = ScheduleGenerator(plan_provider, lookups, strict_references=settings.strict_references)
        self._engine = ReconciliationEngine(store, history_page_size=settings.page_size_max)

    @property
    def generator(self) -> ScheduleGenerator:
        return self._generator

    # -- Generation ----------------------------------------------------------

    def _prepare(self, context: ScheduleContext) -> ScheduleContext:
        if context is None:
            raise ValueError("context is required")
        validate_schedule_context(context, self._settings.max_date_range_days)
        events = build_event_map(context, self._event_source, self._consent_lookup)
        return context.with_events(events)

    def get_scheduled_activities(self, context: ScheduleContext) -> list[ScheduledActivity]:
        """Legacy view: narrow reconciliation, actionable activities only."""
        context = self._prepare(context)
        generated = self._generator.generate(context)
        result = self._engine.run(context, generated, ReconcileMode.NARROW)
        return order_activities(result.activities, v3_visible, context.now)

    def get_scheduled_activities_v4(self, context: ScheduleContext) -> list[ScheduledActivity]:
        """Full reconciliation; returns everything in the window except soft-deleted activities."""
        context = self._prepare(context)
        generated = self._generator.generate(context)
        result = self._engine.run(context, generated, ReconcileMode.FULL)
        return order_activities(result.activities, v4_visible, context.now)

    # -- History -------------------------------------------------------------

    def get_activity_history(
        self,
        health_code: str,
        activity_guid: str,
        scheduled_on_start: datetime | None = None,
        scheduled_on_end: datetime | None = None,
        offset_key: str | None = None,
        page_size: int = 50,
        *,
        now: datetime | None = None,
    ) -> ForwardCursorPagedList:
        if not health_code:
            raise ValueError("health_code is required")
        if not activity_guid:
            raise ValueError("activity_guid is required")

        settings = self._settings
        if page_size < settings.page_size_min or page_size > settings.page_size_max:
            raise BadRequestError(
                f"page_size must be from {settings.page_size_min}-{settings.page_size_max} records"
            )

        # Neither date given: a window centered on now.
        if scheduled_on_start is None and scheduled_on_end is None:
            now = now or utc_now()
            half = timedelta(days=settings.default_history_days / 2)
            scheduled_on_start, scheduled_on_end = now - half, now + half
        if scheduled_on_start is None or scheduled_on_end is None:
            raise BadRequestError(_EITHER_BOTH_DATES_OR_NEITHER)

        time_zone = scheduled_on_start.tzinfo
        if time_zone is None or scheduled_on_start.utcoffset() != scheduled_on_end.utcoffset():
            raise BadRequestError(_AMBIGUOUS_TIMEZONE_ERROR)

        return self._store.get_activity_history(
            health_code, activity_guid, scheduled_on_start, scheduled_on_end, time_zone, offset_key, page_size
        )

    # -- Participant updates -------------------------------------------------

    def update_scheduled_activities(self, health_code: str, activities: list[ScheduledActivity | None]) -> None:
        """Apply participant-authored started/finished/client-data changes."""
        if not health_code:
            raise ValueError("health_code is required")
        if activities is None:
            raise ValueError("activities is required")

        max_bytes = self._settings.client_data_max_bytes
        for i, activity in enumerate(activities):
            if activity is None:
                raise BadRequestError("A task in the array is null")
            if not activity.guid:
                raise BadRequestError(f"Task #{i} has no GUID")
            try:
                size = client_data_size(activity.client_data)
            except (TypeError, ValueError) as e:
                raise BadRequestError(f"Client data is not serializable: {e}") from e
            if size > max_bytes:
                raise BadRequestError(f"Client data too large ({max_bytes} bytes limit)")

        to_save: list[ScheduledActivity] = []
        for activity in activities:
            stored = self._store.get_activity(health_code, activity.guid)
            changed = False
            if activity.client_data != stored.client_data:
                stored.client_data = activity.client_data
                changed = True
            if activity.started_on is not None:
                stored.started_on = activity.started_on
                changed = True
            if activity.finished_on is not None:
                stored.finished_on = activity.finished_on
                self._event_source.publish_activity_finished(stored)
                changed = True
            if changed:
                to_save.append(stored)

        if to_save:
            self._store.update_activities(health_code, to_save)
            logger.info(f"Updated {len(to_save)} scheduled activities for {health_code}")

    def delete_activities_for_participant(self, health_code: str) -> int:
        if not health_code:
            raise ValueError("health_code is required")
        return self._store.delete_activities_for_participant(health_code)
