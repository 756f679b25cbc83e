"""Reconciliation of generated activities against persisted ones.

Occurrence GUIDs are ``<plan activity guid>:<scheduled local time>``, so
regenerating the same occurrence always reproduces the same GUID. That
makes the merge a keyed lookup instead of an insert:

- persisted and no longer updatable (started, finished, deleted, unknown)
  -> the persisted record wins and is not saved again;
- persisted but updatable, or not persisted at all
  -> the generated activity wins and is saved, unless already expired.

Narrow mode only consults the store for GUIDs the scheduler produced.
Full mode also pulls every persisted occurrence in the window for the
plan activities touched, and returns the ones nothing regenerated
(activities triggered by participant events) alongside the merge.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from operator import attrgetter

from loguru import logger

from .models import (
    UPDATABLE_STATUSES,
    VISIBLE_STATUSES,
    ScheduleContext,
    ScheduledActivity,
    ScheduledActivityStatus,
)
from .store import ActivityStore

Visibility = Callable[[ScheduledActivity, datetime], bool]


class ReconcileMode(StrEnum):
    NARROW = "narrow"
    FULL = "full"


def v3_visible(activity: ScheduledActivity, now: datetime) -> bool:
    """Legacy view: only activities the participant can still act on."""
    return activity.status_at(now) in VISIBLE_STATUSES


def v4_visible(activity: ScheduledActivity, now: datetime) -> bool:
    """Everything except soft-deleted activities."""
    return activity.status_at(now) != ScheduledActivityStatus.DELETED


def order_activities(
    activities: Iterable[ScheduledActivity], visible: Visibility, now: datetime
) -> list[ScheduledActivity]:
    """Filter by *visible* and sort ascending by scheduled time."""
    return sorted((a for a in activities if visible(a, now)), key=attrgetter("scheduled_on"))


@dataclass
class ReconcileResult:
    activities: list[ScheduledActivity]
    to_persist: list[ScheduledActivity]


def reconcile(
    generated: list[ScheduledActivity],
    persisted: dict[str, ScheduledActivity],
    now: datetime,
    *,
    include_unmatched: bool = False,
) -> ReconcileResult:
    """Merge *generated* with *persisted* (keyed by GUID).

    *persisted* is not modified. With ``include_unmatched``, persisted
    activities no generated occurrence matched are appended to the result.
    """
    remaining = dict(persisted)
    final: list[ScheduledActivity] = []
    to_persist: list[ScheduledActivity] = []

    for activity in generated:
        stored = remaining.pop(activity.guid, None)
        if stored is not None:
            stored_status = stored.status_at(now)
            if stored_status == ScheduledActivityStatus.UNKNOWN:
                logger.warning(f"Activity {stored.guid} has unrecognized status '{stored.stored_status}', keeping it")
            if stored_status not in UPDATABLE_STATUSES:
                final.append(stored)
                continue
        final.append(activity)
        if activity.status_at(now) != ScheduledActivityStatus.EXPIRED:
            to_persist.append(activity)

    if include_unmatched:
        final.extend(remaining.values())
    return ReconcileResult(activities=final, to_persist=to_persist)


class ReconciliationEngine:
    """Fetches persisted state, merges, and writes back what changed.

    Args:
        store: The activity store.
        history_page_size: Page size used when pulling persisted occurrences in full mode.
    """

    def __init__(self, store: ActivityStore, *, history_page_size: int = 100) -> None:
        self._store = store
        self._history_page_size = history_page_size

    def persisted_for(
        self, context: ScheduleContext, generated: list[ScheduledActivity], mode: ReconcileMode
    ) -> dict[str, ScheduledActivity]:
        if mode == ReconcileMode.NARROW:
            found = self._store.get_activities(context.time_zone, generated)
            return {a.guid: a for a in found}

        persisted: dict[str, ScheduledActivity] = {}
        activity_guids = {a.activity_guid for a in generated}
        for activity_guid in sorted(activity_guids):
            offset_key = None
            while True:
                page = self._store.get_activity_history(
                    context.health_code,
                    activity_guid,
                    context.starts_on,
                    context.ends_on,
                    context.time_zone,
                    offset_key,
                    self._history_page_size,
                )
                for activity in page.items:
                    if activity.scheduled_on < context.ends_on:
                        persisted[activity.guid] = activity
                offset_key = page.next_page_offset_key
                if offset_key is None:
                    break
        return persisted

    def run(
        self, context: ScheduleContext, generated: list[ScheduledActivity], mode: ReconcileMode
    ) -> ReconcileResult:
        """Reconcile and persist. The save happens before the result is returned."""
        persisted = self.persisted_for(context, generated, mode)
        result = reconcile(generated, persisted, context.now, include_unmatched=mode == ReconcileMode.FULL)
        self._store.save_activities(result.to_persist)
        logger.debug(
            f"Reconciled {len(generated)} generated / {len(persisted)} persisted for {context.health_code}: "
            f"{len(result.to_persist)} saved"
        )
        return result
