"""Activity store — durable ScheduledActivity records per participant.

Records are keyed by (health code, occurrence GUID). The abstract
:class:`ActivityStore` is the contract the scheduling core consumes; the
in-memory implementation keeps serialized records, as a document store
would, so timestamps and statuses round-trip the same way.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, tzinfo

from loguru import logger

from cohort.core.exceptions import EntityNotFoundError, StoreError

from .models import (
    UPDATABLE_STATUSES,
    ForwardCursorPagedList,
    ScheduledActivity,
    scheduled_activity_from_dict,
    scheduled_activity_to_dict,
    utc_now,
)


class ActivityStore(ABC):
    """Abstract persistence contract for scheduled activities."""

    @abstractmethod
    def get_activity(self, health_code: str, guid: str) -> ScheduledActivity:
        """Point lookup. Raises EntityNotFoundError if absent."""

    @abstractmethod
    def get_activities(self, time_zone: tzinfo, activities: Iterable[ScheduledActivity]) -> list[ScheduledActivity]:
        """Persisted counterparts of *activities* (same participant + GUID), in *time_zone*."""

    @abstractmethod
    def get_activity_history(
        self,
        health_code: str,
        activity_guid: str,
        scheduled_on_start: datetime,
        scheduled_on_end: datetime,
        time_zone: tzinfo,
        offset_key: str | None,
        page_size: int,
    ) -> ForwardCursorPagedList:
        """Occurrences of one plan activity scheduled within a window, oldest first."""

    @abstractmethod
    def save_activities(self, activities: Iterable[ScheduledActivity]) -> None:
        """Batch upsert."""

    @abstractmethod
    def update_activities(self, health_code: str, activities: Iterable[ScheduledActivity]) -> None:
        """Write participant-authored changes to existing records."""

    @abstractmethod
    def delete_activities_for_participant(self, health_code: str) -> int:
        """Delete every record for a participant. Returns the number deleted."""

    @abstractmethod
    def delete_activities_for_plan(
        self, plan_guid: str, *, only_updatable: bool = False, now: datetime | None = None
    ) -> int:
        """Delete records generated from a plan, optionally only those still updatable."""


class InMemoryActivityStore(ActivityStore):
    """Thread-safe in-memory store holding serialized records."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, dict]] = {}

    def _load(self, record: dict) -> ScheduledActivity:
        try:
            return scheduled_activity_from_dict(record)
        except (KeyError, TypeError, ValueError) as e:
            raise StoreError(f"Corrupt activity record {record.get('guid')}: {e}") from e

    def get_activity(self, health_code: str, guid: str) -> ScheduledActivity:
        with self._lock:
            record = self._records.get(health_code, {}).get(guid)
        if record is None:
            raise EntityNotFoundError("ScheduledActivity", guid)
        return self._load(record)

    def get_activities(self, time_zone: tzinfo, activities: Iterable[ScheduledActivity]) -> list[ScheduledActivity]:
        with self._lock:
            records = [
                self._records[a.health_code][a.guid]
                for a in activities
                if a.guid in self._records.get(a.health_code, {})
            ]
        return [self._load(r).in_zone(time_zone) for r in records]

    def get_activity_history(
        self,
        health_code: str,
        activity_guid: str,
        scheduled_on_start: datetime,
        scheduled_on_end: datetime,
        time_zone: tzinfo,
        offset_key: str | None,
        page_size: int,
    ) -> ForwardCursorPagedList:
        prefix = f"{activity_guid}:"
        with self._lock:
            records = [r for guid, r in self._records.get(health_code, {}).items() if guid.startswith(prefix)]

        matches = sorted(
            (
                a
                for a in (self._load(r) for r in records)
                if scheduled_on_start <= a.scheduled_on <= scheduled_on_end
            ),
            key=lambda a: (a.scheduled_on, a.guid),
        )
        start = 0
        if offset_key is not None:
            guids = [a.guid for a in matches]
            start = guids.index(offset_key) if offset_key in guids else len(matches)

        page = matches[start : start + page_size]
        next_key = matches[start + page_size].guid if start + page_size < len(matches) else None
        return ForwardCursorPagedList(
            items=[a.in_zone(time_zone) for a in page],
            next_page_offset_key=next_key,
            page_size=page_size,
            filters={
                "activity_guid": activity_guid,
                "scheduled_on_start": scheduled_on_start.isoformat(),
                "scheduled_on_end": scheduled_on_end.isoformat(),
            },
        )

    def save_activities(self, activities: Iterable[ScheduledActivity]) -> None:
        now = utc_now()
        records = [scheduled_activity_to_dict(a, now) for a in activities]
        if not records:
            return
        with self._lock:
            for record in records:
                self._records.setdefault(record["health_code"], {})[record["guid"]] = record
        logger.debug(f"Saved {len(records)} scheduled activities")

    def update_activities(self, health_code: str, activities: Iterable[ScheduledActivity]) -> None:
        now = utc_now()
        records = [scheduled_activity_to_dict(a, now) for a in activities]
        for record in records:
            if record["health_code"] != health_code:
                raise StoreError(f"Activity {record['guid']} does not belong to {health_code}")
        with self._lock:
            existing = self._records.setdefault(health_code, {})
            for record in records:
                existing[record["guid"]] = record

    def delete_activities_for_participant(self, health_code: str) -> int:
        with self._lock:
            removed = self._records.pop(health_code, {})
        return len(removed)

    def delete_activities_for_plan(
        self, plan_guid: str, *, only_updatable: bool = False, now: datetime | None = None
    ) -> int:
        now = now or utc_now()
        deleted = 0
        with self._lock:
            for records in self._records.values():
                for guid in list(records):
                    record = records[guid]
                    if record.get("schedule_plan_guid") != plan_guid:
                        continue
                    if only_updatable and self._load(record).status_at(now) not in UPDATABLE_STATUSES:
                        continue
                    del records[guid]
                    deleted += 1
        return deleted
