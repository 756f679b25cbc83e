"""Tests for cohort.schedules.store.InMemoryActivityStore."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from cohort.core.exceptions import EntityNotFoundError, StoreError
from cohort.schedules.models import ScheduledActivity, occurrence_guid

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def daily_walks(task_activity):
    def _make(days=5, health_code="hc-1", plan_guid="plan-1", activity_guid="walk"):
        return [
            ScheduledActivity(
                guid=occurrence_guid(activity_guid, NOW + timedelta(days=d)),
                health_code=health_code,
                activity=task_activity(activity_guid),
                scheduled_on=NOW + timedelta(days=d),
                schedule_plan_guid=plan_guid,
            )
            for d in range(days)
        ]

    return _make


class TestReads:
    def test_save_and_get(self, store, daily_walks):
        walk = daily_walks(1)[0]
        store.save_activities([walk])

        loaded = store.get_activity("hc-1", walk.guid)

        assert loaded.persistent
        assert loaded.scheduled_on == walk.scheduled_on
        assert loaded.activity == walk.activity

    def test_missing_activity(self, store):
        with pytest.raises(EntityNotFoundError, match="ScheduledActivity"):
            store.get_activity("hc-1", "walk:2024-03-10T12:00:00.000")

    def test_get_activities_returns_only_persisted(self, store, daily_walks):
        walks = daily_walks(3)
        store.save_activities(walks[:2])
        tokyo = ZoneInfo("Asia/Tokyo")

        found = store.get_activities(tokyo, walks)

        assert sorted(a.guid for a in found) == sorted(a.guid for a in walks[:2])
        assert all(a.scheduled_on.tzinfo is tokyo for a in found)

    def test_other_participants_isolated(self, store, daily_walks):
        store.save_activities(daily_walks(2, health_code="hc-2"))
        assert store.get_activities(timezone.utc, daily_walks(2)) == []

    def test_corrupt_record(self, store, daily_walks):
        walk = daily_walks(1)[0]
        store.save_activities([walk])
        store._records["hc-1"][walk.guid]["scheduled_on"] = None

        with pytest.raises(StoreError, match="Corrupt"):
            store.get_activity("hc-1", walk.guid)


class TestHistory:
    def test_pages_in_order(self, store, daily_walks):
        walks = daily_walks(5)
        store.save_activities(reversed(walks))
        store.save_activities(daily_walks(5, activity_guid="run"))

        seen = []
        offset_key = None
        while True:
            page = store.get_activity_history(
                "hc-1", "walk", NOW, NOW + timedelta(days=10), timezone.utc, offset_key, 2
            )
            assert len(page.items) <= 2
            seen.extend(a.guid for a in page.items)
            offset_key = page.next_page_offset_key
            if offset_key is None:
                break

        assert seen == [a.guid for a in walks]

    def test_window_bounds(self, store, daily_walks):
        store.save_activities(daily_walks(5))
        page = store.get_activity_history(
            "hc-1", "walk", NOW + timedelta(days=1), NOW + timedelta(days=3), timezone.utc, None, 10
        )
        assert [a.scheduled_on for a in page.items] == [NOW + timedelta(days=d) for d in (1, 2, 3)]
        assert page.next_page_offset_key is None
        assert page.filters["activity_guid"] == "walk"


class TestWrites:
    def test_update_persists_changes(self, store, daily_walks):
        walk = daily_walks(1)[0]
        store.save_activities([walk])

        store.update_activities("hc-1", [replace(walk, started_on=NOW)])

        assert store.get_activity("hc-1", walk.guid).started_on == NOW

    def test_update_rejects_foreign_activity(self, store, daily_walks):
        own = daily_walks(1)[0]
        foreign = daily_walks(1, health_code="hc-2")[0]

        with pytest.raises(StoreError, match="does not belong"):
            store.update_activities("hc-1", [own, foreign])
        assert store._records == {}

    def test_delete_for_participant(self, store, daily_walks):
        store.save_activities(daily_walks(3))
        store.save_activities(daily_walks(2, health_code="hc-2"))

        assert store.delete_activities_for_participant("hc-1") == 3
        assert store.delete_activities_for_participant("hc-1") == 0
        assert len(store.get_activities(timezone.utc, daily_walks(2, health_code="hc-2"))) == 2

    def test_delete_for_plan(self, store, daily_walks):
        store.save_activities(daily_walks(3))
        store.save_activities(daily_walks(2, plan_guid="plan-2", activity_guid="run"))

        assert store.delete_activities_for_plan("plan-1") == 3
        assert store.get_activities(timezone.utc, daily_walks(3)) == []
        assert len(store.get_activities(timezone.utc, daily_walks(2, plan_guid="plan-2", activity_guid="run"))) == 2

    def test_delete_for_plan_only_updatable(self, store, daily_walks):
        walks = daily_walks(3)
        started = replace(walks[0], started_on=NOW)
        store.save_activities([started, *walks[1:]])

        deleted = store.delete_activities_for_plan("plan-1", only_updatable=True, now=NOW)

        assert deleted == 2
        assert [a.guid for a in store.get_activities(timezone.utc, walks)] == [started.guid]
