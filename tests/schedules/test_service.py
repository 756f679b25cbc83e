"""Tests for cohort.schedules.service.ScheduledActivityService."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from cohort.core.config import Config
from cohort.core.exceptions import BadRequestError, EntityNotFoundError
from cohort.schedules.models import ENROLLMENT, ScheduledActivityStatus
from cohort.schedules.service import ScheduledActivityService, validate_schedule_context

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def daily_plan(plans, daily_schedule, simple_plan):
    plan = simple_plan(daily_schedule())
    plans.save(plan)
    return plan


class TestValidation:
    def test_valid_context(self, make_context):
        validate_schedule_context(make_context(), 14)

    def test_ends_before_starts(self, make_context):
        with pytest.raises(BadRequestError) as exc_info:
            validate_schedule_context(make_context(starts_on=NOW + timedelta(days=3)), 14)
        assert "must not be before starts_on" in exc_info.value.errors["ends_on"]

    def test_window_too_long(self, make_context):
        with pytest.raises(BadRequestError, match="14 days or less"):
            validate_schedule_context(make_context(ends_on=NOW + timedelta(days=15)), 14)

    def test_ends_in_the_past(self, make_context):
        ctx = make_context(starts_on=NOW - timedelta(days=3), ends_on=NOW - timedelta(days=1))
        with pytest.raises(BadRequestError, match="after the time of the request"):
            validate_schedule_context(ctx, 14)

    def test_naive_datetimes(self, make_context):
        ctx = make_context(ends_on=datetime(2024, 3, 11, 12, 0))
        with pytest.raises(BadRequestError) as exc_info:
            validate_schedule_context(ctx, 14)
        assert exc_info.value.errors == {"ends_on": ["must include a time zone"]}

    def test_collects_every_problem(self, make_context):
        with pytest.raises(BadRequestError) as exc_info:
            validate_schedule_context(make_context(health_code="", study_id=""), 14)
        assert set(exc_info.value.errors) == {"health_code", "study_id"}

    def test_service_rejects_invalid_window(self, service, make_context):
        with pytest.raises(BadRequestError):
            service.get_scheduled_activities(make_context(ends_on=NOW + timedelta(days=30)))

    def test_service_requires_context(self, service):
        with pytest.raises(ValueError, match="context"):
            service.get_scheduled_activities(None)


class TestDailyTaskLifecycle:
    def test_generates_and_persists(self, service, store, daily_plan, make_context):
        activities = service.get_scheduled_activities(make_context())

        assert [a.guid for a in activities] == ["walk:2024-03-10T12:00:00.000", "walk:2024-03-11T12:00:00.000"]
        assert len(store._records["hc-1"]) == 2

    def test_guids_are_idempotent(self, service, store, daily_plan, make_context):
        first = service.get_scheduled_activities(make_context())
        second = service.get_scheduled_activities(make_context())
        assert [a.guid for a in first] == [a.guid for a in second]
        assert len(store._records["hc-1"]) == 2

    def test_finishing_an_activity(self, service, event_source, daily_plan, make_context):
        first, second = service.get_scheduled_activities(make_context())
        finished_on = NOW + timedelta(hours=1)

        service.update_scheduled_activities("hc-1", [replace(first, started_on=NOW, finished_on=finished_on)])

        assert event_source.get_event_map("hc-1")["activity:walk:finished"] == finished_on
        assert [a.guid for a in service.get_scheduled_activities(make_context())] == [second.guid]

        v4 = service.get_scheduled_activities_v4(make_context())
        assert [a.guid for a in v4] == [first.guid, second.guid]
        assert v4[0].status_at(NOW) == ScheduledActivityStatus.FINISHED

    def test_started_activity_survives_plan_change(
        self, service, plans, daily_plan, daily_schedule, simple_plan, make_context
    ):
        first, _ = service.get_scheduled_activities(make_context())
        service.update_scheduled_activities("hc-1", [replace(first, started_on=NOW)])

        plans.save(simple_plan(daily_schedule(expires=timedelta(hours=2))))
        first_again, second = service.get_scheduled_activities(make_context())

        assert first_again.started_on == NOW
        assert first_again.expires_on is None
        assert second.expires_on == second.scheduled_on + timedelta(hours=2)

    def test_expired_activities_not_persisted(
        self, service, store, plans, event_source, daily_schedule, simple_plan, make_context
    ):
        plans.save(simple_plan(daily_schedule(expires=timedelta(hours=1))))
        event_source.publish_event("hc-1", ENROLLMENT, NOW - timedelta(days=3))
        ctx = make_context(starts_on=NOW - timedelta(days=2), ends_on=NOW + timedelta(days=1))

        v4 = service.get_scheduled_activities_v4(ctx)

        assert [a.status_at(NOW) for a in v4] == [
            ScheduledActivityStatus.EXPIRED,
            ScheduledActivityStatus.EXPIRED,
            ScheduledActivityStatus.AVAILABLE,
        ]
        assert list(store._records["hc-1"]) == ["walk:2024-03-10T12:00:00.000"]

    def test_no_plans(self, service, store, make_context):
        assert service.get_scheduled_activities(make_context()) == []
        assert store._records == {}


class TestHistory:
    @pytest.fixture
    def seeded(self, service, daily_plan, make_context):
        service.get_scheduled_activities(make_context())

    def test_default_window_centered_on_now(self, service, seeded):
        page = service.get_activity_history("hc-1", "walk", now=NOW)
        assert [a.scheduled_on for a in page.items] == [NOW, NOW + timedelta(days=1)]

    def test_explicit_window(self, service, seeded):
        page = service.get_activity_history("hc-1", "walk", NOW, NOW + timedelta(hours=1))
        assert len(page.items) == 1

    def test_page_size_bounds(self, service):
        with pytest.raises(BadRequestError, match="page_size must be from 5-100"):
            service.get_activity_history("hc-1", "walk", page_size=4)
        with pytest.raises(BadRequestError):
            service.get_activity_history("hc-1", "walk", page_size=101)

    def test_one_date_only(self, service):
        with pytest.raises(BadRequestError, match="Only one date"):
            service.get_activity_history("hc-1", "walk", scheduled_on_start=NOW)

    def test_mismatched_zones(self, service):
        end = (NOW + timedelta(days=1)).astimezone(timezone(timedelta(hours=-5)))
        with pytest.raises(BadRequestError, match="same time zone"):
            service.get_activity_history("hc-1", "walk", NOW, end)

    def test_required_arguments(self, service):
        with pytest.raises(ValueError, match="health_code"):
            service.get_activity_history("", "walk")
        with pytest.raises(ValueError, match="activity_guid"):
            service.get_activity_history("hc-1", "")


class TestUpdates:
    def test_null_entry(self, service):
        with pytest.raises(BadRequestError, match="null"):
            service.update_scheduled_activities("hc-1", [None])

    def test_missing_guid(self, service, daily_plan, make_context):
        first, _ = service.get_scheduled_activities(make_context())
        with pytest.raises(BadRequestError, match="Task #0 has no GUID"):
            service.update_scheduled_activities("hc-1", [replace(first, guid="")])

    def test_client_data_too_large(self, store, plans, lookups, event_source, daily_plan, make_context):
        config = Config(env_prefix="", defaults={"schedule": {"client_data_max_bytes": 16}})
        service = ScheduledActivityService(
            store=store, plan_provider=plans, lookups=lookups, event_source=event_source, config=config
        )
        first, _ = service.get_scheduled_activities(make_context())

        with pytest.raises(BadRequestError, match="16 bytes limit"):
            service.update_scheduled_activities("hc-1", [replace(first, client_data={"notes": "x" * 20})])
        assert store.get_activity("hc-1", first.guid).client_data is None

    def test_raw_bytes_measured_by_length(self, store, plans, lookups, event_source, daily_plan, make_context):
        config = Config(env_prefix="", defaults={"schedule": {"client_data_max_bytes": 16}})
        service = ScheduledActivityService(
            store=store, plan_provider=plans, lookups=lookups, event_source=event_source, config=config
        )
        first, second = service.get_scheduled_activities(make_context())

        service.update_scheduled_activities("hc-1", [replace(first, client_data=b"x" * 10)])
        assert store.get_activity("hc-1", first.guid).client_data == b"x" * 10

        with pytest.raises(BadRequestError, match="16 bytes limit"):
            service.update_scheduled_activities("hc-1", [replace(second, client_data=b"x" * 17)])

    def test_unserializable_client_data(self, service, store, daily_plan, make_context):
        first, _ = service.get_scheduled_activities(make_context())
        with pytest.raises(BadRequestError, match="not serializable"):
            service.update_scheduled_activities("hc-1", [replace(first, client_data={"at": object()})])
        assert store.get_activity("hc-1", first.guid).client_data is None

    def test_client_data_saved(self, service, store, daily_plan, make_context):
        first, _ = service.get_scheduled_activities(make_context())
        service.update_scheduled_activities("hc-1", [replace(first, client_data={"steps": 1200})])
        assert store.get_activity("hc-1", first.guid).client_data == {"steps": 1200}

    def test_unknown_activity(self, service, daily_plan, make_context):
        first, _ = service.get_scheduled_activities(make_context())
        with pytest.raises(EntityNotFoundError):
            service.update_scheduled_activities("hc-1", [replace(first, guid="walk:1999-01-01T00:00:00.000")])

    def test_required_arguments(self, service):
        with pytest.raises(ValueError):
            service.update_scheduled_activities("", [])
        with pytest.raises(ValueError):
            service.update_scheduled_activities("hc-1", None)


def test_delete_activities_for_participant(service, daily_plan, make_context):
    service.get_scheduled_activities(make_context())
    assert service.delete_activities_for_participant("hc-1") == 2
    assert service.delete_activities_for_participant("hc-1") == 0
