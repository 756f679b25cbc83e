"""Shared test fixtures for cohort."""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from cohort.core.config import Config, reset_config
from cohort.schedules.lookups import (
    InMemoryActivityEventSource,
    InMemoryConsentLookup,
    InMemoryParticipantDirectory,
    InMemoryReferenceLookups,
    InMemorySchedulePlanProvider,
)
from cohort.schedules.models import (
    ENROLLMENT,
    Activity,
    Participant,
    Schedule,
    ScheduleContext,
    SchedulePlan,
    Strategy,
    SurveyReference,
    TaskReference,
)
from cohort.schedules.service import ScheduledActivityService
from cohort.schedules.store import InMemoryActivityStore

NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc)
T0 = NOW - timedelta(days=1)


@pytest.fixture(autouse=True)
def _reset_singleton():
    """Reset config singleton between tests."""
    reset_config()
    yield
    reset_config()


@pytest.fixture
def tmp_dir():
    """Provide a temporary directory that is cleaned up after the test."""
    with tempfile.TemporaryDirectory() as d:
        yield d


@pytest.fixture
def tmp_config_file(tmp_dir):
    """Create a temporary YAML config file."""
    import yaml

    config_data = {
        "schedule": {"max_date_range_days": 7, "client_data_max_bytes": 1024},
        "recompute": {"base_delay_ms": 100, "jitter_ms": 50},
    }
    config_path = os.path.join(tmp_dir, "config.yaml")
    with open(config_path, "w") as f:
        yaml.dump(config_data, f)
    return config_path


@pytest.fixture
def now():
    return NOW


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


@pytest.fixture
def task_activity():
    def _make(guid="walk", label="Walk", schema=None):
        return Activity(label=label, guid=guid, task=TaskReference("walk-task", schema))

    return _make


@pytest.fixture
def survey_activity():
    def _make(guid="mood", survey_guid="survey-1", created_on=None):
        return Activity(label="Mood", guid=guid, survey=SurveyReference(survey_guid, created_on=created_on))

    return _make


@pytest.fixture
def daily_schedule(task_activity):
    """Daily schedule at the enrollment time of day, never expiring."""

    def _make(*activities, **overrides):
        fields = dict(
            label="Daily",
            activities=activities or (task_activity(),),
            interval=timedelta(days=1),
        )
        fields.update(overrides)
        return Schedule(**fields)

    return _make


@pytest.fixture
def simple_plan():
    def _make(schedule, guid="plan-1", study_id="study", **kwargs):
        return SchedulePlan(guid=guid, study_id=study_id, strategy=Strategy("simple", {"schedule": schedule}), **kwargs)

    return _make


@pytest.fixture
def make_context():
    """Context for participant hc-1 enrolled at T0, window [NOW, NOW + 2d)."""

    def _make(**overrides):
        fields = dict(
            health_code="hc-1",
            study_id="study",
            starts_on=NOW,
            ends_on=NOW + timedelta(days=2),
            events={ENROLLMENT: T0},
            account_created_on=T0,
            now=NOW,
        )
        fields.update(overrides)
        return ScheduleContext(**fields)

    return _make


@pytest.fixture
def participant():
    return Participant(health_code="hc-1", study_id="study", account_created_on=T0)


# ---------------------------------------------------------------------------
# In-memory collaborators
# ---------------------------------------------------------------------------


@pytest.fixture
def store():
    return InMemoryActivityStore()


@pytest.fixture
def plans():
    return InMemorySchedulePlanProvider()


@pytest.fixture
def lookups():
    return InMemoryReferenceLookups()


@pytest.fixture
def event_source():
    return InMemoryActivityEventSource()


@pytest.fixture
def consents():
    return InMemoryConsentLookup()


@pytest.fixture
def directory(participant):
    return InMemoryParticipantDirectory([participant])


@pytest.fixture
def config():
    return Config(env_prefix="")


@pytest.fixture
def service(store, plans, lookups, event_source, consents, config):
    return ScheduledActivityService(
        store=store,
        plan_provider=plans,
        lookups=lookups,
        event_source=event_source,
        consent_lookup=consents,
        config=config,
    )
