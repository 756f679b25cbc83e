"""Data models for participant activity scheduling.

Activities and their references are frozen value objects: resolving a
reference yields a new value, never an in-place edit. ScheduledActivity is
the one mutable record, changed only by participant interaction.

Status is derived from timestamps at read time:
    SCHEDULED -> AVAILABLE -> [STARTED] -> FINISHED
    SCHEDULED/AVAILABLE/STARTED -> EXPIRED (window passed without finishing)
    any -> DELETED (soft delete)
"""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone, tzinfo
from enum import StrEnum
from typing import Any

ENROLLMENT = "enrollment"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActivityType(StrEnum):
    TASK = "task"
    SURVEY = "survey"
    COMPOUND = "compound"


class ScheduledActivityStatus(StrEnum):
    SCHEDULED = "scheduled"
    AVAILABLE = "available"
    STARTED = "started"
    FINISHED = "finished"
    EXPIRED = "expired"
    DELETED = "deleted"
    UNKNOWN = "unknown"  # persisted status string we don't recognize


# Safe to discard and regenerate: the participant hasn't touched these yet.
UPDATABLE_STATUSES = frozenset({ScheduledActivityStatus.SCHEDULED, ScheduledActivityStatus.AVAILABLE})

VISIBLE_STATUSES = frozenset(
    {
        ScheduledActivityStatus.SCHEDULED,
        ScheduledActivityStatus.AVAILABLE,
        ScheduledActivityStatus.STARTED,
    }
)

_KNOWN_STATUS_VALUES = {s.value for s in ScheduledActivityStatus} - {ScheduledActivityStatus.UNKNOWN.value}


# ---------------------------------------------------------------------------
# Client / participant
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ClientInfo:
    """The calling app, as declared in its User-Agent."""

    app_name: str = ""
    app_version: int | None = None
    os_name: str = ""


@dataclass(frozen=True)
class Participant:
    """An enrolled participant, as seen by the bulk recompute path."""

    health_code: str
    study_id: str
    account_created_on: datetime
    time_zone: tzinfo = timezone.utc
    client_info: ClientInfo = field(default_factory=ClientInfo)
    data_groups: frozenset[str] = frozenset()


# ---------------------------------------------------------------------------
# Activity references
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SchemaReference:
    """Upload schema reference. ``revision`` None means "latest for this client"."""

    id: str
    revision: int | None = None


@dataclass(frozen=True)
class SurveyReference:
    """Survey reference. ``created_on`` None means "most recently published"."""

    guid: str
    identifier: str = ""
    created_on: datetime | None = None


@dataclass(frozen=True)
class TaskReference:
    identifier: str
    schema: SchemaReference | None = None


@dataclass(frozen=True)
class CompoundActivity:
    """A bundle of schemas and surveys under one task identifier.

    With both lists empty this is a bare reference to a named definition.
    """

    task_identifier: str
    schema_list: tuple[SchemaReference, ...] = ()
    survey_list: tuple[SurveyReference, ...] = ()

    @property
    def is_reference(self) -> bool:
        return not self.schema_list and not self.survey_list


@dataclass(frozen=True)
class Activity:
    """Work a participant is asked to do. Exactly one of task/survey/compound is set.

    ``guid`` identifies the activity within its schedule plan and is the
    prefix of every ScheduledActivity GUID generated from it.
    """

    label: str
    guid: str = ""
    label_detail: str = ""
    task: TaskReference | None = None
    survey: SurveyReference | None = None
    compound_activity: CompoundActivity | None = None

    def __post_init__(self) -> None:
        refs = [r for r in (self.task, self.survey, self.compound_activity) if r is not None]
        if len(refs) != 1:
            raise ValueError(f"Activity '{self.label}' must have exactly one of task, survey or compound_activity")
        if ":" in self.guid:
            raise ValueError(f"Activity guid may not contain ':' ({self.guid})")

    @property
    def activity_type(self) -> ActivityType:
        if self.compound_activity is not None:
            return ActivityType.COMPOUND
        if self.survey is not None:
            return ActivityType.SURVEY
        return ActivityType.TASK


# ---------------------------------------------------------------------------
# Schedule context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ScheduleContext:
    """Immutable parameters for one generation pass for one participant.

    ``time_zone`` is the zone of the request; ``initial_time_zone`` is the
    zone the participant first reported, used to anchor events and
    occurrence GUIDs so they survive travel.
    """

    health_code: str
    study_id: str
    starts_on: datetime
    ends_on: datetime
    time_zone: tzinfo = timezone.utc
    initial_time_zone: tzinfo | None = None
    events: Mapping[str, datetime] = field(default_factory=dict)
    account_created_on: datetime | None = None
    client_info: ClientInfo = field(default_factory=ClientInfo)
    data_groups: frozenset[str] = frozenset()
    schedule_plan_guid: str | None = None
    now: datetime = field(default_factory=utc_now)

    @property
    def events_zone(self) -> tzinfo:
        return self.initial_time_zone or self.time_zone

    def with_events(self, events: Mapping[str, datetime]) -> ScheduleContext:
        return dataclasses.replace(self, events=dict(events))

    def with_schedule_plan(self, plan_guid: str | None) -> ScheduleContext:
        return dataclasses.replace(self, schedule_plan_guid=plan_guid)

    @classmethod
    def for_participant(
        cls,
        participant: Participant,
        *,
        days: int,
        now: datetime | None = None,
        events: Mapping[str, datetime] | None = None,
    ) -> ScheduleContext:
        """Build a context covering ``days`` from now in the participant's zone."""
        now = now or utc_now()
        starts_on = now.astimezone(participant.time_zone)
        return cls(
            health_code=participant.health_code,
            study_id=participant.study_id,
            starts_on=starts_on,
            ends_on=starts_on + timedelta(days=days),
            time_zone=participant.time_zone,
            events=dict(events or {}),
            account_created_on=participant.account_created_on,
            client_info=participant.client_info,
            data_groups=participant.data_groups,
            now=now,
        )


# ---------------------------------------------------------------------------
# Plans and schedules
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Strategy:
    """Tagged strategy variant; ``kind`` selects the handler in cohort.schedules.strategies."""

    kind: str
    config: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Schedule:
    """What to schedule and when, relative to a trigger event.

    ``event_id`` may list several events separated by commas; the first
    one the participant has recorded wins. ``interval`` None means the
    schedule fires once.
    """

    label: str
    activities: tuple[Activity, ...]
    event_id: str = ENROLLMENT
    delay: timedelta = timedelta(0)
    interval: timedelta | None = None
    times: tuple[time, ...] = ()
    expires: timedelta | None = None
    schedule_plan_guid: str | None = None

    def __post_init__(self) -> None:
        if self.interval is not None and self.interval <= timedelta(0):
            raise ValueError(f"Schedule '{self.label}' interval must be positive")
        if not self.activities:
            raise ValueError(f"Schedule '{self.label}' has no activities")

    @property
    def event_ids(self) -> list[str]:
        return [e.strip() for e in self.event_id.split(",") if e.strip()]

    @property
    def one_time(self) -> bool:
        return self.interval is None

    def get_scheduled_activities(self, plan: SchedulePlan, context: ScheduleContext) -> list[ScheduledActivity]:
        """Expand this schedule into occurrences for the context's window."""
        from .scheduler import expand_schedule

        return expand_schedule(self, plan, context)


@dataclass(frozen=True)
class SchedulePlan:
    """Per-study schedule configuration, read-only to the scheduling core."""

    guid: str
    study_id: str
    strategy: Strategy
    label: str = ""
    min_app_version: int | None = None
    max_app_version: int | None = None

    def applies_to(self, client_info: ClientInfo | None) -> bool:
        if client_info is None or client_info.app_version is None:
            return True
        version = client_info.app_version
        if self.min_app_version is not None and version < self.min_app_version:
            return False
        if self.max_app_version is not None and version > self.max_app_version:
            return False
        return True


# ---------------------------------------------------------------------------
# Scheduled activities
# ---------------------------------------------------------------------------


def occurrence_guid(activity_guid: str, scheduled_on: datetime) -> str:
    """Deterministic GUID for one occurrence: ``<activity guid>:<local timestamp>``."""
    local = scheduled_on.replace(tzinfo=None)
    return f"{activity_guid}:{local.isoformat(timespec='milliseconds')}"


def activity_guid_of(guid: str) -> str:
    """Recover the plan activity GUID from an occurrence GUID."""
    return guid.split(":", 1)[0]


@dataclass
class ScheduledActivity:
    """One dated occurrence of an Activity for one participant."""

    guid: str
    health_code: str
    activity: Activity
    scheduled_on: datetime
    expires_on: datetime | None = None
    schedule_plan_guid: str | None = None
    started_on: datetime | None = None
    finished_on: datetime | None = None
    client_data: Any = None
    hidden: bool = False
    persistent: bool = False
    stored_status: str | None = None

    def status_at(self, now: datetime) -> ScheduledActivityStatus:
        if self.stored_status is not None and self.stored_status not in _KNOWN_STATUS_VALUES:
            return ScheduledActivityStatus.UNKNOWN
        if self.hidden:
            return ScheduledActivityStatus.DELETED
        if self.finished_on is not None:
            return ScheduledActivityStatus.FINISHED
        if self.started_on is not None:
            return ScheduledActivityStatus.STARTED
        if self.expires_on is not None and self.expires_on <= now:
            return ScheduledActivityStatus.EXPIRED
        if self.scheduled_on > now:
            return ScheduledActivityStatus.SCHEDULED
        return ScheduledActivityStatus.AVAILABLE

    @property
    def status(self) -> ScheduledActivityStatus:
        return self.status_at(utc_now())

    @property
    def activity_guid(self) -> str:
        return activity_guid_of(self.guid)

    def in_zone(self, zone: tzinfo) -> ScheduledActivity:
        """Copy with all timestamps expressed in *zone*."""
        return dataclasses.replace(
            self,
            scheduled_on=self.scheduled_on.astimezone(zone),
            expires_on=self.expires_on.astimezone(zone) if self.expires_on else None,
        )


@dataclass
class Task:
    """Legacy scheduled task. Tasks sharing a ``run_key`` came from one scheduler run."""

    guid: str
    health_code: str
    activity: Activity
    scheduled_on: datetime
    run_key: str
    expires_on: datetime | None = None
    schedule_plan_guid: str | None = None
    started_on: datetime | None = None
    finished_on: datetime | None = None


@dataclass
class ForwardCursorPagedList:
    """One page of results plus the key to request the next page."""

    items: list[ScheduledActivity]
    next_page_offset_key: str | None
    page_size: int
    filters: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def client_data_size(client_data: Any) -> int:
    """Size in bytes: raw length for bytes, UTF-8 length of the JSON encoding otherwise.

    Raises TypeError or ValueError when the value has no JSON encoding.
    """
    if client_data is None:
        return 0
    if isinstance(client_data, (bytes, bytearray)):
        return len(client_data)
    return len(json.dumps(client_data, separators=(",", ":")).encode("utf-8"))


def _dt(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_dt(value: str | datetime | None) -> datetime | None:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value) if value else None


def activity_to_dict(activity: Activity) -> dict[str, Any]:
    data: dict[str, Any] = {"label": activity.label, "guid": activity.guid, "label_detail": activity.label_detail}
    if activity.task is not None:
        schema = activity.task.schema
        data["task"] = {
            "identifier": activity.task.identifier,
            "schema": {"id": schema.id, "revision": schema.revision} if schema else None,
        }
    if activity.survey is not None:
        data["survey"] = _survey_to_dict(activity.survey)
    if activity.compound_activity is not None:
        compound = activity.compound_activity
        data["compound_activity"] = {
            "task_identifier": compound.task_identifier,
            "schema_list": [{"id": s.id, "revision": s.revision} for s in compound.schema_list],
            "survey_list": [_survey_to_dict(s) for s in compound.survey_list],
        }
    return data


def _survey_to_dict(ref: SurveyReference) -> dict[str, Any]:
    return {"guid": ref.guid, "identifier": ref.identifier, "created_on": _dt(ref.created_on)}


def _survey_from_dict(data: Mapping[str, Any]) -> SurveyReference:
    return SurveyReference(
        guid=data["guid"],
        identifier=data.get("identifier", ""),
        created_on=_parse_dt(data.get("created_on")),
    )


def activity_from_dict(data: Mapping[str, Any]) -> Activity:
    task = survey = compound = None
    if data.get("task"):
        schema = data["task"].get("schema")
        task = TaskReference(
            identifier=data["task"]["identifier"],
            schema=SchemaReference(schema["id"], schema.get("revision")) if schema else None,
        )
    if data.get("survey"):
        survey = _survey_from_dict(data["survey"])
    if data.get("compound_activity"):
        c = data["compound_activity"]
        compound = CompoundActivity(
            task_identifier=c["task_identifier"],
            schema_list=tuple(SchemaReference(s["id"], s.get("revision")) for s in c.get("schema_list", [])),
            survey_list=tuple(_survey_from_dict(s) for s in c.get("survey_list", [])),
        )
    return Activity(
        label=data.get("label", ""),
        guid=data.get("guid", ""),
        label_detail=data.get("label_detail", ""),
        task=task,
        survey=survey,
        compound_activity=compound,
    )


def scheduled_activity_to_dict(activity: ScheduledActivity, now: datetime | None = None) -> dict[str, Any]:
    """Serialize for storage; the derived status is stored alongside for queries."""
    return {
        "guid": activity.guid,
        "health_code": activity.health_code,
        "activity": activity_to_dict(activity.activity),
        "scheduled_on": _dt(activity.scheduled_on),
        "expires_on": _dt(activity.expires_on),
        "schedule_plan_guid": activity.schedule_plan_guid,
        "started_on": _dt(activity.started_on),
        "finished_on": _dt(activity.finished_on),
        "client_data": activity.client_data,
        "hidden": activity.hidden,
        "status": activity.status_at(now or utc_now()).value,
    }


def scheduled_activity_from_dict(data: Mapping[str, Any]) -> ScheduledActivity:
    scheduled_on = _parse_dt(data.get("scheduled_on"))
    if scheduled_on is None:
        raise ValueError(f"Stored activity {data.get('guid')} has no scheduled_on")
    return ScheduledActivity(
        guid=data["guid"],
        health_code=data["health_code"],
        activity=activity_from_dict(data["activity"]),
        scheduled_on=scheduled_on,
        expires_on=_parse_dt(data.get("expires_on")),
        schedule_plan_guid=data.get("schedule_plan_guid"),
        started_on=_parse_dt(data.get("started_on")),
        finished_on=_parse_dt(data.get("finished_on")),
        client_data=data.get("client_data"),
        hidden=bool(data.get("hidden", False)),
        persistent=True,
        stored_status=data.get("status"),
    )
