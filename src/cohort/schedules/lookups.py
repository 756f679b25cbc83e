"""Collaborator interfaces consumed by the scheduling core.

Plans, published surveys, schema revisions, compound activity definitions,
trigger events, consents and the enrolled-participant roster all live in
services outside this package. Each is described here by an abstract base
class, with a thread-safe in-memory implementation for tests, local
development and the ``cohort preview`` command.

Reference lookups return a tri-state :class:`LookupResult` instead of
raising: "not published yet" is an expected answer, not an error.
"""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Generic, TypeVar

from loguru import logger

from .models import ClientInfo, CompoundActivity, Participant, ScheduledActivity, SchedulePlan

T = TypeVar("T")


class LookupStatus(StrEnum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class LookupResult(Generic[T]):
    status: LookupStatus
    value: T | None = None
    error: str = ""

    @classmethod
    def found(cls, value: T) -> LookupResult[T]:
        return cls(LookupStatus.FOUND, value)

    @classmethod
    def not_found(cls) -> LookupResult[T]:
        return cls(LookupStatus.NOT_FOUND)

    @classmethod
    def failed(cls, error: str) -> LookupResult[T]:
        return cls(LookupStatus.ERROR, error=error)


@dataclass(frozen=True)
class PublishedSurvey:
    guid: str
    identifier: str
    created_on: datetime


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------


class SchedulePlanProvider(ABC):
    @abstractmethod
    def get_schedule_plans(self, study_id: str, client_info: ClientInfo | None = None) -> list[SchedulePlan]:
        """Plans for a study. With ``client_info`` None, plans are not filtered by app version."""


class ReferenceLookups(ABC):
    @abstractmethod
    def latest_published_survey(self, study_id: str, survey_guid: str) -> LookupResult[PublishedSurvey]:
        """Most recently published version of a survey."""

    @abstractmethod
    def latest_schema_revision(
        self, study_id: str, schema_id: str, client_info: ClientInfo
    ) -> LookupResult[int]:
        """Latest schema revision compatible with the client's app version."""

    @abstractmethod
    def compound_activity_definition(self, study_id: str, task_id: str) -> LookupResult[CompoundActivity]:
        """Named compound activity definition."""


class ActivityEventSource(ABC):
    @abstractmethod
    def get_event_map(self, health_code: str) -> dict[str, datetime]:
        """Trigger events recorded for a participant, by event name."""

    @abstractmethod
    def publish_event(self, health_code: str, event_id: str, timestamp: datetime) -> None:
        """Record a trigger event. Later timestamps replace earlier ones."""

    def publish_activity_finished(self, activity: ScheduledActivity) -> None:
        if activity.finished_on is None:
            return
        event_id = f"activity:{activity.activity_guid}:finished"
        self.publish_event(activity.health_code, event_id, activity.finished_on)


class ConsentLookup(ABC):
    @abstractmethod
    def get_consent_signed_on(self, health_code: str, study_id: str) -> datetime | None:
        """When the participant signed consent for the study, if they have."""


class ParticipantDirectory(ABC):
    @abstractmethod
    def get_enrolled_participants(self, study_id: str) -> list[Participant]:
        """All participants currently enrolled in a study."""


# ---------------------------------------------------------------------------
# In-memory implementations
# ---------------------------------------------------------------------------


class InMemorySchedulePlanProvider(SchedulePlanProvider):
    def __init__(self, plans: list[SchedulePlan] | None = None) -> None:
        self._lock = threading.Lock()
        self._plans: dict[str, SchedulePlan] = {}
        for plan in plans or []:
            self.save(plan)

    def save(self, plan: SchedulePlan) -> None:
        with self._lock:
            self._plans[plan.guid] = plan

    def delete(self, plan_guid: str) -> None:
        with self._lock:
            self._plans.pop(plan_guid, None)

    def get_schedule_plans(self, study_id: str, client_info: ClientInfo | None = None) -> list[SchedulePlan]:
        with self._lock:
            plans = [p for p in self._plans.values() if p.study_id == study_id]
        return [p for p in plans if p.applies_to(client_info)]


class InMemoryReferenceLookups(ReferenceLookups):
    """Published surveys, schema revisions and compound definitions held in dicts.

    Schema revisions may declare a minimum app version; the latest revision
    whose minimum the client satisfies wins.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._surveys: dict[tuple[str, str], list[PublishedSurvey]] = defaultdict(list)
        self._schemas: dict[tuple[str, str], list[tuple[int, int | None]]] = defaultdict(list)
        self._compounds: dict[tuple[str, str], CompoundActivity] = {}

    def publish_survey(self, study_id: str, survey: PublishedSurvey) -> None:
        with self._lock:
            self._surveys[(study_id, survey.guid)].append(survey)

    def add_schema_revision(
        self, study_id: str, schema_id: str, revision: int, min_app_version: int | None = None
    ) -> None:
        with self._lock:
            self._schemas[(study_id, schema_id)].append((revision, min_app_version))

    def define_compound_activity(self, study_id: str, definition: CompoundActivity) -> None:
        with self._lock:
            self._compounds[(study_id, definition.task_identifier)] = definition

    def latest_published_survey(self, study_id: str, survey_guid: str) -> LookupResult[PublishedSurvey]:
        with self._lock:
            versions = list(self._surveys.get((study_id, survey_guid), []))
        if not versions:
            return LookupResult.not_found()
        return LookupResult.found(max(versions, key=lambda s: s.created_on))

    def latest_schema_revision(
        self, study_id: str, schema_id: str, client_info: ClientInfo
    ) -> LookupResult[int]:
        with self._lock:
            revisions = list(self._schemas.get((study_id, schema_id), []))
        version = client_info.app_version
        compatible = [
            rev for rev, min_version in revisions if min_version is None or version is None or version >= min_version
        ]
        if not compatible:
            return LookupResult.not_found()
        return LookupResult.found(max(compatible))

    def compound_activity_definition(self, study_id: str, task_id: str) -> LookupResult[CompoundActivity]:
        with self._lock:
            definition = self._compounds.get((study_id, task_id))
        if definition is None:
            return LookupResult.not_found()
        return LookupResult.found(definition)


class InMemoryActivityEventSource(ActivityEventSource):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, dict[str, datetime]] = defaultdict(dict)

    def get_event_map(self, health_code: str) -> dict[str, datetime]:
        with self._lock:
            return dict(self._events.get(health_code, {}))

    def publish_event(self, health_code: str, event_id: str, timestamp: datetime) -> None:
        with self._lock:
            existing = self._events[health_code].get(event_id)
            if existing is not None and existing >= timestamp:
                logger.debug(f"Ignoring stale event {event_id} for {health_code}")
                return
            self._events[health_code][event_id] = timestamp


class InMemoryConsentLookup(ConsentLookup):
    def __init__(self) -> None:
        self._signed_on: dict[tuple[str, str], datetime] = {}

    def record_consent(self, health_code: str, study_id: str, signed_on: datetime) -> None:
        self._signed_on[(health_code, study_id)] = signed_on

    def get_consent_signed_on(self, health_code: str, study_id: str) -> datetime | None:
        return self._signed_on.get((health_code, study_id))


class InMemoryParticipantDirectory(ParticipantDirectory):
    def __init__(self, participants: list[Participant] | None = None) -> None:
        self._lock = threading.Lock()
        self._participants: dict[str, Participant] = {p.health_code: p for p in participants or []}

    def enroll(self, participant: Participant) -> None:
        with self._lock:
            self._participants[participant.health_code] = participant

    def unenroll(self, health_code: str) -> None:
        with self._lock:
            self._participants.pop(health_code, None)

    def get_enrolled_participants(self, study_id: str) -> list[Participant]:
        with self._lock:
            return [p for p in self._participants.values() if p.study_id == study_id]
