"""Participant activity scheduling and reconciliation.

Quick start::

    from cohort.schedules import ScheduledActivityService, ScheduleContext

    service = ScheduledActivityService(
        store=store, plan_provider=plans, lookups=lookups, event_source=events
    )
    activities = service.get_scheduled_activities_v4(context)
"""

from .generator import ScheduleGenerator, build_event_map
from .loader import load_plans, plans_from_dicts
from .lookups import (
    ActivityEventSource,
    ConsentLookup,
    InMemoryActivityEventSource,
    InMemoryConsentLookup,
    InMemoryParticipantDirectory,
    InMemoryReferenceLookups,
    InMemorySchedulePlanProvider,
    LookupResult,
    LookupStatus,
    ParticipantDirectory,
    PublishedSurvey,
    ReferenceLookups,
    SchedulePlanProvider,
)
from .models import (
    ENROLLMENT,
    UPDATABLE_STATUSES,
    VISIBLE_STATUSES,
    Activity,
    ActivityType,
    ClientInfo,
    CompoundActivity,
    ForwardCursorPagedList,
    Participant,
    Schedule,
    ScheduleContext,
    ScheduledActivity,
    ScheduledActivityStatus,
    SchedulePlan,
    SchemaReference,
    Strategy,
    SurveyReference,
    Task,
    TaskReference,
)
from .reconcile import ReconcileMode, ReconcileResult, ReconciliationEngine, reconcile
from .resolver import ReferenceResolver
from .service import ScheduledActivityService, validate_schedule_context
from .store import ActivityStore, InMemoryActivityStore
from .strategies import register_strategy, registered_kinds, schedule_for, schedule_participants
from .tasks import InMemoryTaskStore, TaskService, TaskStore

__all__ = [
    "ENROLLMENT",
    "UPDATABLE_STATUSES",
    "VISIBLE_STATUSES",
    "Activity",
    "ActivityEventSource",
    "ActivityStore",
    "ActivityType",
    "ClientInfo",
    "CompoundActivity",
    "ConsentLookup",
    "ForwardCursorPagedList",
    "InMemoryActivityEventSource",
    "InMemoryActivityStore",
    "InMemoryConsentLookup",
    "InMemoryParticipantDirectory",
    "InMemoryReferenceLookups",
    "InMemorySchedulePlanProvider",
    "InMemoryTaskStore",
    "LookupResult",
    "LookupStatus",
    "Participant",
    "ParticipantDirectory",
    "PublishedSurvey",
    "ReconcileMode",
    "ReconcileResult",
    "ReconciliationEngine",
    "ReferenceLookups",
    "ReferenceResolver",
    "Schedule",
    "ScheduleContext",
    "ScheduleGenerator",
    "SchedulePlan",
    "SchedulePlanProvider",
    "ScheduledActivity",
    "ScheduledActivityService",
    "ScheduledActivityStatus",
    "SchemaReference",
    "Strategy",
    "SurveyReference",
    "Task",
    "TaskReference",
    "TaskService",
    "TaskStore",
    "build_event_map",
    "load_plans",
    "plans_from_dicts",
    "reconcile",
    "register_strategy",
    "registered_kinds",
    "schedule_for",
    "schedule_participants",
    "validate_schedule_context",
]
