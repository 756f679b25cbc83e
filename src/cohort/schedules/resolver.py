"""Reference resolution for scheduled activities.

Activities may point at "the latest" survey, schema or compound activity
definition. Before an activity is shown or persisted, those pointers are
pinned to concrete published versions.

One :class:`ReferenceResolver` serves one generation pass. It memoizes
every lookup by survey GUID, schema id and compound task id, so a plan that
schedules the same survey thirty times costs one lookup. Discard the
resolver when the pass ends; nothing it caches outlives the call.
"""

from __future__ import annotations

import dataclasses
from typing import TYPE_CHECKING

from loguru import logger

from cohort.core.exceptions import EntityNotFoundError, StoreError

from .lookups import LookupResult, LookupStatus, ReferenceLookups
from .models import Activity, ActivityType, CompoundActivity, SchemaReference, SurveyReference, TaskReference

if TYPE_CHECKING:
    from .models import ScheduleContext


def _unwrap(result: LookupResult, entity_type: str, entity_id: str):  # type: ignore[no-untyped-def]
    if result.status == LookupStatus.FOUND:
        return result.value
    if result.status == LookupStatus.NOT_FOUND:
        raise EntityNotFoundError(entity_type, entity_id)
    raise StoreError(f"{entity_type} lookup failed for {entity_id}: {result.error}")


class ReferenceResolver:
    """Pins survey, schema and compound references to published versions."""

    def __init__(self, lookups: ReferenceLookups) -> None:
        self._lookups = lookups
        self._surveys: dict[str, SurveyReference] = {}
        self._schemas: dict[str, SchemaReference] = {}
        self._compounds: dict[str, CompoundActivity] = {}

    def resolve(self, context: ScheduleContext, activity: Activity) -> Activity:
        """Return *activity* with its references resolved.

        The same object comes back when nothing changed, so callers can
        use an identity check to skip needless copies.

        Raises:
            EntityNotFoundError: a referenced survey, schema or definition doesn't exist.
            StoreError: the backing lookup failed.
        """
        activity_type = activity.activity_type

        if activity_type == ActivityType.COMPOUND:
            compound = activity.compound_activity
            resolved = self._resolve_compound(context, compound)
            if resolved != compound:
                return dataclasses.replace(activity, compound_activity=resolved)

        elif activity_type == ActivityType.SURVEY:
            survey = self._resolve_survey(context, activity.survey)
            if survey != activity.survey:
                return dataclasses.replace(activity, survey=survey)

        elif activity.task is not None and activity.task.schema is not None:
            schema = self._resolve_schema(context, activity.task.schema)
            if schema != activity.task.schema:
                return dataclasses.replace(activity, task=TaskReference(activity.task.identifier, schema))

        return activity

    def _resolve_compound(self, context: ScheduleContext, compound: CompoundActivity) -> CompoundActivity:
        task_id = compound.task_identifier
        cached = self._compounds.get(task_id)
        if cached is not None:
            logger.debug(f"Compound activity cache hit: {task_id}")
            return cached

        if compound.is_reference:
            result = self._lookups.compound_activity_definition(context.study_id, task_id)
            resolved = _unwrap(result, "CompoundActivityDefinition", task_id)
        else:
            resolved = compound

        # Resolve the lists before caching, so a hit is fully resolved.
        resolved = self._resolve_lists(context, resolved)
        self._compounds[task_id] = resolved
        return resolved

    def _resolve_lists(self, context: ScheduleContext, compound: CompoundActivity) -> CompoundActivity:
        schemas = tuple(self._resolve_schema(context, s) for s in compound.schema_list)
        surveys = tuple(self._resolve_survey(context, s) for s in compound.survey_list)
        if schemas == compound.schema_list and surveys == compound.survey_list:
            return compound
        return dataclasses.replace(compound, schema_list=schemas, survey_list=surveys)

    def _resolve_schema(self, context: ScheduleContext, schema: SchemaReference) -> SchemaReference:
        if schema.revision is not None:
            return schema

        cached = self._schemas.get(schema.id)
        if cached is not None:
            logger.debug(f"Schema cache hit: {schema.id}")
            return cached

        result = self._lookups.latest_schema_revision(context.study_id, schema.id, context.client_info)
        resolved = SchemaReference(schema.id, _unwrap(result, "UploadSchema", schema.id))
        self._schemas[schema.id] = resolved
        return resolved

    def _resolve_survey(self, context: ScheduleContext, survey: SurveyReference) -> SurveyReference:
        if survey.created_on is not None:
            return survey

        cached = self._surveys.get(survey.guid)
        if cached is not None:
            logger.debug(f"Survey cache hit: {survey.guid}")
            return cached

        result = self._lookups.latest_published_survey(context.study_id, survey.guid)
        published = _unwrap(result, "Survey", survey.guid)
        resolved = SurveyReference(guid=survey.guid, identifier=published.identifier, created_on=published.created_on)
        self._surveys[survey.guid] = resolved
        return resolved
