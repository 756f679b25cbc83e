"""Legacy task API.

Older clients fetch ``Task`` records instead of scheduled activities.
Tasks produced by one scheduler run share a ``run_key``; a run is saved
once, the first time it is generated, and every request then reads the
participant's tasks back from the store so persisted started/finished
timestamps win over freshly generated copies.
"""

from __future__ import annotations

import dataclasses
import threading
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import timedelta

from loguru import logger

from cohort.core.config import Config
from cohort.core.exceptions import BadRequestError, EntityNotFoundError

from .generator import build_event_map
from .lookups import ActivityEventSource, ConsentLookup, ReferenceLookups, SchedulePlanProvider
from .models import ScheduleContext, Task
from .resolver import ReferenceResolver
from .scheduler import expand_tasks
from .strategies import schedule_for


class TaskStore(ABC):
    @abstractmethod
    def task_run_has_not_occurred(self, health_code: str, run_key: str) -> bool: ...

    @abstractmethod
    def save_tasks(self, health_code: str, tasks: list[Task]) -> None: ...

    @abstractmethod
    def get_tasks(self, health_code: str, context: ScheduleContext) -> list[Task]: ...

    @abstractmethod
    def update_tasks(self, health_code: str, tasks: list[Task]) -> None: ...

    @abstractmethod
    def delete_tasks(self, health_code: str) -> None: ...


class InMemoryTaskStore(TaskStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tasks: dict[str, dict[str, Task]] = defaultdict(dict)

    def task_run_has_not_occurred(self, health_code: str, run_key: str) -> bool:
        with self._lock:
            return not any(t.run_key == run_key for t in self._tasks.get(health_code, {}).values())

    def save_tasks(self, health_code: str, tasks: list[Task]) -> None:
        with self._lock:
            for task in tasks:
                self._tasks[health_code][task.guid] = dataclasses.replace(task)

    def get_tasks(self, health_code: str, context: ScheduleContext) -> list[Task]:
        with self._lock:
            tasks = list(self._tasks.get(health_code, {}).values())
        window = [
            t
            for t in tasks
            if t.scheduled_on < context.ends_on
            and t.finished_on is None
            and (t.expires_on is None or t.expires_on > context.now)
        ]
        return sorted((dataclasses.replace(t) for t in window), key=lambda t: t.scheduled_on)

    def update_tasks(self, health_code: str, tasks: list[Task]) -> None:
        with self._lock:
            stored = self._tasks.get(health_code, {})
            missing = [t.guid for t in tasks if t.guid not in stored]
            if missing:
                raise EntityNotFoundError("Task", ", ".join(missing))
            for task in tasks:
                record = stored[task.guid]
                if task.started_on is not None:
                    record.started_on = task.started_on
                if task.finished_on is not None:
                    record.finished_on = task.finished_on

    def delete_tasks(self, health_code: str) -> None:
        with self._lock:
            self._tasks.pop(health_code, None)


class TaskService:
    """Generates and persists legacy tasks, keyed by run."""

    def __init__(
        self,
        *,
        store: TaskStore,
        plan_provider: SchedulePlanProvider,
        lookups: ReferenceLookups,
        event_source: ActivityEventSource,
        consent_lookup: ConsentLookup | None = None,
        config: Config | None = None,
    ) -> None:
        self._settings = (config or Config(env_prefix="")).validated().schedule
        self._store = store
        self._plan_provider = plan_provider
        self._lookups = lookups
        self._event_source = event_source
        self._consent_lookup = consent_lookup

    def get_tasks(self, context: ScheduleContext) -> list[Task]:
        if context is None:
            raise ValueError("context is required")

        max_days = self._settings.task_max_expires_on_days
        if context.ends_on < context.now:
            raise BadRequestError("End timestamp must be after the time of the request")
        if context.ends_on - timedelta(days=max_days) > context.now:
            raise BadRequestError(f"Task request window must be {max_days} days or less")

        events = build_event_map(context, self._event_source, self._consent_lookup)
        context = context.with_events(events)

        runs: dict[str, list[Task]] = defaultdict(list)
        resolver = ReferenceResolver(self._lookups)
        # Legacy clients predate app-version filtering of plans.
        for plan in self._plan_provider.get_schedule_plans(context.study_id):
            schedule = schedule_for(plan, context)
            if schedule is None:
                continue
            for task in expand_tasks(schedule, plan, context.with_schedule_plan(plan.guid)):
                runs[task.run_key].append(task)

        to_save: list[Task] = []
        for run_key, tasks in runs.items():
            if not self._store.task_run_has_not_occurred(context.health_code, run_key):
                continue
            for task in tasks:
                activity = resolver.resolve(context, task.activity)
                if activity is not task.activity:
                    task = dataclasses.replace(task, activity=activity)
                to_save.append(task)

        if to_save:
            self._store.save_tasks(context.health_code, to_save)
            logger.debug(f"Saved {len(to_save)} new task(s) for {context.health_code}")

        return self._store.get_tasks(context.health_code, context)

    def update_tasks(self, health_code: str, tasks: list[Task | None]) -> None:
        if not health_code:
            raise ValueError("health_code is required")
        if tasks is None:
            raise ValueError("tasks is required")
        for i, task in enumerate(tasks):
            if task is None:
                raise BadRequestError("A task in the array is null")
            if not task.guid:
                raise BadRequestError(f"Task #{i} has no GUID")
        self._store.update_tasks(health_code, tasks)

    def delete_tasks(self, health_code: str) -> None:
        if not health_code:
            raise ValueError("health_code is required")
        self._store.delete_tasks(health_code)
