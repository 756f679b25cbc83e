"""RecomputeWorker — regenerates persisted activities when plans or enrollment change.

One worker call handles one domain event:

- plan created/updated: schedule every enrolled participant of the study
  under the plan, then (on update) drop the plan's still-updatable
  activities and reconcile the new set in, under the plan's lock;
- plan deleted: delete every activity tagged with the plan, same lock;
- participant enrolled: schedule the participant under each applicable
  plan and persist, under the participant's lock;
- participant unenrolled: delete the participant's activities, same lock.

Generation happens before the lock is taken; only the store writes run
while it is held. Lock conflicts back off and retry. Any other failure is
retried up to ``max_failures`` times, after which the run ends ``FAILED``
and the pool dead-letters the event.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from loguru import logger

from cohort.core.events import (
    PARTICIPANT_ENROLLED,
    PARTICIPANT_UNENROLLED,
    RECOMPUTE_EVENTS,
    SCHEDULE_PLAN_CREATED,
    SCHEDULE_PLAN_DELETED,
    SCHEDULE_PLAN_UPDATED,
    Event,
    EventBus,
)
from cohort.core.exceptions import ConcurrentModificationError, RecomputeAbortedError
from cohort.schedules.generator import ScheduleGenerator, build_event_map
from cohort.schedules.models import (
    Participant,
    Schedule,
    ScheduleContext,
    ScheduledActivity,
    SchedulePlan,
    utc_now,
)
from cohort.schedules.reconcile import ReconcileMode, ReconciliationEngine
from cohort.schedules.strategies import schedule_for, schedule_participants

from .backoff import BackoffPolicy

if TYPE_CHECKING:
    from cohort.core.config import Config
    from cohort.schedules.lookups import (
        ActivityEventSource,
        ConsentLookup,
        ParticipantDirectory,
        SchedulePlanProvider,
    )
    from cohort.schedules.store import ActivityStore

    from .locks import DistributedLockCoordinator

PLAN_LOCK = "SchedulePlan"
PARTICIPANT_LOCK = "Participant"

Batch = list[tuple[ScheduleContext, list[ScheduledActivity]]]


class RecomputeOutcome(StrEnum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


@dataclass
class RecomputeResult:
    """What happened to one event."""

    event: Event
    outcome: RecomputeOutcome = RecomputeOutcome.SUCCEEDED
    attempts: int = 0
    """Lock acquisition attempts."""
    lock_waits: int = 0
    failures: int = 0
    error: str = ""

    @property
    def succeeded(self) -> bool:
        return self.outcome == RecomputeOutcome.SUCCEEDED


class RecomputeWorker:
    """Executes the recompute pipeline for single domain events.

    Args:
        lock_coordinator: Mutual exclusion per plan / participant.
        store: Activity store written under the lock.
        plan_provider: Source of the study's schedule plans.
        participants: Enrolled-participant roster for the bulk path.
        generator: Expands schedules and resolves references.
        event_source: Participant trigger events.
        consent_lookup: Enrollment fallback when no enrollment event exists.
        backoff: Delay policy between retries.
        max_attempts: Lock acquisition attempts before giving up; 0 retries forever.
        max_failures: Non-conflict failures before giving up; 0 retries forever.
        window_days: How far ahead activities are generated.
        clock: Source of "now".
    """

    def __init__(
        self,
        *,
        lock_coordinator: DistributedLockCoordinator,
        store: ActivityStore,
        plan_provider: SchedulePlanProvider,
        participants: ParticipantDirectory,
        generator: ScheduleGenerator,
        event_source: ActivityEventSource,
        consent_lookup: ConsentLookup | None = None,
        backoff: BackoffPolicy | None = None,
        max_attempts: int = 0,
        max_failures: int = 5,
        window_days: int = 14,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._locks = lock_coordinator
        self._store = store
        self._plan_provider = plan_provider
        self._participants = participants
        self._generator = generator
        self._event_source = event_source
        self._consent_lookup = consent_lookup
        self._backoff = backoff or BackoffPolicy()
        self._max_attempts = max_attempts
        self._max_failures = max_failures
        self._window_days = window_days
        self._clock = clock
        self._engine = ReconciliationEngine(store)
        self._handlers: dict[str, Callable[[Event, RecomputeResult], None]] = {
            SCHEDULE_PLAN_CREATED: self._plan_changed,
            SCHEDULE_PLAN_UPDATED: self._plan_changed,
            SCHEDULE_PLAN_DELETED: self._plan_deleted,
            PARTICIPANT_ENROLLED: self._participant_enrolled,
            PARTICIPANT_UNENROLLED: self._participant_unenrolled,
        }

    @classmethod
    def from_config(cls, config: Config, **collaborators) -> RecomputeWorker:  # type: ignore[no-untyped-def]
        """Build a worker with retry limits, backoff and window taken from *config*."""
        validated = config.validated()
        collaborators.setdefault("backoff", BackoffPolicy.from_config(config))
        return cls(
            max_attempts=validated.recompute.max_attempts,
            max_failures=validated.recompute.max_failures,
            window_days=validated.schedule.max_date_range_days,
            **collaborators,
        )

    def handle(self, event: Event) -> RecomputeResult:
        """Process one event to a terminal outcome. Only KeyboardInterrupt propagates."""
        handler = self._handlers.get(event.name)
        if handler is None:
            raise ValueError(f"Not a recompute event: {event.name}")

        result = RecomputeResult(event=event)
        try:
            handler(event, result)
        except InterruptedError as e:
            result.outcome = RecomputeOutcome.INTERRUPTED
            result.error = str(e) or "interrupted"
            logger.warning(f"Recompute for {event.name} interrupted: {result.error}")
        except RecomputeAbortedError as e:
            result.outcome = RecomputeOutcome.FAILED
            result.error = str(e)
            logger.error(f"Recompute for {event.name} aborted: {e}")
        except Exception as e:
            # Generation failed before any lock was taken.
            result.outcome = RecomputeOutcome.FAILED
            result.failures += 1
            result.error = str(e)
            logger.error(f"Recompute for {event.name} failed: {e}")
        return result

    # -- Event handlers ------------------------------------------------------

    def _plan_changed(self, event: Event, result: RecomputeResult) -> None:
        plan: SchedulePlan = event.payload["plan"]
        replace = event.name == SCHEDULE_PLAN_UPDATED
        logger.info(f"Schedule plan {plan.guid} {'updated' if replace else 'created'}")

        now = self._clock()
        enrolled = [
            participant
            for participant in self._participants.get_enrolled_participants(plan.study_id)
            if plan.applies_to(participant.client_info)
        ]
        batch: Batch = [
            self._generate(plan, schedule, participant, now)
            for participant, schedule in schedule_participants(plan, enrolled)
        ]

        def command() -> None:
            if replace:
                removed = self._store.delete_activities_for_plan(plan.guid, only_updatable=True, now=now)
                logger.debug(f"Removed {removed} updatable activities of plan {plan.guid}")
            self._persist(batch)

        self._run_with_lock(PLAN_LOCK, plan.guid, command, result)

    def _plan_deleted(self, event: Event, result: RecomputeResult) -> None:
        plan: SchedulePlan = event.payload["plan"]
        logger.info(f"Schedule plan {plan.guid} deleted")

        def command() -> None:
            removed = self._store.delete_activities_for_plan(plan.guid)
            logger.debug(f"Removed {removed} activities of plan {plan.guid}")

        self._run_with_lock(PLAN_LOCK, plan.guid, command, result)

    def _participant_enrolled(self, event: Event, result: RecomputeResult) -> None:
        participant: Participant = event.payload["participant"]
        logger.info(f"Participant {participant.health_code} enrolled in study {participant.study_id}")

        now = self._clock()
        batch: Batch = []
        for plan in self._plan_provider.get_schedule_plans(participant.study_id, participant.client_info):
            schedule = schedule_for(plan, participant)
            if schedule is not None:
                batch.append(self._generate(plan, schedule, participant, now))

        self._run_with_lock(PARTICIPANT_LOCK, participant.health_code, lambda: self._persist(batch), result)

    def _participant_unenrolled(self, event: Event, result: RecomputeResult) -> None:
        participant: Participant = event.payload["participant"]
        logger.info(f"Participant {participant.health_code} withdrawn from study {participant.study_id}")

        def command() -> None:
            removed = self._store.delete_activities_for_participant(participant.health_code)
            logger.debug(f"Removed {removed} activities of {participant.health_code}")

        self._run_with_lock(PARTICIPANT_LOCK, participant.health_code, command, result)

    # -- Pipeline ------------------------------------------------------------

    def _generate(
        self, plan: SchedulePlan, schedule: Schedule, participant: Participant, now: datetime
    ) -> tuple[ScheduleContext, list[ScheduledActivity]]:
        context = ScheduleContext.for_participant(participant, days=self._window_days, now=now)
        events = build_event_map(context, self._event_source, self._consent_lookup)
        context = context.with_events(events).with_schedule_plan(plan.guid)
        # Resolver caches are per participant: schema revisions depend on the app version.
        return context, self._generator.expand(plan, schedule, context, self._generator.new_resolver())

    def _persist(self, batch: Batch) -> None:
        for context, generated in batch:
            self._engine.run(context, generated, ReconcileMode.NARROW)

    def _run_with_lock(
        self, entity_type: str, entity_id: str, command: Callable[[], None], result: RecomputeResult
    ) -> None:
        while True:
            token = None
            result.attempts += 1
            try:
                token = self._locks.acquire(entity_type, entity_id)
                command()
                return
            except ConcurrentModificationError:
                if self._max_attempts and result.attempts >= self._max_attempts:
                    raise RecomputeAbortedError(
                        f"Lock for {entity_type} {entity_id} not acquired after {result.attempts} attempts"
                    ) from None
                result.lock_waits += 1
                logger.info("Lock held, waiting to retry")
            except InterruptedError:
                raise
            except Exception as e:
                result.failures += 1
                logger.error(f"Recompute of {entity_type} {entity_id} failed (failure {result.failures}): {e}")
                if self._max_failures and result.failures >= self._max_failures:
                    raise RecomputeAbortedError(
                        f"{entity_type} {entity_id}: giving up after {result.failures} failures: {e}"
                    ) from e
            finally:
                if token is not None:
                    self._locks.release(entity_type, entity_id, token)
            # Back off only after the lock is released.
            self._backoff.wait()


class RecomputeWorkerPool:
    """Runs a RecomputeWorker on a thread pool, one task per event.

    Events whose run ends ``FAILED`` are kept in :attr:`dead_letters`.
    """

    def __init__(self, worker: RecomputeWorker, *, max_workers: int = 4) -> None:
        self._worker = worker
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="recompute")
        self._lock = threading.Lock()
        self._dead_letters: list[RecomputeResult] = []

    @classmethod
    def from_config(cls, config: Config, worker: RecomputeWorker) -> RecomputeWorkerPool:
        return cls(worker, max_workers=config.validated().recompute.workers)

    @property
    def dead_letters(self) -> list[RecomputeResult]:
        with self._lock:
            return list(self._dead_letters)

    def submit(self, event: Event) -> Future[RecomputeResult]:
        return self._executor.submit(self._run, event)

    def _run(self, event: Event) -> RecomputeResult:
        result = self._worker.handle(event)
        if result.outcome == RecomputeOutcome.FAILED:
            with self._lock:
                self._dead_letters.append(result)
            logger.warning(f"Dead-lettered {event.name} after {result.failures} failure(s): {result.error}")
        return result

    def subscribe(self, bus: EventBus) -> None:
        """Submit every recompute event published on *bus*."""
        bus.on(RECOMPUTE_EVENTS, self.submit)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def __enter__(self) -> RecomputeWorkerPool:
        return self

    def __exit__(self, *exc_info) -> None:  # type: ignore[no-untyped-def]
        self.shutdown()
