"""Event bus for schedule change notifications.

Study administration and enrollment code publish change events; the
recompute worker pool subscribes and regenerates persisted activities.
Hooks run synchronously on the publishing thread, so a slow hook should
hand work off (``RecomputeWorkerPool.submit`` does).

Usage::

    from cohort.core.events import SCHEDULE_PLAN_CREATED, EventBus, schedule_plan_created

    bus = EventBus()
    bus.on(SCHEDULE_PLAN_CREATED, lambda event: print(event.payload["plan"].guid))
    bus.emit(schedule_plan_created(plan))
"""

from __future__ import annotations

import threading
from collections import defaultdict
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from loguru import logger

if TYPE_CHECKING:
    from cohort.schedules.models import Participant, SchedulePlan

# ---------------------------------------------------------------------------
# Well-known event names
# ---------------------------------------------------------------------------

SCHEDULE_PLAN_CREATED = "schedule_plan.created"
SCHEDULE_PLAN_UPDATED = "schedule_plan.updated"
SCHEDULE_PLAN_DELETED = "schedule_plan.deleted"
PARTICIPANT_ENROLLED = "participant.enrolled"
PARTICIPANT_UNENROLLED = "participant.unenrolled"

RECOMPUTE_EVENTS = (
    SCHEDULE_PLAN_CREATED,
    SCHEDULE_PLAN_UPDATED,
    SCHEDULE_PLAN_DELETED,
    PARTICIPANT_ENROLLED,
    PARTICIPANT_UNENROLLED,
)

Hook = Callable[["Event"], Any]


# ---------------------------------------------------------------------------
# Event model
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Event:
    """A scheduling change, published once and read by every matching hook."""

    name: str
    payload: dict[str, Any] = field(default_factory=dict)
    emitted_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    source: str = ""


def schedule_plan_created(plan: SchedulePlan, source: str = "") -> Event:
    return Event(name=SCHEDULE_PLAN_CREATED, payload={"plan": plan}, source=source)


def schedule_plan_updated(plan: SchedulePlan, source: str = "") -> Event:
    return Event(name=SCHEDULE_PLAN_UPDATED, payload={"plan": plan}, source=source)


def schedule_plan_deleted(plan: SchedulePlan, source: str = "") -> Event:
    return Event(name=SCHEDULE_PLAN_DELETED, payload={"plan": plan}, source=source)


def participant_enrolled(participant: Participant, source: str = "") -> Event:
    return Event(name=PARTICIPANT_ENROLLED, payload={"participant": participant}, source=source)


def participant_unenrolled(participant: Participant, source: str = "") -> Event:
    return Event(name=PARTICIPANT_UNENROLLED, payload={"participant": participant}, source=source)


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------


class EventBus:
    """Synchronous pub/sub bus. Registration is thread-safe; hooks run on the emitting thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._hooks: dict[str, list[Hook]] = defaultdict(list)
        self._wildcard_hooks: list[Hook] = []

    def on(self, event_names: str | Iterable[str], hook: Hook) -> None:
        """Register *hook* for one event name or several."""
        names = [event_names] if isinstance(event_names, str) else list(event_names)
        with self._lock:
            for name in names:
                self._hooks[name].append(hook)

    def on_all(self, hook: Hook) -> None:
        with self._lock:
            self._wildcard_hooks.append(hook)

    def off(self, event_name: str, hook: Hook) -> bool:
        """Unregister *hook*. Returns False if it was not registered for *event_name*."""
        with self._lock:
            hooks = self._hooks.get(event_name, [])
            if hook not in hooks:
                return False
            hooks.remove(hook)
        return True

    def emit(self, event: Event) -> int:
        """Run every hook for *event* and return how many succeeded.

        A failing hook is logged and does not stop the others.
        """
        with self._lock:
            hooks = [*self._hooks.get(event.name, ()), *self._wildcard_hooks]
        delivered = 0
        for hook in hooks:
            try:
                hook(event)
            except Exception as exc:
                logger.warning(f"Event hook failed for {event.name}: {exc}")
            else:
                delivered += 1
        return delivered
