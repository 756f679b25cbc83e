"""Tests for cohort.core.events — EventBus and Event."""

from __future__ import annotations

from dataclasses import FrozenInstanceError

import pytest

from cohort.core.events import (
    PARTICIPANT_ENROLLED,
    RECOMPUTE_EVENTS,
    SCHEDULE_PLAN_UPDATED,
    Event,
    EventBus,
    participant_enrolled,
    schedule_plan_updated,
)

pytestmark = pytest.mark.smoke


def test_on_off_emit_lifecycle():
    bus = EventBus()
    received: list[Event] = []

    def hook(event: Event) -> None:
        received.append(event)

    bus.on("test.event", hook)
    evt = Event(name="test.event", payload={"k": "v"}, source="test")
    bus.emit(evt)

    assert len(received) == 1
    assert received[0] is evt

    assert bus.off("test.event", hook)
    bus.emit(evt)

    assert len(received) == 1  # hook was removed


def test_wildcard_hooks_receive_all_events():
    bus = EventBus()
    received: list[str] = []

    bus.on_all(lambda event: received.append(event.name))

    bus.emit(Event(name="alpha"))
    bus.emit(Event(name="beta"))

    assert received == ["alpha", "beta"]


def test_failing_hook_does_not_stop_others():
    bus = EventBus()
    received: list[str] = []

    def broken(event: Event) -> None:
        raise RuntimeError("boom")

    bus.on("x", broken)
    bus.on("x", lambda event: received.append(event.name))
    bus.emit(Event(name="x"))

    assert received == ["x"]


def test_off_unknown_hook_is_noop():
    assert not EventBus().off("never.registered", lambda e: None)


def test_on_several_names_and_delivery_count():
    bus = EventBus()
    received: list[str] = []

    def broken(event: Event) -> None:
        raise RuntimeError("boom")

    bus.on(RECOMPUTE_EVENTS, lambda event: received.append(event.name))
    bus.on(SCHEDULE_PLAN_UPDATED, broken)

    assert bus.emit(Event(name=PARTICIPANT_ENROLLED)) == 1
    assert bus.emit(Event(name=SCHEDULE_PLAN_UPDATED)) == 1
    assert bus.emit(Event(name="unrelated")) == 0
    assert received == [PARTICIPANT_ENROLLED, SCHEDULE_PLAN_UPDATED]


def test_event_is_frozen():
    evt = Event(name="x")
    with pytest.raises(FrozenInstanceError):
        evt.name = "y"  # type: ignore[misc]


def test_constructors(simple_plan, daily_schedule, participant):
    plan = simple_plan(daily_schedule())

    evt = schedule_plan_updated(plan, source="admin")
    assert evt.name == SCHEDULE_PLAN_UPDATED
    assert evt.payload["plan"] is plan
    assert evt.source == "admin"

    evt = participant_enrolled(participant)
    assert evt.name == PARTICIPANT_ENROLLED
    assert evt.payload["participant"] is participant
    assert evt.name in RECOMPUTE_EVENTS


def test_event_records_utc_emit_time():
    evt = Event(name="x")
    assert evt.emitted_at.utcoffset() is not None
    assert evt.emitted_at.utcoffset().total_seconds() == 0
