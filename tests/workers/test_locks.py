"""Tests for cohort.workers.locks."""

import pytest

from cohort.core.config import Config
from cohort.core.exceptions import ConcurrentModificationError
from cohort.workers.locks import InMemoryLockCoordinator


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def locks(clock):
    return InMemoryLockCoordinator(expiry_seconds=30, clock=clock)


class TestInMemoryLockCoordinator:
    def test_acquire_and_release(self, locks):
        token = locks.acquire("SchedulePlan", "plan-1")
        assert locks.is_locked("SchedulePlan", "plan-1")
        assert locks.release("SchedulePlan", "plan-1", token)
        assert not locks.is_locked("SchedulePlan", "plan-1")

    def test_conflict(self, locks):
        locks.acquire("SchedulePlan", "plan-1")
        with pytest.raises(ConcurrentModificationError, match="plan-1"):
            locks.acquire("SchedulePlan", "plan-1")

    def test_keys_are_independent(self, locks):
        locks.acquire("SchedulePlan", "plan-1")
        locks.acquire("SchedulePlan", "plan-2")
        locks.acquire("Participant", "plan-1")

    def test_wrong_token_does_not_release(self, locks):
        locks.acquire("Participant", "hc-1")
        assert not locks.release("Participant", "hc-1", "not-the-token")
        assert locks.is_locked("Participant", "hc-1")

    def test_release_unheld(self, locks):
        assert not locks.release("Participant", "hc-1", "token")

    def test_expired_lock_taken_over(self, locks, clock):
        stale = locks.acquire("Participant", "hc-1")
        clock.now += 31

        assert not locks.is_locked("Participant", "hc-1")
        fresh = locks.acquire("Participant", "hc-1")

        assert fresh != stale
        assert not locks.release("Participant", "hc-1", stale)
        assert locks.release("Participant", "hc-1", fresh)

    def test_from_config(self):
        config = Config(env_prefix="", defaults={"locks": {"expiry_seconds": 5}})
        clock = FakeClock()
        locks = InMemoryLockCoordinator.from_config(config)
        locks._clock = clock
        locks.acquire("Participant", "hc-1")
        clock.now += 6
        assert not locks.is_locked("Participant", "hc-1")
