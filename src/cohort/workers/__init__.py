"""Lock-guarded background recompute of persisted schedules.

Quick start::

    from cohort.core.events import EventBus
    from cohort.workers import InMemoryLockCoordinator, RecomputeWorker, RecomputeWorkerPool

    worker = RecomputeWorker(lock_coordinator=InMemoryLockCoordinator(), store=store, ...)
    with RecomputeWorkerPool(worker) as pool:
        pool.subscribe(bus)
"""

from .backoff import BackoffPolicy
from .locks import DistributedLockCoordinator, InMemoryLockCoordinator, Lock
from .recompute import (
    PARTICIPANT_LOCK,
    PLAN_LOCK,
    RecomputeOutcome,
    RecomputeResult,
    RecomputeWorker,
    RecomputeWorkerPool,
)

__all__ = [
    "PARTICIPANT_LOCK",
    "PLAN_LOCK",
    "BackoffPolicy",
    "DistributedLockCoordinator",
    "InMemoryLockCoordinator",
    "Lock",
    "RecomputeOutcome",
    "RecomputeResult",
    "RecomputeWorker",
    "RecomputeWorkerPool",
]
