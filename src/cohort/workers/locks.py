"""Distributed locks keyed by (entity type, entity id).

``acquire`` never blocks: it either hands back an opaque token or raises
:class:`ConcurrentModificationError`. Callers own their wait/retry loop.
A lock whose holder crashed disappears once its expiry passes.
"""

from __future__ import annotations

import threading
import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger

from cohort.core.exceptions import ConcurrentModificationError

if TYPE_CHECKING:
    from cohort.core.config import Config


@dataclass(frozen=True)
class Lock:
    entity_type: str
    entity_id: str
    token: str
    expires_at: float


class DistributedLockCoordinator(ABC):
    @abstractmethod
    def acquire(self, entity_type: str, entity_id: str) -> str:
        """Take the lock and return its token. Raises ConcurrentModificationError if held."""

    @abstractmethod
    def release(self, entity_type: str, entity_id: str, token: str) -> bool:
        """Release the lock if *token* still owns it. Returns whether anything was released."""


class InMemoryLockCoordinator(DistributedLockCoordinator):
    """Process-local coordinator with lock expiry.

    Args:
        expiry_seconds: How long a lock survives without being released.
        clock: Monotonic time source, injectable for tests.
    """

    def __init__(self, expiry_seconds: float = 60.0, *, clock: Callable[[], float] = time.monotonic) -> None:
        self._expiry_seconds = expiry_seconds
        self._clock = clock
        self._guard = threading.Lock()
        self._locks: dict[tuple[str, str], Lock] = {}

    @classmethod
    def from_config(cls, config: Config) -> InMemoryLockCoordinator:
        return cls(expiry_seconds=config.validated().locks.expiry_seconds)

    def acquire(self, entity_type: str, entity_id: str) -> str:
        key = (entity_type, entity_id)
        with self._guard:
            now = self._clock()
            held = self._locks.get(key)
            if held is not None and held.expires_at > now:
                raise ConcurrentModificationError(f"Lock already held for {entity_type} {entity_id}")
            if held is not None:
                logger.warning(f"Lock for {entity_type} {entity_id} expired without release, taking it over")
            token = uuid.uuid4().hex
            self._locks[key] = Lock(entity_type, entity_id, token, now + self._expiry_seconds)
        return token

    def release(self, entity_type: str, entity_id: str, token: str) -> bool:
        key = (entity_type, entity_id)
        with self._guard:
            held = self._locks.get(key)
            if held is None or held.token != token:
                logger.debug(f"Release of {entity_type} {entity_id} ignored, token no longer owns the lock")
                return False
            del self._locks[key]
        return True

    def is_locked(self, entity_type: str, entity_id: str) -> bool:
        with self._guard:
            held = self._locks.get((entity_type, entity_id))
            return held is not None and held.expires_at > self._clock()
