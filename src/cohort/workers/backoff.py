"""Jittered backoff between lock acquisition attempts.

The delay is ``base_delay_ms`` plus a uniform random jitter below
``jitter_ms``, so with the defaults every wait falls in [300, 700) ms.
Random source and sleep function are injectable, so tests can run the
retry loop deterministically and without sleeping.
"""

from __future__ import annotations

import random
import time
from collections.abc import Callable
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cohort.core.config import Config


class BackoffPolicy:
    def __init__(
        self,
        base_delay_ms: int = 300,
        jitter_ms: int = 400,
        *,
        rng: random.Random | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if base_delay_ms < 0 or jitter_ms < 0:
            raise ValueError("base_delay_ms and jitter_ms must be >= 0")
        self.base_delay_ms = base_delay_ms
        self.jitter_ms = jitter_ms
        self._rng = rng or random.Random()
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: Config, **kwargs) -> BackoffPolicy:  # type: ignore[no-untyped-def]
        settings = config.validated().recompute
        return cls(settings.base_delay_ms, settings.jitter_ms, **kwargs)

    def next_delay(self) -> float:
        """Next delay in seconds."""
        jitter = self._rng.randrange(self.jitter_ms) if self.jitter_ms > 0 else 0
        return (self.base_delay_ms + jitter) / 1000.0

    def wait(self) -> float:
        """Sleep for the next delay and return it."""
        delay = self.next_delay()
        self._sleep(delay)
        return delay
