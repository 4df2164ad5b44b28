"""Stage-scoped circuit breaker that halts dispatch on a high failure rate."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HealthSnapshot:
    successes: int
    failures: int
    tripped: bool

    @property
    def total(self) -> int:
        return self.successes + self.failures

    @property
    def failure_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.failures / self.total


class HealthMonitor:
    """Track outcomes for one stage and report when dispatch should stop.

    The monitor trips once at least ``min_samples`` outcomes were observed and
    the failure rate is strictly above ``failure_threshold``. A tripped monitor
    stays tripped until :meth:`reset`.
    """

    def __init__(self, *, failure_threshold: float = 0.3, min_samples: int = 10) -> None:
        if not 0.0 <= failure_threshold < 1.0:
            raise ValueError("failure_threshold must be within [0, 1)")
        if min_samples <= 0:
            raise ValueError("min_samples must be > 0")
        self._failure_threshold = failure_threshold
        self._min_samples = min_samples
        self._lock = threading.Lock()
        self._successes = 0
        self._failures = 0
        self._tripped = False

    @property
    def failure_threshold(self) -> float:
        return self._failure_threshold

    @property
    def min_samples(self) -> int:
        return self._min_samples

    def observe(self, success: bool) -> None:
        with self._lock:
            if success:
                self._successes += 1
            else:
                self._failures += 1
            if self._tripped:
                return
            successes, failures = self._successes, self._failures
            total = successes + failures
            if total < self._min_samples or failures / total <= self._failure_threshold:
                return
            self._tripped = True
        logger.warning(
            "breaker_tripped",
            extra={
                "successes": successes,
                "failures": failures,
                "failure_threshold": self._failure_threshold,
            },
        )

    def should_halt(self) -> bool:
        with self._lock:
            return self._tripped

    def reset(self) -> None:
        with self._lock:
            self._successes = 0
            self._failures = 0
            self._tripped = False

    def snapshot(self) -> HealthSnapshot:
        with self._lock:
            return HealthSnapshot(
                successes=self._successes,
                failures=self._failures,
                tripped=self._tripped,
            )


__all__ = ["HealthMonitor", "HealthSnapshot"]
