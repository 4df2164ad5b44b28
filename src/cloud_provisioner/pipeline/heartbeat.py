"""Cancellable progress ticker for long waits between stages."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from types import TracebackType

from cloud_provisioner.utils.concurrency import SleepFn

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HeartbeatTick:
    elapsed_seconds: float
    remaining_seconds: float


HeartbeatCallback = Callable[[HeartbeatTick], None]


class Heartbeat:
    """Report elapsed/remaining time every ``interval_seconds`` of a known wait.

    Used as an async context manager; leaving the block stops the ticker task
    and waits for it, so no tick fires after the wait ended.
    """

    def __init__(
        self,
        *,
        total_seconds: float,
        interval_seconds: float,
        on_tick: HeartbeatCallback | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if total_seconds < 0:
            raise ValueError("total_seconds must be >= 0")
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._total = total_seconds
        self._interval = interval_seconds
        self._on_tick = on_tick
        self._sleep = sleep
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._ticks = 0

    @property
    def ticks(self) -> int:
        return self._ticks

    def start(self) -> None:
        if self._task is not None:
            raise RuntimeError("heartbeat already started")
        self._task = asyncio.create_task(self._tick_loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> Heartbeat:
        self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        await self.stop()

    async def _tick_loop(self) -> None:
        started = self._clock()
        # The last tick would coincide with the end of the wait.
        max_ticks = max(math.ceil(self._total / self._interval) - 1, 0)
        while self._ticks < max_ticks:
            await self._sleep(self._interval)
            elapsed = self._clock() - started
            tick = HeartbeatTick(
                elapsed_seconds=elapsed,
                remaining_seconds=max(self._total - elapsed, 0.0),
            )
            self._ticks += 1
            logger.info(
                "wait_heartbeat",
                extra={
                    "elapsed_seconds": round(tick.elapsed_seconds, 1),
                    "remaining_seconds": round(tick.remaining_seconds, 1),
                },
            )
            if self._on_tick is not None:
                self._on_tick(tick)


__all__ = ["Heartbeat", "HeartbeatCallback", "HeartbeatTick"]
