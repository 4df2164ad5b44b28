"""
cloud-provisioner — bounded concurrency runner

Purpose
- Apply one async task function to a list of work items with a hard cap on
  tasks in flight, and collect one StageResult per dispatched item.

Functional requirements
- Completed tasks are reaped as they finish (``asyncio.wait`` FIRST_COMPLETED).
- An exception escaping a task becomes that item's failure only.
- Dispatch stops when the health monitor trips or the run is cancelled; items
  never dispatched are reported as skipped.
- After cancellation in-flight tasks get a grace period, then are cancelled and
  recorded as transient failures.
- The runner returns only after every dispatched task finished.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any

from cloud_provisioner.domain.models import (
    ErrorClass,
    FailureRecord,
    StageName,
    StageReport,
    StageResult,
)
from cloud_provisioner.observability.logging import correlation_scope
from cloud_provisioner.pipeline.breaker import HealthMonitor
from cloud_provisioner.pipeline.retry import classify_error, error_detail
from cloud_provisioner.utils.concurrency import (
    BoundedSemaphore,
    CancellationToken,
    SleepFn,
    sleep_with_cancellation,
)

logger = logging.getLogger(__name__)

TaskFn = Callable[[str], Awaitable[StageResult]]

CANCELLED_DETAIL = "cancelled"


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    stage: StageName
    completed: int
    total: int
    succeeded: int
    failed: int
    in_flight: int


ProgressCallback = Callable[[ProgressSnapshot], None]


@dataclass(frozen=True, slots=True)
class BatchResult:
    """Per-item outcomes of one stage, in input order."""

    stage: StageName
    results: tuple[StageResult, ...]
    skipped: tuple[str, ...] = ()
    halted: bool = False
    cancelled: bool = False
    peak_in_flight: int = 0

    @property
    def succeeded(self) -> tuple[str, ...]:
        return tuple(result.work_item_id for result in self.results if result.ok)

    @property
    def failed(self) -> tuple[StageResult, ...]:
        return tuple(result for result in self.results if not result.ok)

    def to_report(self) -> StageReport:
        return StageReport(
            stage=self.stage,
            attempted=len(self.results),
            succeeded=len(self.succeeded),
            failed=len(self.failed),
            skipped=len(self.skipped),
            halted=self.halted,
            cancelled=self.cancelled,
        )

    def failure_records(self) -> tuple[FailureRecord, ...]:
        return tuple(
            FailureRecord(
                stage=self.stage,
                work_item_id=result.work_item_id,
                error_class=result.error_class or ErrorClass.TRANSIENT,
                detail=result.detail,
                exhausted=result.exhausted,
            )
            for result in self.failed
        )


class BoundedRunner:
    """Sole dispatch point for per-item work within a stage."""

    def __init__(
        self,
        concurrency_limit: int,
        *,
        burst_size: int = 1,
        burst_delay_seconds: float = 0.2,
        grace_seconds: float = 10.0,
        health_monitor: HealthMonitor | None = None,
        cancel_token: CancellationToken | None = None,
        sleep: SleepFn = asyncio.sleep,
        progress: ProgressCallback | None = None,
    ) -> None:
        if concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be > 0")
        if burst_size <= 0:
            raise ValueError("burst_size must be > 0")
        if burst_delay_seconds < 0:
            raise ValueError("burst_delay_seconds must be >= 0")
        if grace_seconds < 0:
            raise ValueError("grace_seconds must be >= 0")
        self._limit = concurrency_limit
        self._burst_size = burst_size
        self._burst_delay = burst_delay_seconds
        self._grace_seconds = grace_seconds
        self._monitor = health_monitor
        self._cancel_token = cancel_token
        self._sleep = sleep
        self._progress = progress

    @property
    def concurrency_limit(self) -> int:
        return self._limit

    @property
    def health_monitor(self) -> HealthMonitor | None:
        return self._monitor

    async def run(
        self,
        items: Iterable[str],
        task_fn: TaskFn,
        *,
        stage: StageName,
    ) -> BatchResult:
        work = list(items)
        state = _BatchState(stage=stage, total=len(work))
        semaphore = BoundedSemaphore(self._limit)
        pending: dict[asyncio.Task[StageResult], tuple[int, str]] = {}
        cancel_waiter: asyncio.Task[None] | None = None
        if self._cancel_token is not None:
            cancel_waiter = asyncio.create_task(self._cancel_token.wait())

        logger.info(
            "stage_started",
            extra={"stage": stage.value, "items": len(work), "concurrency_limit": self._limit},
        )
        try:
            index = 0
            dispatched = 0
            while index < len(work):
                self._reap(pending, state, semaphore)
                if self._is_cancelled():
                    state.cancelled = True
                    break
                if self._monitor is not None and self._monitor.should_halt():
                    state.halted = True
                    logger.warning(
                        "stage_dispatch_halted",
                        extra={"stage": stage.value, "undispatched": len(work) - index},
                    )
                    break
                if len(pending) >= self._limit:
                    await self._wait_for_any(pending, cancel_waiter, timeout=None)
                    continue

                item = work[index]
                task = asyncio.create_task(self._run_item(item, task_fn, semaphore, stage))
                pending[task] = (index, item)
                index += 1
                dispatched += 1

                burst_done = dispatched % self._burst_size == 0
                if burst_done and self._burst_delay > 0 and index < len(work):
                    await sleep_with_cancellation(
                        self._burst_delay, cancel_token=self._cancel_token, sleep=self._sleep
                    )

            state.skipped.extend(work[index:])
            await self._drain(pending, state, semaphore, cancel_waiter)
        finally:
            await _cancel_all(pending)
            if cancel_waiter is not None:
                await _cancel_all([cancel_waiter])

        result = BatchResult(
            stage=stage,
            results=tuple(state.results[key] for key in sorted(state.results)),
            skipped=tuple(state.skipped),
            halted=state.halted,
            cancelled=state.cancelled,
            peak_in_flight=semaphore.peak,
        )
        logger.info(
            "stage_finished",
            extra={
                "stage": stage.value,
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
                "skipped": len(result.skipped),
                "halted": result.halted,
                "cancelled": result.cancelled,
                "peak_in_flight": result.peak_in_flight,
            },
        )
        return result

    async def _run_item(
        self,
        item: str,
        task_fn: TaskFn,
        semaphore: BoundedSemaphore,
        stage: StageName,
    ) -> StageResult:
        async with semaphore.permit():
            with correlation_scope(stage=stage.value, work_item_id=item):
                try:
                    return await task_fn(item)
                except asyncio.CancelledError:
                    raise
                except Exception as exc:  # noqa: BLE001 - isolate one item's crash.
                    logger.exception("work_item_crashed", extra={"work_item_id": item})
                    return StageResult.failure(
                        item, classify_error(exc), detail=error_detail(exc)
                    )

    async def _drain(
        self,
        pending: dict[asyncio.Task[StageResult], tuple[int, str]],
        state: _BatchState,
        semaphore: BoundedSemaphore,
        cancel_waiter: asyncio.Task[None] | None,
    ) -> None:
        loop = asyncio.get_running_loop()
        deadline: float | None = None
        while True:
            self._reap(pending, state, semaphore)
            if not pending:
                return
            if deadline is None and self._is_cancelled():
                state.cancelled = True
                deadline = loop.time() + self._grace_seconds
                logger.warning(
                    "stage_cancel_grace",
                    extra={
                        "stage": state.stage.value,
                        "in_flight": len(pending),
                        "grace_seconds": self._grace_seconds,
                    },
                )
            if deadline is None:
                await self._wait_for_any(pending, cancel_waiter, timeout=None)
                continue

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await self._wait_for_any(pending, None, timeout=remaining)

        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        self._reap(pending, state, semaphore)

    async def _wait_for_any(
        self,
        pending: dict[asyncio.Task[StageResult], tuple[int, str]],
        cancel_waiter: asyncio.Task[None] | None,
        *,
        timeout: float | None,
    ) -> None:
        waitables: set[asyncio.Task[Any]] = set(pending)
        if cancel_waiter is not None and not cancel_waiter.done():
            waitables.add(cancel_waiter)
        await asyncio.wait(waitables, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

    def _reap(
        self,
        pending: dict[asyncio.Task[StageResult], tuple[int, str]],
        state: _BatchState,
        semaphore: BoundedSemaphore,
    ) -> None:
        for task in [task for task in pending if task.done()]:
            index, item = pending.pop(task)
            result = _task_outcome(task, item)
            state.record(index, result)
            if self._monitor is not None:
                self._monitor.observe(result.ok)
            if not result.ok:
                logger.warning(
                    "work_item_failed",
                    extra={
                        "stage": state.stage.value,
                        "work_item_id": item,
                        "classification": result.error_class.value if result.error_class else None,
                        "attempts": result.attempts,
                        "exhausted": result.exhausted,
                        "last_error": result.detail,
                    },
                )
            if self._progress is not None:
                self._progress(
                    ProgressSnapshot(
                        stage=state.stage,
                        completed=len(state.results),
                        total=state.total,
                        succeeded=state.succeeded,
                        failed=state.failed,
                        in_flight=semaphore.in_use,
                    )
                )

    def _is_cancelled(self) -> bool:
        return self._cancel_token is not None and self._cancel_token.is_cancelled


@dataclass(slots=True)
class _BatchState:
    stage: StageName
    total: int
    results: dict[int, StageResult] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    succeeded: int = 0
    failed: int = 0
    halted: bool = False
    cancelled: bool = False

    def record(self, index: int, result: StageResult) -> None:
        self.results[index] = result
        if result.ok:
            self.succeeded += 1
        else:
            self.failed += 1


def _task_outcome(task: asyncio.Task[StageResult], item: str) -> StageResult:
    if task.cancelled():
        return StageResult.failure(item, ErrorClass.TRANSIENT, detail=CANCELLED_DETAIL)
    exc = task.exception()
    if exc is not None:
        return StageResult.failure(item, classify_error(exc), detail=error_detail(exc))
    return task.result()


async def _cancel_all(tasks: Iterable[asyncio.Task[Any]]) -> None:
    live = [task for task in tasks if not task.done()]
    for task in live:
        task.cancel()
    for task in live:
        with suppress(asyncio.CancelledError):
            await task


__all__ = [
    "BatchResult",
    "BoundedRunner",
    "CANCELLED_DETAIL",
    "ProgressCallback",
    "ProgressSnapshot",
    "TaskFn",
]
