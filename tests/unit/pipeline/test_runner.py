"""
cloud-provisioner — unit tests for the bounded concurrency runner

Purpose
- The in-flight count never exceeds the limit.
- Results keep input order; survivors are a subset of the input.
- Crashing tasks fail only their own item.
- Breaker trips and cancellation stop dispatch and report skipped items.
"""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from cloud_provisioner.domain.models import ErrorClass, StageName, StageResult
from cloud_provisioner.pipeline.breaker import HealthMonitor
from cloud_provisioner.pipeline.runner import CANCELLED_DETAIL, BoundedRunner, ProgressSnapshot
from cloud_provisioner.utils.concurrency import CancellationToken
from tests.fakes import RecordingSleep


class _Gauge:
    def __init__(self) -> None:
        self.current = 0
        self.peak = 0

    async def track(self, yields: int) -> None:
        self.current += 1
        self.peak = max(self.peak, self.current)
        try:
            for _ in range(yields):
                await asyncio.sleep(0)
        finally:
            self.current -= 1


def _items(count: int) -> list[str]:
    return [f"gk-ns-{index:03d}" for index in range(1, count + 1)]


async def test_in_flight_never_exceeds_limit(fake_sleep: RecordingSleep) -> None:
    gauge = _Gauge()

    async def task(item: str) -> StageResult:
        await gauge.track(yields=int(item[-1]) + 1)
        return StageResult.success(item)

    runner = BoundedRunner(3, burst_delay_seconds=0.0, sleep=fake_sleep)
    batch = await runner.run(_items(20), task, stage=StageName.CREATE)

    assert gauge.peak <= 3
    assert batch.peak_in_flight <= 3
    assert len(batch.succeeded) == 20


@settings(max_examples=25, deadline=None)
@given(
    limit=st.integers(min_value=1, max_value=8),
    outcomes=st.lists(st.booleans(), min_size=0, max_size=30),
)
def test_survivors_are_an_ordered_subset_of_input(limit: int, outcomes: list[bool]) -> None:
    items = _items(len(outcomes))
    verdict = dict(zip(items, outcomes, strict=True))
    gauge = _Gauge()

    async def task(item: str) -> StageResult:
        await gauge.track(yields=(len(item) + limit) % 3)
        if verdict[item]:
            return StageResult.success(item)
        return StageResult.failure(item, ErrorClass.TRANSIENT, detail="boom")

    async def scenario() -> None:
        runner = BoundedRunner(limit, burst_delay_seconds=0.0)
        batch = await runner.run(items, task, stage=StageName.ENABLE)

        assert [result.work_item_id for result in batch.results] == items
        assert set(batch.succeeded) <= set(items)
        assert list(batch.succeeded) == [item for item in items if verdict[item]]
        assert len(batch.failed) == outcomes.count(False)
        assert gauge.peak <= limit

    asyncio.run(scenario())


async def test_task_exception_becomes_that_items_failure(fake_sleep: RecordingSleep) -> None:
    async def task(item: str) -> StageResult:
        await asyncio.sleep(0)
        if item.endswith("002"):
            raise RuntimeError("Permission denied while creating")
        return StageResult.success(item)

    runner = BoundedRunner(2, burst_delay_seconds=0.0, sleep=fake_sleep)
    batch = await runner.run(_items(3), task, stage=StageName.CREATE)

    assert batch.succeeded == ("gk-ns-001", "gk-ns-003")
    (failure,) = batch.failed
    assert failure.work_item_id == "gk-ns-002"
    assert failure.error_class is ErrorClass.PERMISSION_DENIED


async def test_breaker_trip_stops_dispatch_and_reports_skipped(
    fake_sleep: RecordingSleep,
) -> None:
    dispatched: list[str] = []

    async def task(item: str) -> StageResult:
        dispatched.append(item)
        await asyncio.sleep(0)
        return StageResult.failure(item, ErrorClass.TRANSIENT, detail="down")

    monitor = HealthMonitor(failure_threshold=0.3, min_samples=10)
    runner = BoundedRunner(
        1, burst_delay_seconds=0.0, health_monitor=monitor, sleep=fake_sleep
    )
    batch = await runner.run(_items(20), task, stage=StageName.CREATE)

    assert batch.halted
    assert dispatched == _items(10)
    assert batch.skipped == tuple(_items(20)[10:])
    assert batch.to_report().attempted == 10
    assert batch.to_report().skipped == 10


async def test_burst_throttle_sleeps_between_bursts(fake_sleep: RecordingSleep) -> None:
    async def task(item: str) -> StageResult:
        return StageResult.success(item)

    runner = BoundedRunner(10, burst_size=2, burst_delay_seconds=0.2, sleep=fake_sleep)
    await runner.run(_items(5), task, stage=StageName.CREATE)

    assert fake_sleep.delays == [0.2, 0.2]


async def test_cancel_before_dispatch_skips_everything(fake_sleep: RecordingSleep) -> None:
    token = CancellationToken()
    token.cancel("interrupted")

    async def task(item: str) -> StageResult:
        raise AssertionError("must not be dispatched")

    runner = BoundedRunner(4, cancel_token=token, sleep=fake_sleep)
    batch = await runner.run(_items(3), task, stage=StageName.CREATE)

    assert batch.cancelled
    assert batch.results == ()
    assert batch.skipped == tuple(_items(3))


async def test_cancel_waits_grace_period_then_cancels_in_flight() -> None:
    token = CancellationToken()
    release = asyncio.Event()

    async def task(item: str) -> StageResult:
        if item.endswith("001"):
            return StageResult.success(item)
        token.cancel("interrupted")
        await release.wait()
        return StageResult.success(item)

    runner = BoundedRunner(4, burst_delay_seconds=0.0, grace_seconds=0.05, cancel_token=token)
    batch = await runner.run(_items(6), task, stage=StageName.EXTRACT)

    assert batch.cancelled
    assert "gk-ns-001" in batch.succeeded
    cancelled = [result for result in batch.failed if result.detail == CANCELLED_DETAIL]
    assert cancelled
    assert all(result.error_class is ErrorClass.TRANSIENT for result in cancelled)
    assert len(batch.results) + len(batch.skipped) == 6


async def test_progress_callback_sees_every_completion(fake_sleep: RecordingSleep) -> None:
    snapshots: list[ProgressSnapshot] = []

    async def task(item: str) -> StageResult:
        await asyncio.sleep(0)
        return StageResult.success(item)

    runner = BoundedRunner(
        2, burst_delay_seconds=0.0, sleep=fake_sleep, progress=snapshots.append
    )
    await runner.run(_items(4), task, stage=StageName.ENABLE)

    assert [snapshot.completed for snapshot in snapshots] == [1, 2, 3, 4]
    assert snapshots[-1].succeeded == 4
    assert all(snapshot.total == 4 for snapshot in snapshots)


async def test_empty_input_returns_empty_batch() -> None:
    async def task(item: str) -> StageResult:
        raise AssertionError("unreachable")

    batch = await BoundedRunner(2).run([], task, stage=StageName.CREATE)

    assert batch.results == ()
    assert batch.succeeded == ()


def test_runner_rejects_invalid_limits() -> None:
    with pytest.raises(ValueError):
        BoundedRunner(0)
    with pytest.raises(ValueError):
        BoundedRunner(1, burst_size=0)
