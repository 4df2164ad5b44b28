"""
cloud-provisioner — pipeline orchestrator

Purpose
- Sequence CREATE -> WAIT -> ENABLE -> EXTRACT over a flat list of work items,
  threading each stage's survivors into the next.
- Own all per-run state through an explicit RunContext.

Functional requirements
- Stages are strict barriers: a stage starts only after the previous one's runner returned.
- A stage with zero survivors aborts the run; a partially failed stage does not.
- The settle wait runs a heartbeat ticker that is stopped before ENABLE dispatches.
- Existing-resource mode starts at ENABLE (or EXTRACT) with the same stage tasks.
- Cancellation is checked at every stage boundary and aborts with reason ``interrupted``.

Non-functional requirements
- RunContext flushes the sink and removes its scratch directory on every exit path.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Sequence
from contextlib import ExitStack
from dataclasses import dataclass
from pathlib import Path
from types import TracebackType
from typing import Any

from cloud_provisioner.constants import LIST_MAX_ATTEMPTS
from cloud_provisioner.domain.models import (
    Credential,
    CredentialRef,
    ErrorClass,
    PipelineState,
    RunReport,
    StageName,
    StageResult,
)
from cloud_provisioner.observability.logging import correlation_scope
from cloud_provisioner.pipeline.breaker import HealthMonitor
from cloud_provisioner.pipeline.heartbeat import Heartbeat
from cloud_provisioner.pipeline.observer import PipelineObserver
from cloud_provisioner.pipeline.retry import RetryExecutor, RetryPolicy, RetryResult
from cloud_provisioner.pipeline.runner import BatchResult, BoundedRunner, TaskFn
from cloud_provisioner.pipeline.sink import ResultSink
from cloud_provisioner.providers.base import RawResponse, ResourceProvider
from cloud_provisioner.providers.decoder import decode_credential_value
from cloud_provisioner.utils.concurrency import CancellationToken, SleepFn, sleep_with_cancellation
from cloud_provisioner.utils.fs import PathLike, scratch_directory

logger = logging.getLogger(__name__)

INTERRUPTED_REASON = "interrupted"

Clock = Callable[[], float]


@dataclass(frozen=True, slots=True)
class PipelineSettings:
    concurrency_limit: int = 15
    burst_size: int = 1
    burst_delay_seconds: float = 0.2
    grace_seconds: float = 10.0
    settle_seconds: float = 8.0
    heartbeat_interval_seconds: float = 5.0
    breaker_enabled: bool = True
    failure_threshold: float = 0.3
    min_samples: int = 10

    def __post_init__(self) -> None:
        if self.concurrency_limit <= 0:
            raise ValueError("concurrency_limit must be > 0")
        if self.settle_seconds < 0:
            raise ValueError("settle_seconds must be >= 0")
        if self.heartbeat_interval_seconds <= 0:
            raise ValueError("heartbeat_interval_seconds must be > 0")


class RunContext:
    """Per-run state: namespace token, scratch directory, sink, cancel token and clock."""

    def __init__(
        self,
        *,
        namespace: str,
        output_dir: PathLike = ".",
        lines_file: str = "key.txt",
        comma_file: str = "comma_separated_keys_{namespace}.txt",
        flush_every: int = 10,
        cancel_token: CancellationToken | None = None,
        clock: Clock = time.monotonic,
        run_id: str | None = None,
    ) -> None:
        if not namespace:
            raise ValueError("namespace must not be empty")
        self.namespace = namespace
        self.run_id = run_id or uuid.uuid4().hex
        self.output_dir = Path(output_dir)
        self.cancel_token = cancel_token or CancellationToken()
        self.clock = clock
        self._lines_path = self.output_dir / lines_file.format(namespace=namespace)
        self._comma_path = self.output_dir / comma_file.format(namespace=namespace)
        self._flush_every = flush_every
        self._stack: ExitStack | None = None
        self._sink: ResultSink | None = None
        self._scratch_dir: Path | None = None

    @property
    def sink(self) -> ResultSink:
        if self._sink is None:
            raise RuntimeError("run context is not active")
        return self._sink

    @property
    def scratch_dir(self) -> Path:
        if self._scratch_dir is None:
            raise RuntimeError("run context is not active")
        return self._scratch_dir

    def __enter__(self) -> RunContext:
        if self._stack is not None:
            raise RuntimeError("run context already active")
        stack = ExitStack()
        try:
            self._scratch_dir = stack.enter_context(scratch_directory(self.output_dir))
            sink = ResultSink(
                self._lines_path,
                self._comma_path,
                staging_dir=self._scratch_dir,
                flush_every=self._flush_every,
            )
            self._sink = stack.enter_context(sink)
        except BaseException:
            stack.close()
            raise
        self._stack = stack
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        stack, self._stack = self._stack, None
        self._scratch_dir = None
        self._sink = None
        if stack is not None:
            stack.close()


class PipelineOrchestrator:
    """Drive one run through the provisioning stages."""

    def __init__(
        self,
        provider: ResourceProvider,
        context: RunContext,
        *,
        settings: PipelineSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        observer: PipelineObserver | None = None,
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        self._provider = provider
        self._context = context
        self._settings = settings or PipelineSettings()
        self._observer = observer or PipelineObserver()
        self._sleep = sleep
        self._executor = RetryExecutor(
            retry_policy, sleep=sleep, cancel_token=context.cancel_token
        )
        self._monitor = (
            HealthMonitor(
                failure_threshold=self._settings.failure_threshold,
                min_samples=self._settings.min_samples,
            )
            if self._settings.breaker_enabled
            else None
        )

    @property
    def health_monitor(self) -> HealthMonitor | None:
        return self._monitor

    async def run_batch(self, items: Sequence[str]) -> RunReport:
        """Run the full pipeline over freshly generated work items."""

        return await self._run("create", items, start_at=StageName.CREATE)

    async def run_existing(
        self,
        items: Sequence[str],
        *,
        start_at: StageName = StageName.ENABLE,
    ) -> RunReport:
        """Run ENABLE/EXTRACT (or EXTRACT only) over resources that already exist."""

        if start_at not in (StageName.ENABLE, StageName.EXTRACT):
            raise ValueError("existing-resource runs start at enable or extract")
        return await self._run("extract", items, start_at=start_at)

    async def create_one(self, item: str) -> StageResult:
        result = await self._executor.execute(
            lambda: self._provider.create_resource(item), operation_name="create_resource"
        )
        return _stage_result(item, result)

    async def enable_one(self, item: str) -> StageResult:
        result = await self._executor.execute(
            lambda: self._provider.enable_capability(item), operation_name="enable_capability"
        )
        if not result.ok and result.error_class is ErrorClass.ALREADY_EXISTS:
            logger.info("capability_already_enabled", extra={"work_item_id": item})
            return StageResult.success(item, attempts=result.attempts)
        return _stage_result(item, result)

    async def extract_one(self, item: str, *, reuse_existing: bool = False) -> StageResult:
        """Obtain one credential for ``item`` and append it to the sink."""

        attempts = 0
        raw: RawResponse | None = None

        if reuse_existing:
            lookup = await self._read_existing_credential(item)
            attempts += lookup.attempts
            if lookup.ok:
                raw = lookup.value
            else:
                # Fall through to creating a fresh credential.
                logger.warning(
                    "credential_lookup_failed",
                    extra={"work_item_id": item, "last_error": lookup.detail},
                )

        if raw is None:
            created = await self._executor.execute(
                lambda: self._provider.create_credential(item), operation_name="create_credential"
            )
            attempts += created.attempts
            if created.ok:
                raw = created.value
            elif created.error_class is ErrorClass.ALREADY_EXISTS:
                logger.info("credential_already_exists", extra={"work_item_id": item})
                lookup = await self._read_existing_credential(item)
                attempts += lookup.attempts
                if not lookup.ok:
                    return _stage_result(item, lookup, attempts=attempts)
                if lookup.value is None:
                    return StageResult.failure(
                        item,
                        ErrorClass.ALREADY_EXISTS,
                        detail="credential reported as existing but none is listed",
                        attempts=attempts,
                    )
                raw = lookup.value
            else:
                return _stage_result(item, created, attempts=attempts)

        value = decode_credential_value(raw)
        if value is None:
            return StageResult.failure(
                item,
                ErrorClass.TRANSIENT,
                detail="credential payload carried no key string",
                attempts=attempts,
            )
        try:
            credential = Credential(value=value, work_item_id=item)
        except ValueError as exc:
            return StageResult.failure(
                item, ErrorClass.INVALID_ARGUMENT, detail=str(exc), attempts=attempts
            )
        await self._context.sink.append_async(credential)
        return StageResult.success(item, attempts=max(attempts, 1))

    async def _read_existing_credential(self, item: str) -> RetryResult[RawResponse | None]:
        listed = await self._executor.execute(
            lambda: self._provider.list_credentials(item),
            max_attempts=LIST_MAX_ATTEMPTS,
            operation_name="list_credentials",
        )
        if not listed.ok:
            return RetryResult(
                ok=False,
                attempts=listed.attempts,
                error_class=listed.error_class,
                detail=listed.detail,
                exhausted=listed.exhausted,
            )
        refs: Sequence[CredentialRef] = listed.value or ()
        if not refs:
            return RetryResult(ok=True, attempts=listed.attempts, value=None)

        ref = refs[0]
        fetched = await self._executor.execute(
            lambda: self._provider.get_credential_value(ref),
            max_attempts=LIST_MAX_ATTEMPTS,
            operation_name="get_credential_value",
        )
        return RetryResult(
            ok=fetched.ok,
            attempts=listed.attempts + fetched.attempts,
            value=fetched.value,
            error_class=fetched.error_class,
            detail=fetched.detail,
            exhausted=fetched.exhausted,
        )

    async def _run(
        self,
        operation: str,
        items: Sequence[str],
        *,
        start_at: StageName,
    ) -> RunReport:
        context = self._context
        work = list(items)
        started = context.clock()
        batches: list[BatchResult] = []
        state = PipelineState.CREATE
        abort_reason: str | None = None

        with correlation_scope(run_id=context.run_id):
            logger.info(
                "run_started",
                extra={
                    "operation": operation,
                    "namespace": context.namespace,
                    "items": len(work),
                    "start_at": start_at.value,
                },
            )
            survivors: tuple[str, ...] = tuple(work)
            try:
                if start_at is StageName.CREATE:
                    state = self._enter(PipelineState.CREATE)
                    batch = await self._run_stage(StageName.CREATE, survivors, self.create_one)
                    batches.append(batch)
                    survivors = batch.succeeded
                    abort_reason = self._abort_reason(batch)

                    if abort_reason is None:
                        state = self._enter(PipelineState.WAIT)
                        if await self._settle():
                            abort_reason = INTERRUPTED_REASON

                if abort_reason is None and start_at is not StageName.EXTRACT:
                    state = self._enter(PipelineState.ENABLE)
                    batch = await self._run_stage(StageName.ENABLE, survivors, self.enable_one)
                    batches.append(batch)
                    survivors = batch.succeeded
                    abort_reason = self._abort_reason(batch)

                if abort_reason is None:
                    state = self._enter(PipelineState.EXTRACT)
                    reuse = start_at is not StageName.CREATE
                    batch = await self._run_stage(
                        StageName.EXTRACT, survivors, self._extract_task(reuse_existing=reuse)
                    )
                    batches.append(batch)
                    if context.cancel_token.is_cancelled:
                        abort_reason = INTERRUPTED_REASON
            finally:
                context.sink.flush()

            if abort_reason is not None:
                state = self._enter(PipelineState.ABORTED)
                logger.error("run_aborted", extra={"reason": abort_reason})
            else:
                state = self._enter(PipelineState.DONE)

            report = RunReport(
                operation=operation,
                state=state,
                attempted=len(work),
                stages=tuple(batch.to_report() for batch in batches),
                credentials=len(context.sink),
                elapsed_seconds=max(context.clock() - started, 0.0),
                failures=tuple(record for batch in batches for record in batch.failure_records()),
                abort_reason=abort_reason,
                output_files=context.sink.output_files,
            )
            logger.info(
                "run_finished",
                extra={
                    "state": report.state.value,
                    "credentials": report.credentials,
                    "elapsed_seconds": round(report.elapsed_seconds, 3),
                },
            )
        return report

    def _extract_task(self, *, reuse_existing: bool) -> TaskFn:
        async def extract(item: str) -> StageResult:
            return await self.extract_one(item, reuse_existing=reuse_existing)

        return extract

    async def _run_stage(
        self,
        stage: StageName,
        items: Sequence[str],
        task_fn: TaskFn,
    ) -> BatchResult:
        if self._monitor is not None:
            self._monitor.reset()
        runner = BoundedRunner(
            self._settings.concurrency_limit,
            burst_size=self._settings.burst_size,
            burst_delay_seconds=self._settings.burst_delay_seconds,
            grace_seconds=self._settings.grace_seconds,
            health_monitor=self._monitor,
            cancel_token=self._context.cancel_token,
            sleep=self._sleep,
            progress=self._observer.on_progress,
        )
        self._observer.on_stage_started(stage, len(items))
        with correlation_scope(stage=stage.value):
            batch = await runner.run(items, task_fn, stage=stage)
        self._observer.on_stage_finished(batch)
        return batch

    async def _settle(self) -> bool:
        """Wait for provider-side consistency. Returns ``True`` when interrupted."""

        seconds = self._settings.settle_seconds
        self._observer.on_wait_started(seconds)
        logger.info("settle_wait_started", extra={"settle_seconds": seconds})
        async with Heartbeat(
            total_seconds=seconds,
            interval_seconds=self._settings.heartbeat_interval_seconds,
            on_tick=self._observer.on_wait_tick,
            sleep=self._sleep,
            clock=self._context.clock,
        ):
            return await sleep_with_cancellation(
                seconds, cancel_token=self._context.cancel_token, sleep=self._sleep
            )

    def _abort_reason(self, batch: BatchResult) -> str | None:
        if self._context.cancel_token.is_cancelled:
            return INTERRUPTED_REASON
        if not batch.succeeded:
            return f"{batch.stage.value} stage produced no survivors"
        return None

    def _enter(self, state: PipelineState) -> PipelineState:
        logger.info("pipeline_state", extra={"state": state.value})
        self._observer.on_state(state)
        return state


def _stage_result(
    item: str,
    result: RetryResult[Any],
    *,
    attempts: int | None = None,
) -> StageResult:
    total_attempts = result.attempts if attempts is None else attempts
    if result.ok:
        return StageResult.success(item, attempts=total_attempts)
    return StageResult.failure(
        item,
        result.error_class or ErrorClass.TRANSIENT,
        detail=result.detail,
        attempts=total_attempts,
        exhausted=result.exhausted,
    )


__all__ = [
    "INTERRUPTED_REASON",
    "PipelineOrchestrator",
    "PipelineSettings",
    "RunContext",
]
