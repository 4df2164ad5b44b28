"""
cloud-provisioner — maintenance operations

Purpose
- Bulk deletion of resources, bulk credential cleanup and delete-then-rebuild.

Functional requirements
- Listing uses a reduced attempt cap; a listing failure aborts the operation.
- Deletions go through the same bounded runner and retry executor as provisioning.
- Each processed item appends one timestamped line to the operation's audit log.
- Credential deletions within one resource are spaced by a fixed pause.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from cloud_provisioner.constants import (
    CREDENTIAL_DELETE_PAUSE_SECONDS,
    DELETE_MAX_ATTEMPTS,
    LIST_MAX_ATTEMPTS,
)
from cloud_provisioner.domain.models import (
    ErrorClass,
    PipelineState,
    RunReport,
    StageName,
    StageResult,
)
from cloud_provisioner.observability.logging import correlation_scope
from cloud_provisioner.pipeline.observer import PipelineObserver
from cloud_provisioner.pipeline.orchestrator import (
    INTERRUPTED_REASON,
    PipelineOrchestrator,
    PipelineSettings,
)
from cloud_provisioner.pipeline.retry import RetryExecutor, RetryPolicy
from cloud_provisioner.pipeline.runner import BoundedRunner, TaskFn
from cloud_provisioner.providers.base import ProviderError, ResourceProvider
from cloud_provisioner.utils.concurrency import CancellationToken, SleepFn, sleep_with_cancellation
from cloud_provisioner.utils.fs import PathLike

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"


class ListingFailedError(ProviderError):
    """Resource listing failed after its final attempt."""


def timestamped_name(template: str, *, now: datetime | None = None) -> str:
    moment = now or datetime.now()
    return template.format(timestamp=moment.strftime(TIMESTAMP_FORMAT))


class AuditLog:
    """Append-only, human-readable log of maintenance actions."""

    def __init__(self, path: PathLike, *, title: str) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("w", encoding="utf-8") as handle:
            handle.write(f"{title} - {datetime.now():%Y-%m-%d %H:%M:%S}\n")

    @property
    def path(self) -> Path:
        return self._path

    def record(self, message: str) -> None:
        line = f"[{datetime.now():%Y-%m-%d %H:%M:%S}] {message}\n"
        with self._lock, self._path.open("a", encoding="utf-8") as handle:
            handle.write(line)


@dataclass(frozen=True, slots=True)
class RebuildOutcome:
    deletion: RunReport | None
    provisioning: RunReport | None


class MaintenanceOperations:
    def __init__(
        self,
        provider: ResourceProvider,
        *,
        settings: PipelineSettings | None = None,
        retry_policy: RetryPolicy | None = None,
        cancel_token: CancellationToken | None = None,
        observer: PipelineObserver | None = None,
        sleep: SleepFn = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._provider = provider
        self._settings = settings or PipelineSettings()
        self._cancel_token = cancel_token or CancellationToken()
        self._observer = observer or PipelineObserver()
        self._sleep = sleep
        self._clock = clock
        self._executor = RetryExecutor(retry_policy, sleep=sleep, cancel_token=self._cancel_token)

    @property
    def cancel_token(self) -> CancellationToken:
        return self._cancel_token

    async def list_resources(self) -> list[str]:
        result = await self._executor.execute(
            self._provider.list_resources,
            max_attempts=LIST_MAX_ATTEMPTS,
            operation_name="list_resources",
        )
        if not result.ok:
            raise ListingFailedError(f"unable to list resources: {result.detail}")
        resource_ids = list(result.value or ())
        logger.info("resources_listed", extra={"count": len(resource_ids)})
        return resource_ids

    async def delete_resources(
        self,
        resource_ids: Sequence[str],
        *,
        log_path: PathLike,
    ) -> RunReport:
        audit = AuditLog(log_path, title="Resource deletion log")

        async def delete_one(resource_id: str) -> StageResult:
            result = await self._executor.execute(
                lambda: self._provider.delete_resource(resource_id),
                max_attempts=DELETE_MAX_ATTEMPTS,
                operation_name="delete_resource",
            )
            if result.ok:
                audit.record(f"deleted: {resource_id}")
                return StageResult.success(resource_id, attempts=result.attempts)
            audit.record(f"delete failed: {resource_id} ({result.detail})")
            return StageResult.failure(
                resource_id,
                result.error_class or ErrorClass.TRANSIENT,
                detail=result.detail,
                attempts=result.attempts,
                exhausted=result.exhausted,
            )

        return await self._run_operation(
            "delete", StageName.DELETE, resource_ids, delete_one, audit
        )

    async def cleanup_credentials(
        self,
        resource_ids: Sequence[str],
        *,
        log_path: PathLike,
    ) -> RunReport:
        audit = AuditLog(log_path, title="Credential cleanup log")

        async def cleanup_one(resource_id: str) -> StageResult:
            listed = await self._executor.execute(
                lambda: self._provider.list_credentials(resource_id),
                max_attempts=LIST_MAX_ATTEMPTS,
                operation_name="list_credentials",
            )
            if not listed.ok:
                audit.record(f"list failed: {resource_id} ({listed.detail})")
                return StageResult.failure(
                    resource_id,
                    listed.error_class or ErrorClass.TRANSIENT,
                    detail=listed.detail,
                    attempts=listed.attempts,
                    exhausted=listed.exhausted,
                )

            refs = list(listed.value or ())
            attempts = listed.attempts
            deleted = 0
            last_failure: StageResult | None = None
            for position, ref in enumerate(refs):
                if position and await self._pause(CREDENTIAL_DELETE_PAUSE_SECONDS):
                    return StageResult.failure(
                        resource_id, ErrorClass.TRANSIENT, detail="cancelled", attempts=attempts
                    )
                result = await self._executor.execute(
                    lambda: self._provider.delete_credential(ref),
                    max_attempts=DELETE_MAX_ATTEMPTS,
                    operation_name="delete_credential",
                )
                attempts += result.attempts
                if result.ok:
                    deleted += 1
                    audit.record(f"deleted credential: {resource_id} {ref.name}")
                else:
                    audit.record(
                        f"credential delete failed: {resource_id} {ref.name} ({result.detail})"
                    )
                    last_failure = StageResult.failure(
                        resource_id,
                        result.error_class or ErrorClass.TRANSIENT,
                        detail=f"{ref.name}: {result.detail}",
                        attempts=attempts,
                        exhausted=result.exhausted,
                    )

            logger.info(
                "credentials_cleaned",
                extra={"work_item_id": resource_id, "deleted": deleted, "listed": len(refs)},
            )
            if last_failure is not None:
                return last_failure
            return StageResult.success(resource_id, attempts=attempts)

        return await self._run_operation(
            "cleanup", StageName.CLEANUP, resource_ids, cleanup_one, audit
        )

    async def rebuild(
        self,
        orchestrator: PipelineOrchestrator,
        items: Sequence[str],
        *,
        existing: Sequence[str],
        deletion_log: PathLike,
        delete_settle_seconds: float,
    ) -> RebuildOutcome:
        """Delete ``existing`` resources, let deletions propagate, then provision ``items``."""

        deletion: RunReport | None = None
        if existing:
            deletion = await self.delete_resources(existing, log_path=deletion_log)
            if deletion.aborted:
                return RebuildOutcome(deletion=deletion, provisioning=None)
            logger.info("delete_settle_wait", extra={"settle_seconds": delete_settle_seconds})
            if await self._pause(delete_settle_seconds):
                return RebuildOutcome(deletion=deletion, provisioning=None)

        provisioning = await orchestrator.run_batch(items)
        return RebuildOutcome(deletion=deletion, provisioning=provisioning)

    async def _pause(self, seconds: float) -> bool:
        return await sleep_with_cancellation(
            seconds, cancel_token=self._cancel_token, sleep=self._sleep
        )

    async def _run_operation(
        self,
        operation: str,
        stage: StageName,
        resource_ids: Sequence[str],
        task_fn: TaskFn,
        audit: AuditLog,
    ) -> RunReport:
        started = self._clock()
        runner = BoundedRunner(
            self._settings.concurrency_limit,
            burst_size=self._settings.burst_size,
            burst_delay_seconds=self._settings.burst_delay_seconds,
            grace_seconds=self._settings.grace_seconds,
            cancel_token=self._cancel_token,
            sleep=self._sleep,
            progress=self._observer.on_progress,
        )
        self._observer.on_stage_started(stage, len(resource_ids))
        with correlation_scope(stage=stage.value):
            batch = await runner.run(resource_ids, task_fn, stage=stage)
        self._observer.on_stage_finished(batch)

        abort_reason = INTERRUPTED_REASON if self._cancel_token.is_cancelled else None
        state = PipelineState.ABORTED if abort_reason else PipelineState.DONE
        self._observer.on_state(state)
        report = RunReport(
            operation=operation,
            state=state,
            attempted=len(resource_ids),
            stages=(batch.to_report(),),
            credentials=0,
            elapsed_seconds=max(self._clock() - started, 0.0),
            failures=batch.failure_records(),
            abort_reason=abort_reason,
            output_files=(str(audit.path),),
        )
        logger.info(
            "maintenance_finished",
            extra={
                "operation": operation,
                "succeeded": len(batch.succeeded),
                "failed": len(batch.failed),
            },
        )
        return report


__all__ = [
    "AuditLog",
    "ListingFailedError",
    "MaintenanceOperations",
    "RebuildOutcome",
    "TIMESTAMP_FORMAT",
    "timestamped_name",
]
