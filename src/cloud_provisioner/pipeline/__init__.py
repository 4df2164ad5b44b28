"""
cloud-provisioner pipeline package public API.

Purpose
- Export the retry executor, bounded runner, health monitor, result sink,
  orchestrator, maintenance operations and pre-flight checks.

Functional requirements
- No provider adapters or logging initialization at import time.
"""

from cloud_provisioner.pipeline.breaker import HealthMonitor, HealthSnapshot
from cloud_provisioner.pipeline.heartbeat import Heartbeat, HeartbeatTick
from cloud_provisioner.pipeline.maintenance import (
    AuditLog,
    ListingFailedError,
    MaintenanceOperations,
    RebuildOutcome,
    timestamped_name,
)
from cloud_provisioner.pipeline.observer import PipelineObserver
from cloud_provisioner.pipeline.orchestrator import (
    INTERRUPTED_REASON,
    PipelineOrchestrator,
    PipelineSettings,
    RunContext,
)
from cloud_provisioner.pipeline.preflight import (
    PreflightCancelledError,
    PreflightReport,
    QuotaAction,
    run_preflight,
)
from cloud_provisioner.pipeline.retry import (
    CLASSIFICATION_TABLE,
    PROVIDER_CODE_TABLE,
    RetryExecutor,
    RetryPolicy,
    RetryResult,
    classify_error,
    classify_message,
)
from cloud_provisioner.pipeline.runner import BatchResult, BoundedRunner, ProgressSnapshot
from cloud_provisioner.pipeline.sink import ResultSink, SinkClosedError

__all__ = [
    "AuditLog",
    "BatchResult",
    "BoundedRunner",
    "CLASSIFICATION_TABLE",
    "HealthMonitor",
    "HealthSnapshot",
    "Heartbeat",
    "HeartbeatTick",
    "INTERRUPTED_REASON",
    "ListingFailedError",
    "MaintenanceOperations",
    "PROVIDER_CODE_TABLE",
    "PipelineObserver",
    "PipelineOrchestrator",
    "PipelineSettings",
    "PreflightCancelledError",
    "PreflightReport",
    "ProgressSnapshot",
    "QuotaAction",
    "RebuildOutcome",
    "ResultSink",
    "RetryExecutor",
    "RetryPolicy",
    "RetryResult",
    "RunContext",
    "SinkClosedError",
    "classify_error",
    "classify_message",
    "run_preflight",
    "timestamped_name",
]
