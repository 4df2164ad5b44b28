"""Typed runtime views over a validated config mapping."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from cloud_provisioner.pipeline.orchestrator import PipelineSettings
from cloud_provisioner.pipeline.retry import RetryPolicy
from cloud_provisioner.providers.gcloud import GcloudSettings


@dataclass(frozen=True, slots=True)
class OutputSettings:
    lines_file: str
    comma_file: str
    flush_every: int
    deletion_log: str
    cleanup_log: str


@dataclass(frozen=True, slots=True)
class RuntimeSettings:
    resource_prefix: str
    user_prefix: str
    total: int
    pipeline: PipelineSettings
    retry: RetryPolicy
    provider: GcloudSettings
    output: OutputSettings
    delete_settle_seconds: float
    log_level: str
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


def runtime_settings(config: Mapping[str, Any]) -> RuntimeSettings:
    """Build component settings from a config already passed through validation."""

    run = config["run"]
    concurrency = config["concurrency"]
    retry = config["retry"]
    breaker = config["breaker"]
    pipeline = config["pipeline"]
    provider = config["provider"]
    output = config["output"]
    observability = config["observability"]

    return RuntimeSettings(
        resource_prefix=run["resource_prefix"],
        user_prefix=run["user_prefix"],
        total=run["total"],
        pipeline=PipelineSettings(
            concurrency_limit=concurrency["max_parallel"],
            burst_size=concurrency["burst_size"],
            burst_delay_seconds=concurrency["burst_delay_seconds"],
            grace_seconds=concurrency["grace_seconds"],
            settle_seconds=pipeline["settle_seconds"],
            heartbeat_interval_seconds=pipeline["heartbeat_interval_seconds"],
            breaker_enabled=breaker["enabled"],
            failure_threshold=breaker["failure_threshold"],
            min_samples=breaker["min_samples"],
        ),
        retry=RetryPolicy(
            max_attempts=retry["max_attempts"],
            base_delay_seconds=retry["base_delay_seconds"],
            max_delay_seconds=retry["max_delay_seconds"],
            rate_limit_multiplier=retry["rate_limit_multiplier"],
            operation_timeout_seconds=retry["operation_timeout_seconds"],
        ),
        provider=GcloudSettings(
            binary=provider["binary"],
            service=provider["service"],
            credential_display_name=provider["credential_display_name"],
            exclude_pattern=provider["exclude_pattern"],
        ),
        output=OutputSettings(
            lines_file=output["lines_file"],
            comma_file=output["comma_file"],
            flush_every=output["flush_every"],
            deletion_log=output["deletion_log"],
            cleanup_log=output["cleanup_log"],
        ),
        delete_settle_seconds=pipeline["delete_settle_seconds"],
        log_level=observability["log_level"],
        log_dir=observability["log_dir"],
        log_to_stdout=observability["log_to_stdout"],
        redact_secrets=observability["redact_secrets"],
    )


__all__ = ["OutputSettings", "RuntimeSettings", "runtime_settings"]
