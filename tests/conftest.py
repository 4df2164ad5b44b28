"""Shared fixtures for cloud-provisioner tests."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest

from cloud_provisioner.observability.logging import shutdown_logging
from cloud_provisioner.pipeline.orchestrator import PipelineSettings
from cloud_provisioner.pipeline.retry import RetryPolicy
from tests.fakes import RecordingObserver, RecordingSleep, ScriptedProvider

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    yield
    shutdown_logging()
    logging.getLogger("cloud_provisioner").propagate = True


@pytest.fixture
def provider() -> ScriptedProvider:
    return ScriptedProvider()


@pytest.fixture
def fake_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def fast_settings() -> PipelineSettings:
    return PipelineSettings(
        concurrency_limit=4,
        burst_size=1,
        burst_delay_seconds=0.0,
        grace_seconds=1.0,
        settle_seconds=8.0,
        heartbeat_interval_seconds=5.0,
    )


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(
        max_attempts=3,
        base_delay_seconds=5.0,
        max_delay_seconds=60.0,
        operation_timeout_seconds=None,
    )
