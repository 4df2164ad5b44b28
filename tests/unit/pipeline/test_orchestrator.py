"""
cloud-provisioner — unit tests for the pipeline orchestrator

Purpose
- Stage sequencing, settle wait and abort rules.
- Idempotent enable, credential reuse and the create-then-lookup fallback.
- RunContext cleanup on every exit path.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from cloud_provisioner.domain.models import ErrorClass, PipelineState, StageName
from cloud_provisioner.pipeline.orchestrator import (
    INTERRUPTED_REASON,
    PipelineOrchestrator,
    PipelineSettings,
    RunContext,
)
from cloud_provisioner.pipeline.retry import RetryPolicy
from cloud_provisioner.providers.base import RawResponse
from tests.fakes import (
    RecordingObserver,
    RecordingSleep,
    ScriptedProvider,
    already_exists_error,
    key_for,
    permission_denied_error,
    transient_error,
)

ITEMS = ("gk-ns-001", "gk-ns-002", "gk-ns-003")


def _orchestrator(
    provider: ScriptedProvider,
    context: RunContext,
    *,
    settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    sleep: RecordingSleep,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        provider,
        context,
        settings=settings,
        retry_policy=retry_policy,
        observer=observer,
        sleep=sleep,
    )


def _lines(path: Path) -> list[str]:
    return path.read_text(encoding="utf-8").splitlines()


async def test_full_run_walks_every_state_and_writes_credentials(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        orchestrator = _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        )
        report = await orchestrator.run_batch(ITEMS)

    assert report.state is PipelineState.DONE
    assert report.operation == "create"
    assert report.credentials == 3
    assert report.abort_reason is None
    assert observer.states == [
        PipelineState.CREATE,
        PipelineState.WAIT,
        PipelineState.ENABLE,
        PipelineState.EXTRACT,
        PipelineState.DONE,
    ]
    assert [stage for stage, _ in observer.started] == [
        StageName.CREATE,
        StageName.ENABLE,
        StageName.EXTRACT,
    ]
    assert observer.waits == [8.0]
    assert 8.0 in fake_sleep.delays
    assert sorted(_lines(tmp_path / "key.txt")) == sorted(key_for(item) for item in ITEMS)
    comma_text = (tmp_path / "comma_separated_keys_ns.txt").read_text(encoding="utf-8")
    assert comma_text.count(",") == 2


async def test_stage_barrier_only_forwards_survivors(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider.fail_always("create_resource", "gk-ns-002", permission_denied_error())

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        report = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).run_batch(ITEMS)

    assert report.state is PipelineState.DONE
    assert report.survivors(StageName.CREATE) == 2
    assert provider.call_count("enable_capability", "gk-ns-002") == 0
    assert provider.call_count("create_credential", "gk-ns-002") == 0
    assert [failure.work_item_id for failure in report.failures] == ["gk-ns-002"]
    assert report.failures[0].error_class is ErrorClass.PERMISSION_DENIED
    assert report.failures[0].stage is StageName.CREATE


async def test_zero_create_survivors_aborts_without_wait(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    for item in ITEMS:
        provider.fail_always("create_resource", item, permission_denied_error())

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        report = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).run_batch(ITEMS)

    assert report.state is PipelineState.ABORTED
    assert report.aborted
    assert report.abort_reason == "create stage produced no survivors"
    assert observer.waits == []
    assert observer.states[-1] is PipelineState.ABORTED
    assert provider.call_count("enable_capability") == 0
    assert provider.call_count("create_credential") == 0
    assert _lines(tmp_path / "key.txt") == []


async def test_cancellation_during_settle_wait_aborts_as_interrupted(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    fake_sleep: RecordingSleep,
) -> None:
    with RunContext(namespace="ns", output_dir=tmp_path) as context:

        class CancellingObserver(RecordingObserver):
            def on_wait_started(self, total_seconds: float) -> None:
                super().on_wait_started(total_seconds)
                context.cancel_token.cancel(INTERRUPTED_REASON)

        observer = CancellingObserver()
        report = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).run_batch(ITEMS)

    assert report.state is PipelineState.ABORTED
    assert report.abort_reason == INTERRUPTED_REASON
    assert provider.call_count("create_resource") == 3
    assert provider.call_count("enable_capability") == 0


async def test_enable_treats_already_enabled_as_success(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider.fail_always("enable_capability", "gk-ns-001", already_exists_error())

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        result = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).enable_one("gk-ns-001")

    assert result.ok
    assert result.error_class is None
    assert provider.call_count("enable_capability") == 1


async def test_transient_enable_failure_is_retried(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider.script("enable_capability", "gk-ns-001", transient_error())

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        result = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).enable_one("gk-ns-001")

    assert result.ok
    assert result.attempts == 2
    assert fake_sleep.delays == [5.0]


async def test_existing_credential_is_used_when_create_reports_conflict(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider.seed_credential("gk-ns-001", "AIzaSeededValue")
    provider.fail_always("create_credential", "gk-ns-001", already_exists_error())

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        result = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).extract_one("gk-ns-001")
        assert context.sink.credentials[0].value == "AIzaSeededValue"

    assert result.ok
    assert provider.call_count("list_credentials", "gk-ns-001") == 1


async def test_conflict_without_listed_credential_fails(
    tmp_path: Path,
    provider: ScriptedProvider,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider.fail_always("create_credential", "gk-ns-001", already_exists_error())

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        result = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).extract_one("gk-ns-001")
        assert len(context.sink) == 0

    assert not result.ok
    assert result.error_class is ErrorClass.ALREADY_EXISTS


class _UndecodableProvider(ScriptedProvider):
    async def create_credential(self, resource_id: str) -> RawResponse:
        await super().create_credential(resource_id)
        return '{"done": true, "response": {}}'


async def test_payload_without_key_string_fails_the_item(
    tmp_path: Path,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider = _UndecodableProvider()

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        result = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).extract_one("gk-ns-001")

    assert not result.ok
    assert result.error_class is ErrorClass.TRANSIENT
    assert result.detail == "credential payload carried no key string"
    assert provider.call_count("create_credential") == 1


async def test_existing_mode_reuses_listed_credentials(
    tmp_path: Path,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider = ScriptedProvider(resources=ITEMS)
    for item in ITEMS[:2]:
        provider.seed_credential(item)

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        report = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).run_existing(ITEMS)

    assert report.state is PipelineState.DONE
    assert report.operation == "extract"
    assert report.credentials == 3
    assert observer.waits == []
    assert provider.call_count("create_resource") == 0
    assert provider.call_count("enable_capability") == 3
    assert provider.call_count("create_credential", "gk-ns-001") == 0
    assert provider.call_count("create_credential", "gk-ns-003") == 1


async def test_existing_mode_can_skip_enable(
    tmp_path: Path,
    fast_settings: PipelineSettings,
    retry_policy: RetryPolicy,
    observer: RecordingObserver,
    fake_sleep: RecordingSleep,
) -> None:
    provider = ScriptedProvider(resources=ITEMS)

    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        report = await _orchestrator(
            provider,
            context,
            settings=fast_settings,
            retry_policy=retry_policy,
            observer=observer,
            sleep=fake_sleep,
        ).run_existing(ITEMS, start_at=StageName.EXTRACT)

    assert report.credentials == 3
    assert provider.call_count("enable_capability") == 0
    assert observer.states == [PipelineState.EXTRACT, PipelineState.DONE]


async def test_existing_mode_rejects_create_start(
    tmp_path: Path,
    provider: ScriptedProvider,
) -> None:
    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        orchestrator = PipelineOrchestrator(provider, context)
        with pytest.raises(ValueError):
            await orchestrator.run_existing(ITEMS, start_at=StageName.CREATE)


def test_run_context_removes_scratch_directory(tmp_path: Path) -> None:
    with RunContext(namespace="ns", output_dir=tmp_path) as context:
        scratch = context.scratch_dir
        assert scratch.is_dir()

    assert not scratch.exists()
    with pytest.raises(RuntimeError):
        _ = context.sink


def test_run_context_cleans_up_when_the_body_raises(tmp_path: Path) -> None:
    context = RunContext(namespace="ns", output_dir=tmp_path)

    with pytest.raises(KeyError), context:
        scratch = context.scratch_dir
        raise KeyError("boom")

    assert not scratch.exists()
    assert (tmp_path / "key.txt").exists()


def test_pipeline_settings_validate_ranges() -> None:
    with pytest.raises(ValueError):
        PipelineSettings(concurrency_limit=0)
    with pytest.raises(ValueError):
        PipelineSettings(settle_seconds=-1.0)
