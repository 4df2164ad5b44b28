"""
cloud-provisioner — unit tests for the retry executor and error classification

Purpose
- Fatal errors are never retried; retryable errors use exactly the attempt cap.
- Backoff is linear with a ceiling and longer for rate limiting.
- The classification table is ordered, case-insensitive, and structured codes win.
"""

from __future__ import annotations

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from cloud_provisioner.domain.models import ErrorClass
from cloud_provisioner.pipeline.retry import (
    CLASSIFICATION_TABLE,
    RetryExecutor,
    RetryPolicy,
    classify_error,
    classify_message,
)
from cloud_provisioner.providers.base import ProviderCommandError
from cloud_provisioner.utils.concurrency import CancellationToken
from tests.fakes import (
    RecordingSleep,
    permission_denied_error,
    rate_limited_error,
    transient_error,
)


class _Flaky:
    def __init__(self, *errors: Exception, value: str = "done") -> None:
        self._errors = list(errors)
        self.calls = 0
        self._value = value

    async def __call__(self) -> str:
        self.calls += 1
        await asyncio.sleep(0)
        if self._errors:
            raise self._errors.pop(0)
        return self._value


def _executor(sleep: RecordingSleep, **policy: object) -> RetryExecutor:
    defaults: dict[str, object] = {
        "max_attempts": 3,
        "base_delay_seconds": 5.0,
        "max_delay_seconds": 60.0,
        "operation_timeout_seconds": None,
    }
    defaults.update(policy)
    return RetryExecutor(RetryPolicy(**defaults), sleep=sleep)  # type: ignore[arg-type]


async def test_fatal_error_is_attempted_exactly_once(fake_sleep: RecordingSleep) -> None:
    operation = _Flaky(permission_denied_error(), permission_denied_error())

    result = await _executor(fake_sleep).execute(operation)

    assert operation.calls == 1
    assert result.attempts == 1
    assert result.error_class is ErrorClass.PERMISSION_DENIED
    assert result.fatal
    assert not result.exhausted
    assert fake_sleep.delays == []


async def test_transient_error_uses_exactly_max_attempts(fake_sleep: RecordingSleep) -> None:
    operation = _Flaky(*(transient_error() for _ in range(10)))

    result = await _executor(fake_sleep, max_attempts=4).execute(operation)

    assert operation.calls == 4
    assert result.attempts == 4
    assert result.exhausted
    assert result.error_class is ErrorClass.TRANSIENT
    assert fake_sleep.delays == [5.0, 10.0, 15.0]


async def test_success_after_retry_returns_value(fake_sleep: RecordingSleep) -> None:
    operation = _Flaky(transient_error(), value="payload")

    result = await _executor(fake_sleep).execute(operation)

    assert result.ok
    assert result.value == "payload"
    assert result.attempts == 2
    assert fake_sleep.delays == [5.0]


async def test_rate_limited_backoff_is_multiplied(fake_sleep: RecordingSleep) -> None:
    operation = _Flaky(rate_limited_error(), rate_limited_error(), rate_limited_error())

    result = await _executor(fake_sleep, rate_limit_multiplier=2.0).execute(operation)

    assert result.error_class is ErrorClass.RATE_LIMITED
    assert result.exhausted
    assert fake_sleep.delays == [10.0, 20.0]


async def test_per_call_attempt_cap_overrides_policy(fake_sleep: RecordingSleep) -> None:
    operation = _Flaky(*(transient_error() for _ in range(5)))

    result = await _executor(fake_sleep, max_attempts=5).execute(operation, max_attempts=2)

    assert operation.calls == 2
    assert result.exhausted


async def test_cancellation_during_backoff_stops_retrying(fake_sleep: RecordingSleep) -> None:
    token = CancellationToken()
    token.cancel("interrupted")
    executor = RetryExecutor(
        RetryPolicy(operation_timeout_seconds=None), sleep=fake_sleep, cancel_token=token
    )
    operation = _Flaky(transient_error(), transient_error())

    result = await executor.execute(operation)

    assert operation.calls == 1
    assert not result.ok
    assert result.detail is not None
    assert result.detail.startswith("cancelled during backoff")


async def test_operation_timeout_is_transient(fake_sleep: RecordingSleep) -> None:
    async def hang() -> None:
        await asyncio.sleep(5)

    result = await _executor(
        fake_sleep, max_attempts=2, operation_timeout_seconds=0.01
    ).execute(hang)

    assert result.error_class is ErrorClass.TRANSIENT
    assert result.attempts == 2
    assert result.exhausted


async def test_error_detail_is_redacted(fake_sleep: RecordingSleep) -> None:
    leaked = "AIza" + "B" * 35
    operation = _Flaky(ProviderCommandError(f"PERMISSION_DENIED for key {leaked}"))

    result = await _executor(fake_sleep).execute(operation)

    assert result.detail is not None
    assert leaked not in result.detail


def test_policy_delay_is_linear_with_ceiling() -> None:
    policy = RetryPolicy(base_delay_seconds=5.0, max_delay_seconds=12.0)

    assert policy.delay_for(1, ErrorClass.TRANSIENT) == 5.0
    assert policy.delay_for(2, ErrorClass.TRANSIENT) == 10.0
    assert policy.delay_for(3, ErrorClass.TRANSIENT) == 12.0
    assert policy.delay_for(3, ErrorClass.RATE_LIMITED) == 24.0


def test_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(max_attempts=0)
    with pytest.raises(ValueError):
        RetryPolicy(base_delay_seconds=10.0, max_delay_seconds=5.0)
    with pytest.raises(ValueError):
        RetryPolicy(rate_limit_multiplier=0.5)


@pytest.mark.parametrize(
    ("message", "expected"),
    [
        ("ERROR: Permission denied on resource project", ErrorClass.PERMISSION_DENIED),
        ("Quota exceeded for quota metric", ErrorClass.RATE_LIMITED),
        ("RESOURCE_EXHAUSTED: too many", ErrorClass.RATE_LIMITED),
        ("The project ID you specified is already in use", ErrorClass.TRANSIENT),
        ("Requested entity already exists", ErrorClass.ALREADY_EXISTS),
        ("Service is already enabled", ErrorClass.ALREADY_EXISTS),
        ("INVALID_ARGUMENT: bad project id", ErrorClass.INVALID_ARGUMENT),
        ("connection reset by peer", ErrorClass.TRANSIENT),
        ("", ErrorClass.TRANSIENT),
    ],
)
def test_classify_message(message: str, expected: ErrorClass) -> None:
    assert classify_message(message) is expected


def test_fatal_patterns_win_over_rate_limit_patterns() -> None:
    assert classify_message("permission denied; quota exceeded") is ErrorClass.PERMISSION_DENIED


def test_structured_code_wins_over_message() -> None:
    error = ProviderCommandError("Quota exceeded", code="PERMISSION_DENIED")

    assert classify_error(error) is ErrorClass.PERMISSION_DENIED


def test_unknown_code_falls_back_to_message() -> None:
    error = ProviderCommandError("Quota exceeded", code="SOMETHING_NEW")

    assert classify_error(error) is ErrorClass.RATE_LIMITED


def test_timeouts_and_plain_strings_classify() -> None:
    assert classify_error(TimeoutError("slow")) is ErrorClass.TRANSIENT
    assert classify_error("too many requests") is ErrorClass.RATE_LIMITED


_NEUTRAL_TEXT = st.text(alphabet="0123456789 .:#", max_size=20)


@settings(max_examples=150, deadline=None)
@given(
    entry=st.sampled_from(CLASSIFICATION_TABLE),
    prefix=_NEUTRAL_TEXT,
    suffix=_NEUTRAL_TEXT,
    upper=st.booleans(),
)
def test_table_patterns_classify_regardless_of_case_and_context(
    entry: tuple[str, ErrorClass],
    prefix: str,
    suffix: str,
    upper: bool,
) -> None:
    pattern, expected = entry
    text = pattern.upper() if upper else pattern

    assert classify_message(f"{prefix}{text}{suffix}") is expected


@settings(max_examples=100, deadline=None)
@given(message=_NEUTRAL_TEXT)
def test_unmatched_messages_are_transient(message: str) -> None:
    assert classify_message(message) is ErrorClass.TRANSIENT
