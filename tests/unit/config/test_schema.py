"""Unit tests for strict config validation and redaction."""

from __future__ import annotations

from typing import Any

import pytest

from cloud_provisioner.config import (
    ConfigValidationError,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)


def _with(overlay: dict[str, Any]) -> dict[str, Any]:
    return merge_config(default_config(), overlay)


def _issues(config: dict[str, Any]) -> dict[str, str]:
    result = validate_config(config)
    assert not result.is_valid
    return {issue.path: issue.message for issue in result.issues}


def test_defaults_are_valid() -> None:
    result = validate_config(default_config())

    assert result.is_valid
    assert result.config is not None
    assert result.config["retry"]["max_attempts"] == 3


def test_unknown_field_is_reported_with_path() -> None:
    issues = _issues(_with({"run": {"colour": "blue"}}))

    assert issues == {"run.colour": "unknown field"}


def test_embedded_secret_is_rejected() -> None:
    issues = _issues(_with({"provider": {"apiKey": "AIzaSecret"}}))

    assert issues["provider.apiKey"] == "embedded secret values are forbidden in config files"


def test_missing_section_is_reported() -> None:
    config = default_config()
    del config["breaker"]  # type: ignore[misc]

    assert _issues(dict(config)) == {"breaker": "missing required field"}


@pytest.mark.parametrize(
    ("overlay", "path"),
    [
        ({"run": {"total": 0}}, "run.total"),
        ({"run": {"total": 1000}}, "run.total"),
        ({"run": {"resource_prefix": "Gemini"}}, "run.resource_prefix"),
        ({"run": {"user_prefix": "has-dash"}}, "run.user_prefix"),
        ({"concurrency": {"max_parallel": 51}}, "concurrency.max_parallel"),
        ({"retry": {"max_attempts": 6}}, "retry.max_attempts"),
        ({"retry": {"operation_timeout_seconds": 0.0}}, "retry.operation_timeout_seconds"),
        ({"breaker": {"failure_threshold": 1.0}}, "breaker.failure_threshold"),
        ({"breaker": {"enabled": "yes"}}, "breaker.enabled"),
        ({"provider": {"exclude_pattern": "(unclosed"}}, "provider.exclude_pattern"),
        ({"observability": {"log_level": "TRACE"}}, "observability.log_level"),
        ({"pipeline": {"settle_seconds": float("nan")}}, "pipeline.settle_seconds"),
    ],
)
def test_invalid_values_are_reported(overlay: dict[str, Any], path: str) -> None:
    assert path in _issues(_with(overlay))


def test_output_templates_only_accept_their_placeholder() -> None:
    issues = _issues(
        _with({"output": {"comma_file": "keys_{project}.txt", "deletion_log": "del_{}.log"}})
    )

    assert issues["output.comma_file"] == "only the {namespace} placeholder is supported"
    assert issues["output.deletion_log"] == "only the {timestamp} placeholder is supported"


def test_max_delay_must_not_be_below_base_delay() -> None:
    issues = _issues(_with({"retry": {"base_delay_seconds": 10.0, "max_delay_seconds": 5.0}}))

    assert issues == {"retry.max_delay_seconds": "must be >= retry.base_delay_seconds"}


def test_schema_version_mismatch_carries_guidance() -> None:
    issues = _issues(_with({"meta": {"schema_version": 2}}))

    assert "newer than supported" in issues["meta.schema_version"]
    assert migration_guidance(1) == "schema version is current"


def test_assert_valid_config_raises_with_every_issue() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        assert_valid_config(_with({"run": {"total": 0}, "concurrency": {"burst_size": 0}}))

    assert {issue.path for issue in excinfo.value.issues} == {
        "run.total",
        "concurrency.burst_size",
    }
    assert "- run.total: must be >= 1" in str(excinfo.value)


def test_int_values_are_accepted_for_float_fields() -> None:
    result = validate_config(_with({"pipeline": {"settle_seconds": 0}}))

    assert result.config is not None
    assert result.config["pipeline"]["settle_seconds"] == 0.0


def test_redaction_masks_sensitive_keys_only() -> None:
    redacted = redact_config({"provider": {"binary": "gcloud", "access_token": "t0k3n"}})

    assert redacted == {"provider": {"access_token": "<redacted>", "binary": "gcloud"}}
