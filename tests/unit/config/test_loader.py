"""
cloud-provisioner — unit tests for config loading

Purpose
- Precedence CLI > env > file > defaults.
- Env coercion errors, missing/invalid files and path normalization.
"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from cloud_provisioner.config import (
    ConfigLayer,
    ConfigLoadError,
    ConfigValidationError,
    dump_effective_config,
    load_config,
    load_layered_config,
    runtime_settings,
)


@pytest.fixture(autouse=True)
def _isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.chdir(tmp_path)


def _write_config(path: Path, body: str) -> Path:
    path.write_text(body, encoding="utf-8")
    return path


def test_defaults_apply_without_config_file(tmp_path: Path) -> None:
    config = load_config(environ={})

    assert config["run"]["total"] == 175
    assert config["concurrency"]["max_parallel"] == 15
    assert config["observability"]["log_dir"] == (tmp_path.resolve() / "logs").as_posix()


def test_precedence_cli_over_env_over_file(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "provisioner.toml",
        "[concurrency]\nmax_parallel = 5\nburst_size = 2\n\n[run]\ntotal = 40\n",
    )

    config = load_config(
        config_path,
        cli_overrides={"concurrency.max_parallel": 3, "run.total": None},
        environ={
            "CLOUDPROV_CONCURRENCY_MAX_PARALLEL": "7",
            "CLOUDPROV_CONCURRENCY_BURST_SIZE": "4",
        },
    )

    assert config["concurrency"]["max_parallel"] == 3
    assert config["concurrency"]["burst_size"] == 4
    assert config["run"]["total"] == 40
    assert config["concurrency"]["burst_delay_seconds"] == 0.2


def test_env_values_are_coerced_to_field_types() -> None:
    config = load_config(
        environ={
            "CLOUDPROV_PIPELINE_SETTLE_SECONDS": "0",
            "CLOUDPROV_BREAKER_ENABLED": "off",
            "CLOUDPROV_RUN_USER_PREFIX": " kiwi ",
        },
    )

    assert config["pipeline"]["settle_seconds"] == 0.0
    assert config["breaker"]["enabled"] is False
    assert config["run"]["user_prefix"] == "kiwi"


@pytest.mark.parametrize(
    ("name", "raw", "message"),
    [
        ("CLOUDPROV_RUN_TOTAL", "many", "must be an integer"),
        ("CLOUDPROV_RETRY_BASE_DELAY_SECONDS", "soon", "must be a number"),
        ("CLOUDPROV_BREAKER_ENABLED", "maybe", "must be a boolean"),
    ],
)
def test_env_coercion_errors_name_the_variable(name: str, raw: str, message: str) -> None:
    with pytest.raises(ConfigLoadError, match=message) as excinfo:
        load_config(environ={name: raw})

    assert name in str(excinfo.value)


def test_out_of_range_override_is_rejected() -> None:
    with pytest.raises(ConfigValidationError) as excinfo:
        load_config(cli_overrides={"concurrency.max_parallel": 51}, environ={})

    assert [issue.path for issue in excinfo.value.issues] == ["concurrency.max_parallel"]


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigLoadError, match="config file not found"):
        load_config(tmp_path / "nope.toml", environ={})


def test_invalid_toml_is_an_error(tmp_path: Path) -> None:
    config_path = _write_config(tmp_path / "provisioner.toml", "[run\ntotal = ")

    with pytest.raises(ConfigLoadError, match="invalid TOML"):
        load_config(config_path, environ={})


def test_log_dir_is_relative_to_config_file(tmp_path: Path) -> None:
    config_dir = tmp_path / "conf"
    config_dir.mkdir()
    config_path = _write_config(
        config_dir / "provisioner.toml", '[observability]\nlog_dir = "../run-logs"\n'
    )

    config = load_config(config_path, environ={})

    assert config["observability"]["log_dir"] == (tmp_path.resolve() / "run-logs").as_posix()


def test_dump_is_deterministic_json() -> None:
    config = load_config(environ={})

    first = dump_effective_config(config)
    second = dump_effective_config(config)

    assert first == second
    assert json.loads(first)["run"]["resource_prefix"] == "gemini-key"


def test_runtime_settings_map_every_section() -> None:
    config = load_config(
        cli_overrides={
            "concurrency.max_parallel": 9,
            "retry.max_attempts": 4,
            "breaker.enabled": False,
            "provider.binary": "/opt/sdk/bin/gcloud",
            "output.flush_every": 3,
        },
        environ={},
    )

    settings = runtime_settings(config)

    assert settings.pipeline.concurrency_limit == 9
    assert settings.pipeline.breaker_enabled is False
    assert settings.retry.max_attempts == 4
    assert settings.provider.binary == "/opt/sdk/bin/gcloud"
    assert settings.output.flush_every == 3
    assert settings.output.lines_file == "key.txt"
    assert settings.delete_settle_seconds == 10.0
    assert settings.total == 175


def test_layered_config_records_the_layer_behind_each_override(tmp_path: Path) -> None:
    config_path = _write_config(
        tmp_path / "provisioner.toml", "[run]\ntotal = 40\n\n[concurrency]\nmax_parallel = 5\n"
    )

    layered = load_layered_config(
        config_path,
        cli_overrides={"concurrency.max_parallel": 3, "run.user_prefix": None},
        environ={"CLOUDPROV_BREAKER_MIN_SAMPLES": "4"},
    )

    assert layered.config_file == config_path.resolve()
    assert layered.overridden() == {
        "breaker.min_samples": "env",
        "concurrency.max_parallel": "cli",
        "run.total": "file",
    }
    assert layered.sources["concurrency.max_parallel"] is ConfigLayer.CLI
    assert layered.values["breaker"]["min_samples"] == 4


def test_layered_config_without_a_file_reports_none() -> None:
    layered = load_layered_config(environ={})

    assert layered.config_file is None
    assert layered.overridden() == {}


def test_indented_dump_is_multiline_and_redacted() -> None:
    config = load_config(environ={})

    dumped = dump_effective_config(config, indent=2)

    assert "\n" in dumped
    assert '"max_parallel": 15' in dumped
    assert json.loads(dumped) == json.loads(dump_effective_config(config))


@pytest.mark.parametrize("key", ["total", ".total", "run.", "run.total.extra"])
def test_malformed_cli_override_keys_are_rejected(key: str) -> None:
    with pytest.raises(ConfigLoadError, match="invalid CLI override key"):
        load_config(cli_overrides={key: 1}, environ={})
