"""
cloud-provisioner — configuration schema and validation.

Purpose
- Define authoritative configuration defaults and strict validation rules.

What should be included in this file
- Schema versioning and migration guidance.
- Validation rules for required fields, types, enums, and numeric ranges.
- Deterministic deep-merge helpers and redaction of sensitive fields.

Functional requirements
- Validate config payloads and return structured errors (field path + message).

Non-functional requirements
- Keep rules deterministic and easy to audit.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

from cloud_provisioner.constants import CONFIG_SCHEMA_VERSION, SEQUENCE_WIDTH

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION

MAX_PARALLEL_LIMIT: Final[int] = 50
MAX_RETRY_ATTEMPTS: Final[int] = 5
MAX_TOTAL_ITEMS: Final[int] = 10**SEQUENCE_WIDTH - 1

_RESOURCE_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9-]{0,19}$")
_USER_PREFIX_PATTERN = re.compile(r"^[a-z][a-z0-9]{0,11}$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")

_SENSITIVE_KEY_TOKENS: Final[frozenset[str]] = frozenset(
    {"secret", "token", "password", "passwd", "apikey", "private"}
)
_SENSITIVE_KEY_PHRASES: Final[tuple[str, ...]] = ("api_key", "key_string", "access_key")

PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (("observability", "log_dir"),)


class MetaConfig(TypedDict):
    schema_version: int


class RunConfig(TypedDict):
    resource_prefix: str
    user_prefix: str
    total: int


class ConcurrencyConfig(TypedDict):
    max_parallel: int
    burst_size: int
    burst_delay_seconds: float
    grace_seconds: float


class RetryConfig(TypedDict):
    max_attempts: int
    base_delay_seconds: float
    max_delay_seconds: float
    rate_limit_multiplier: float
    operation_timeout_seconds: float


class BreakerConfig(TypedDict):
    enabled: bool
    failure_threshold: float
    min_samples: int


class PipelineConfig(TypedDict):
    settle_seconds: float
    heartbeat_interval_seconds: float
    delete_settle_seconds: float


class ProviderConfig(TypedDict):
    binary: str
    service: str
    credential_display_name: str
    exclude_pattern: str


class OutputConfig(TypedDict):
    lines_file: str
    comma_file: str
    flush_every: int
    deletion_log: str
    cleanup_log: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProvisionerConfig(TypedDict):
    meta: MetaConfig
    run: RunConfig
    concurrency: ConcurrencyConfig
    retry: RetryConfig
    breaker: BreakerConfig
    pipeline: PipelineConfig
    provider: ProviderConfig
    output: OutputConfig
    observability: ObservabilityConfig


DEFAULT_CONFIG: Final[ProvisionerConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "run": {
        "resource_prefix": "gemini-key",
        "user_prefix": "momo",
        "total": 175,
    },
    "concurrency": {
        "max_parallel": 15,
        "burst_size": 1,
        "burst_delay_seconds": 0.2,
        "grace_seconds": 10.0,
    },
    "retry": {
        "max_attempts": 3,
        "base_delay_seconds": 5.0,
        "max_delay_seconds": 60.0,
        "rate_limit_multiplier": 2.0,
        "operation_timeout_seconds": 300.0,
    },
    "breaker": {
        "enabled": True,
        "failure_threshold": 0.3,
        "min_samples": 10,
    },
    "pipeline": {
        "settle_seconds": 8.0,
        "heartbeat_interval_seconds": 5.0,
        "delete_settle_seconds": 10.0,
    },
    "provider": {
        "binary": "gcloud",
        "service": "generativelanguage.googleapis.com",
        "credential_display_name": "Gemini-API-Key",
        "exclude_pattern": "^sys-",
    },
    "output": {
        "lines_file": "key.txt",
        "comma_file": "comma_separated_keys_{namespace}.txt",
        "flush_every": 10,
        "deletion_log": "project_deletion_{timestamp}.log",
        "cleanup_log": "api_keys_cleanup_{timestamp}.log",
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs/",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


_FieldValidator = Callable[[object, str, _IssueCollector], object | None]


def default_config() -> ProvisionerConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade provisioner.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the cloud-provisioner runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    _reject_unknown_keys(root, set(_SECTIONS), "", issues)
    _require_keys(root, set(_SECTIONS), "", issues)

    out: dict[str, Any] = {}
    for section_name in sorted(_SECTIONS):
        raw = root.get(section_name)
        if raw is None:
            continue
        section = _as_object(raw, section_name, issues)
        if section is None:
            continue
        fields = _SECTIONS[section_name]
        out[section_name] = _validate_section(section, section_name, fields, issues)

    _validate_cross_fields(out, issues)

    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=out, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return deterministic redacted representation for logs."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def dump_redacted(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Alias for schema-level redacted dumps."""

    return redact_config(config)


def _validate_section(
    payload: Mapping[str, object],
    path: str,
    fields: Mapping[str, _FieldValidator],
    issues: _IssueCollector,
) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(fields), path, issues)
    _require_keys(payload, set(fields), path, issues)

    out: dict[str, Any] = {}
    for key in sorted(fields):
        if key not in payload:
            continue
        parsed = fields[key](payload[key], _join(path, key), issues)
        if parsed is not None:
            out[key] = parsed
    return out


def _validate_cross_fields(config: Mapping[str, Any], issues: _IssueCollector) -> None:
    meta = config.get("meta")
    if isinstance(meta, Mapping):
        version = meta.get("schema_version")
        if isinstance(version, int) and version != ConfigSchemaVersion:
            issues.add("meta.schema_version", migration_guidance(version))

    retry = config.get("retry")
    if isinstance(retry, Mapping):
        base = retry.get("base_delay_seconds")
        ceiling = retry.get("max_delay_seconds")
        if isinstance(base, float) and isinstance(ceiling, float) and ceiling < base:
            issues.add("retry.max_delay_seconds", "must be >= retry.base_delay_seconds")


def _int_field(*, minimum: int, maximum: int | None = None) -> _FieldValidator:
    def validate(value: object, path: str, issues: _IssueCollector) -> int | None:
        return _as_int(value, path, issues, minimum=minimum, maximum=maximum)

    return validate


def _float_field(
    *,
    minimum: float,
    exclusive: bool = False,
    below: float | None = None,
) -> _FieldValidator:
    def validate(value: object, path: str, issues: _IssueCollector) -> float | None:
        parsed = _as_float(value, path, issues, minimum=minimum)
        if parsed is None:
            return None
        if exclusive and parsed <= minimum:
            issues.add(path, f"must be > {minimum}")
            return None
        if below is not None and parsed >= below:
            issues.add(path, f"must be < {below}")
            return None
        return parsed

    return validate


def _pattern_field(pattern: re.Pattern[str], example: str) -> _FieldValidator:
    def validate(value: object, path: str, issues: _IssueCollector) -> str | None:
        parsed = _as_str(value, path, issues)
        if parsed is None:
            return None
        if not pattern.fullmatch(parsed):
            issues.add(path, f"must match {pattern.pattern} (example: {example})")
            return None
        return parsed

    return validate


def _template_field(placeholder: str) -> _FieldValidator:
    def validate(value: object, path: str, issues: _IssueCollector) -> str | None:
        parsed = _as_path_text(value, path, issues)
        if parsed is None:
            return None
        try:
            parsed.format(**{placeholder: "x"})
        except (KeyError, IndexError, ValueError):
            issues.add(path, f"only the {{{placeholder}}} placeholder is supported")
            return None
        return parsed

    return validate


def _regex_field(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    try:
        re.compile(value)
    except re.error as exc:
        issues.add(path, f"invalid regular expression: {exc}")
        return None
    return value


def _log_level_field(value: object, path: str, issues: _IssueCollector) -> str | None:
    return _as_enum(value, path, issues, allowed_values=("DEBUG", "INFO", "WARNING", "ERROR"))


_SECTIONS: Final[Mapping[str, Mapping[str, _FieldValidator]]] = {
    "meta": {
        "schema_version": _int_field(minimum=1),
    },
    "run": {
        "resource_prefix": _pattern_field(_RESOURCE_PREFIX_PATTERN, "gemini-key"),
        "user_prefix": _pattern_field(_USER_PREFIX_PATTERN, "momo"),
        "total": _int_field(minimum=1, maximum=MAX_TOTAL_ITEMS),
    },
    "concurrency": {
        "max_parallel": _int_field(minimum=1, maximum=MAX_PARALLEL_LIMIT),
        "burst_size": _int_field(minimum=1),
        "burst_delay_seconds": _float_field(minimum=0.0),
        "grace_seconds": _float_field(minimum=0.0),
    },
    "retry": {
        "max_attempts": _int_field(minimum=1, maximum=MAX_RETRY_ATTEMPTS),
        "base_delay_seconds": _float_field(minimum=0.0),
        "max_delay_seconds": _float_field(minimum=0.0),
        "rate_limit_multiplier": _float_field(minimum=1.0),
        "operation_timeout_seconds": _float_field(minimum=0.0, exclusive=True),
    },
    "breaker": {
        "enabled": lambda value, path, issues: _as_bool(value, path, issues),
        "failure_threshold": _float_field(minimum=0.0, below=1.0),
        "min_samples": _int_field(minimum=1),
    },
    "pipeline": {
        "settle_seconds": _float_field(minimum=0.0),
        "heartbeat_interval_seconds": _float_field(minimum=0.0, exclusive=True),
        "delete_settle_seconds": _float_field(minimum=0.0),
    },
    "provider": {
        "binary": lambda value, path, issues: _as_path_text(value, path, issues),
        "service": lambda value, path, issues: _as_str(value, path, issues),
        "credential_display_name": lambda value, path, issues: _as_str(value, path, issues),
        "exclude_pattern": _regex_field,
    },
    "output": {
        "lines_file": _template_field("namespace"),
        "comma_file": _template_field("namespace"),
        "flush_every": _int_field(minimum=1),
        "deletion_log": _template_field("timestamp"),
        "cleanup_log": _template_field("timestamp"),
    },
    "observability": {
        "log_level": _log_level_field,
        "log_dir": lambda value, path, issues: _as_path_text(value, path, issues),
        "log_to_stdout": lambda value, path, issues: _as_bool(value, path, issues),
        "redact_secrets": lambda value, path, issues: _as_bool(value, path, issues),
    },
}


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    if maximum is not None and value > maximum:
        issues.add(path, f"must be <= {maximum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key in allowed:
            continue
        key_path = _join(path, key)
        if _looks_sensitive_key(key):
            issues.add(key_path, "embedded secret values are forbidden in config files")
        else:
            issues.add(key_path, "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _looks_sensitive_key(key: str) -> bool:
    normalized = _normalize_key(key)
    if any(phrase in normalized for phrase in _SENSITIVE_KEY_PHRASES):
        return True
    tokens = tuple(token for token in normalized.split("_") if token)
    return any(token in _SENSITIVE_KEY_TOKENS for token in tokens)


def _normalize_key(key: str) -> str:
    with_boundaries = _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip())
    return _NON_ALNUM.sub("_", with_boundaries.lower()).strip("_")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        out: dict[str, object] = {}
        for key in sorted(value):
            item = value[key]
            if _looks_sensitive_key(key):
                out[key] = "<redacted>"
            else:
                out[key] = _redact_value(item, key)
        return out
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


__all__ = [
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "MAX_PARALLEL_LIMIT",
    "MAX_RETRY_ATTEMPTS",
    "MAX_TOTAL_ITEMS",
    "PATH_FIELDS",
    "ProvisionerConfig",
    "assert_valid_config",
    "default_config",
    "dump_redacted",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
