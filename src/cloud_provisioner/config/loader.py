"""
cloud-provisioner — layered config loading

Purpose
- Build the effective config from four layers: built-in defaults, the
  ``provisioner.toml`` file, ``CLOUDPROV_<SECTION>_<FIELD>`` environment
  variables and CLI flags, later layers winning.
- Remember which layer supplied each setting so ``config`` can show it.

Functional requirements
- Environment values are coerced to the type of the built-in default for the
  same ``section.field``; a value that does not parse names its variable.
- ``observability.log_dir`` and any other path field resolve relative to the
  directory holding the config file.
- The config is validated after the file layer and again after all layers.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import Any, Final

from cloud_provisioner.config.schema import (
    PATH_FIELDS,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "provisioner.toml"
ENV_PREFIX: Final[str] = "CLOUDPROV_"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
# The schema version is never overridden from the environment.
_ENV_SKIPPED_SECTIONS: Final[frozenset[str]] = frozenset({"meta"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


class ConfigLayer(StrEnum):
    FILE = "file"
    ENV = "env"
    CLI = "cli"


@dataclass(frozen=True, slots=True)
class LayeredConfig:
    """Validated effective config plus the layer behind every overridden key."""

    values: dict[str, Any]
    config_file: Path | None
    sources: dict[str, ConfigLayer] = field(default_factory=dict)

    def overridden(self) -> dict[str, str]:
        """Dotted keys set above the defaults, mapped to the layer that set them."""

        return {key: str(self.sources[key]) for key in sorted(self.sources)}


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError(raw)


# Checked in order: bool before int since bool subclasses int.
_ENV_PARSERS: Final[tuple[tuple[type, Callable[[str], object], str], ...]] = (
    (bool, _parse_bool, "a boolean (true/false/1/0/yes/no/on/off)"),
    (int, int, "an integer"),
    (float, float, "a number"),
    (str, str, "a string"),
)


def load_layered_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> LayeredConfig:
    """Load and validate every layer, keeping track of where overrides came from."""

    file_path = _config_file_path(config_path)
    file_layer = _read_config_file(file_path, required=config_path is not None)
    sources: dict[str, ConfigLayer] = {}

    values = assert_valid_config(merge_config(default_config(), file_layer))
    sources.update(dict.fromkeys(_dotted_keys(file_layer), ConfigLayer.FILE))

    env_layer = _env_layer(os.environ if environ is None else environ)
    cli_layer = _cli_layer(cli_overrides or {})
    for layer, payload in ((ConfigLayer.ENV, env_layer), (ConfigLayer.CLI, cli_layer)):
        values = merge_config(values, payload)
        sources.update(dict.fromkeys(_dotted_keys(payload), layer))
    values = assert_valid_config(values)

    for section, name in PATH_FIELDS:
        raw = values.get(section, {}).get(name)
        if isinstance(raw, str):
            values[section][name] = _resolve_path(raw, file_path.parent)

    return LayeredConfig(
        values=assert_valid_config(values),
        config_file=file_path if file_path.exists() else None,
        sources=sources,
    )


def load_config(
    config_path: str | Path | None = None,
    *,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Effective config with CLI > env > file > defaults precedence."""

    return load_layered_config(config_path, cli_overrides=cli_overrides, environ=environ).values


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Redacted copy of ``config`` that is safe to print or log."""

    return dump_redacted(config)


def dump_effective_config(config: Mapping[str, object], *, indent: int | None = None) -> str:
    """Redacted config as sorted JSON; compact unless ``indent`` is given."""

    return json.dumps(
        effective_config(config),
        sort_keys=True,
        indent=indent,
        separators=(",", ":") if indent is None else (",", ": "),
        ensure_ascii=False,
    )


def _config_file_path(config_path: str | Path | None) -> Path:
    if config_path is None:
        return (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    return Path(config_path).expanduser().resolve()


def _read_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        parsed = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except (OSError, UnicodeDecodeError) as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc
    return parsed


def _env_bindings() -> dict[str, tuple[str, str, object]]:
    bindings: dict[str, tuple[str, str, object]] = {}
    for section, fields in default_config().items():
        if section in _ENV_SKIPPED_SECTIONS or not isinstance(fields, Mapping):
            continue
        for key, default in fields.items():
            name = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
            bindings[name] = (section, key, default)
    return bindings


def _env_layer(environ: Mapping[str, str]) -> dict[str, dict[str, object]]:
    layer: dict[str, dict[str, object]] = {}
    for name, (section, key, default) in sorted(_env_bindings().items()):
        raw = environ.get(name)
        if raw is None:
            continue
        layer.setdefault(section, {})[key] = _coerce(name, f"{section}.{key}", raw, default)
    return layer


def _coerce(name: str, dotted_key: str, raw: str, default: object) -> object:
    value = raw.strip()
    for kind, parse, described in _ENV_PARSERS:
        if not isinstance(default, kind):
            continue
        try:
            return parse(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{name} -> {dotted_key} must be {described}") from exc
    return value


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, dict[str, object]]:
    layer: dict[str, dict[str, object]] = {}
    for dotted_key in sorted(overrides):
        value = overrides[dotted_key]
        if value is None:
            continue
        section, _, key = dotted_key.partition(".")
        if not section or not key or "." in key:
            raise ConfigLoadError(f"invalid CLI override key {dotted_key!r}")
        layer.setdefault(section, {})[key] = value
    return layer


def _dotted_keys(layer: Mapping[str, object]) -> Iterator[str]:
    for section, fields in layer.items():
        if isinstance(fields, Mapping):
            for key in fields:
                yield f"{section}.{key}"


def _resolve_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


__all__ = [
    "ConfigLayer",
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "LayeredConfig",
    "dump_effective_config",
    "effective_config",
    "load_config",
    "load_layered_config",
]
