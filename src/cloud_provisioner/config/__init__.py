"""
cloud-provisioner config package public API.

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``provisioner.toml`` + ``CLOUDPROV_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from cloud_provisioner.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    ConfigLayer,
    ConfigLoadError,
    LayeredConfig,
    dump_effective_config,
    effective_config,
    load_config,
    load_layered_config,
)
from cloud_provisioner.config.runtime import OutputSettings, RuntimeSettings, runtime_settings
from cloud_provisioner.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    ProvisionerConfig,
    assert_valid_config,
    default_config,
    dump_redacted,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "ConfigLayer",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "LayeredConfig",
    "OutputSettings",
    "PATH_FIELDS",
    "ProvisionerConfig",
    "RuntimeSettings",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "dump_redacted",
    "effective_config",
    "load_config",
    "load_layered_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "runtime_settings",
    "validate_config",
]
