"""Public observability primitives: structured logging and redaction."""

from cloud_provisioner.observability.logging import (
    LoggingConfig,
    LogRedactor,
    StructuredLoggingHandle,
    correlation_scope,
    default_log_redactor,
    get_active_logging_handle,
    get_correlation_context,
    redact_text,
    setup_logging,
    setup_structured_logging,
    shutdown_logging,
)

__all__ = [
    "LogRedactor",
    "LoggingConfig",
    "StructuredLoggingHandle",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "redact_text",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
