"""Stable constants shared across the provisioning pipeline."""

from __future__ import annotations

import re
from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1

# Resource naming grammar enforced by the cloud provider.
RESOURCE_ID_MAX_LENGTH: Final[int] = 30
RESOURCE_ID_ALLOWED: Final[re.Pattern[str]] = re.compile(r"[^a-z0-9-]")
RESOURCE_ID_LEADING_FALLBACK: Final[str] = "g"
SEQUENCE_WIDTH: Final[int] = 3

# Namespace token: user prefix + random chars + last digits of epoch seconds.
NAMESPACE_RANDOM_ALPHABET: Final[str] = "abcdefghijklmnopqrstuvwxyz0123456789"
NAMESPACE_RANDOM_LENGTH: Final[int] = 4
NAMESPACE_TIMESTAMP_DIGITS: Final[int] = 4

# Attempt caps for listing/maintenance calls.
LIST_MAX_ATTEMPTS: Final[int] = 2
DELETE_MAX_ATTEMPTS: Final[int] = 2
CREDENTIAL_DELETE_PAUSE_SECONDS: Final[float] = 0.5

CONFIRMATION_PHRASE: Final[str] = "DELETE-ALL"

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "CONFIRMATION_PHRASE",
    "CREDENTIAL_DELETE_PAUSE_SECONDS",
    "DELETE_MAX_ATTEMPTS",
    "LIST_MAX_ATTEMPTS",
    "NAMESPACE_RANDOM_ALPHABET",
    "NAMESPACE_RANDOM_LENGTH",
    "NAMESPACE_TIMESTAMP_DIGITS",
    "RESOURCE_ID_ALLOWED",
    "RESOURCE_ID_LEADING_FALLBACK",
    "RESOURCE_ID_MAX_LENGTH",
    "SEQUENCE_WIDTH",
]
