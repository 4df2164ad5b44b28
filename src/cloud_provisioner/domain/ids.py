"""Run namespace tokens and resource identifier generation/validation."""

from __future__ import annotations

import re
import secrets
import time
from collections.abc import Callable
from typing import Final

from cloud_provisioner.constants import (
    NAMESPACE_RANDOM_ALPHABET,
    NAMESPACE_RANDOM_LENGTH,
    NAMESPACE_TIMESTAMP_DIGITS,
    RESOURCE_ID_ALLOWED,
    RESOURCE_ID_LEADING_FALLBACK,
    RESOURCE_ID_MAX_LENGTH,
    SEQUENCE_WIDTH,
)

_RESOURCE_ID_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9-]*$")
_PREFIX_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9-]{0,19}$")
_USER_PREFIX_RE: Final[re.Pattern[str]] = re.compile(r"^[a-z][a-z0-9]{0,11}$")

_ChoiceFn = Callable[[str], str]


def generate_namespace_token(
    user_prefix: str = "momo",
    *,
    epoch_seconds: int | None = None,
    choice: _ChoiceFn = secrets.choice,
) -> str:
    """Return the per-run namespace token, e.g. ``momo4kz91234``.

    The token is the user prefix, four random lowercase alphanumerics, and the
    last four digits of the current epoch seconds.
    """

    prefix = validate_user_prefix(user_prefix)
    seconds = int(time.time()) if epoch_seconds is None else int(epoch_seconds)
    if seconds < 0:
        raise ValueError("epoch_seconds must be >= 0")

    random_part = "".join(choice(NAMESPACE_RANDOM_ALPHABET) for _ in range(NAMESPACE_RANDOM_LENGTH))
    digits = str(seconds).rjust(NAMESPACE_TIMESTAMP_DIGITS, "0")[-NAMESPACE_TIMESTAMP_DIGITS:]
    return f"{prefix}{random_part}{digits}"


def sanitize_resource_id(raw: str) -> str:
    """Coerce ``raw`` into the provider's resource naming grammar.

    Disallowed characters are dropped, the result is cut to the maximum length,
    trailing hyphens are removed and a non-letter first character is replaced.
    """

    if not isinstance(raw, str):
        raise TypeError(f"resource id must be a string, got {type(raw).__name__}")

    cleaned = RESOURCE_ID_ALLOWED.sub("", raw)[:RESOURCE_ID_MAX_LENGTH].rstrip("-")
    if not cleaned:
        raise ValueError(f"resource id {raw!r} is empty after sanitization")
    if not cleaned[0].isalpha():
        cleaned = RESOURCE_ID_LEADING_FALLBACK + cleaned[1:]
    return cleaned


def format_work_item_id(prefix: str, namespace: str, sequence: int) -> str:
    if sequence <= 0:
        raise ValueError("sequence must be > 0")
    number = str(sequence).zfill(SEQUENCE_WIDTH)
    return sanitize_resource_id(f"{prefix}-{namespace}-{number}")


def generate_work_items(prefix: str, namespace: str, total: int) -> tuple[str, ...]:
    """Generate ``total`` unique resource ids for one run."""

    if total <= 0:
        raise ValueError("total must be > 0")

    items = tuple(format_work_item_id(prefix, namespace, index) for index in range(1, total + 1))
    if len(set(items)) != len(items):
        raise ValueError(
            "generated resource ids collide after truncation; "
            f"shorten the prefix {prefix!r} or namespace {namespace!r}"
        )
    return items


def validate_resource_id(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError(f"resource id must be a string, got {type(value).__name__}")
    normalized = value.strip()
    if not normalized:
        raise ValueError("resource id must not be empty")
    if len(normalized) > RESOURCE_ID_MAX_LENGTH:
        raise ValueError(f"resource id {normalized!r} exceeds {RESOURCE_ID_MAX_LENGTH} characters")
    if _RESOURCE_ID_RE.fullmatch(normalized) is None or normalized.endswith("-"):
        raise ValueError(f"resource id {normalized!r} does not match the naming grammar")
    return normalized


def validate_resource_prefix(value: str) -> str:
    if not isinstance(value, str) or _PREFIX_RE.fullmatch(value) is None:
        raise ValueError(
            "resource prefix must start with a lowercase letter and contain only "
            "lowercase letters, digits and hyphens (max 20 characters)"
        )
    return value


def validate_user_prefix(value: str) -> str:
    if not isinstance(value, str) or _USER_PREFIX_RE.fullmatch(value) is None:
        raise ValueError(
            "user prefix must start with a lowercase letter and contain only "
            "lowercase letters and digits (max 12 characters)"
        )
    return value


__all__ = [
    "format_work_item_id",
    "generate_namespace_token",
    "generate_work_items",
    "sanitize_resource_id",
    "validate_resource_id",
    "validate_resource_prefix",
    "validate_user_prefix",
]
