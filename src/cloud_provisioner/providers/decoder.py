"""Tolerant decoding of provider JSON payloads.

Every function here returns an empty/absent value for malformed or partial
payloads instead of raising.
"""

from __future__ import annotations

import json
import re
from collections.abc import Mapping
from typing import Final

from cloud_provisioner.domain.models import CredentialRef
from cloud_provisioner.providers.base import RawResponse

_KEY_STRING_FIELD: Final[str] = "keyString"
_KEY_STRING_FALLBACK: Final[re.Pattern[str]] = re.compile(r'"keyString"\s*:\s*"([^"]+)"')
_QUOTA_FIELDS: Final[tuple[str, ...]] = ("effectiveLimit", "INT64")
_QUOTA_FALLBACK: Final[re.Pattern[str]] = re.compile(
    r'"(?:effectiveLimit|INT64)"\s*:\s*"?(\d+)'
)
_MAX_DEPTH: Final[int] = 8


def decode_credential_value(raw: RawResponse | None) -> str | None:
    """Extract the credential string from a create/get-key-string response."""

    if not raw or not raw.strip():
        return None

    payload = _loads(raw)
    if payload is not None:
        found = _find_string_field(payload, _KEY_STRING_FIELD, depth=0)
        if found:
            return found

    # Truncated JSON still often carries the field intact.
    match = _KEY_STRING_FALLBACK.search(raw)
    if match is None:
        return None
    value = match.group(1).strip()
    return value or None


def decode_credential_refs(raw: RawResponse | None) -> list[CredentialRef]:
    """Decode a credential listing into refs, skipping malformed entries."""

    payload = _loads(raw) if raw else None
    if not isinstance(payload, list):
        return []

    refs: list[CredentialRef] = []
    for entry in payload:
        if not isinstance(entry, Mapping):
            continue
        name = entry.get("name")
        if not isinstance(name, str) or not name.strip():
            continue
        display_name = entry.get("displayName")
        refs.append(
            CredentialRef(
                name=name.strip(),
                display_name=display_name if isinstance(display_name, str) else None,
            )
        )
    return refs


def decode_resource_ids(raw: RawResponse | None) -> list[str]:
    """Decode a resource listing into ids, preserving provider order."""

    payload = _loads(raw) if raw else None
    if not isinstance(payload, list):
        return []

    ids: list[str] = []
    for entry in payload:
        if isinstance(entry, Mapping):
            value = entry.get("projectId")
        else:
            value = entry
        if isinstance(value, str) and value.strip():
            ids.append(value.strip())
    return ids


def decode_quota_limit(raw: RawResponse | None) -> int | None:
    """Extract the project-creation limit from a quota listing.

    The GA command reports ``effectiveLimit``; the alpha command nests the value
    under ``INT64``. Both come back as decimal strings.
    """

    if not raw or not raw.strip():
        return None

    payload = _loads(raw)
    if payload is not None:
        for field_name in _QUOTA_FIELDS:
            found = _find_string_field(payload, field_name, depth=0)
            if found is not None and found.isdigit():
                return int(found)
            number = _find_int_field(payload, field_name, depth=0)
            if number is not None:
                return number

    match = _QUOTA_FALLBACK.search(raw)
    return int(match.group(1)) if match else None


def _loads(raw: str) -> object | None:
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return None


def _find_string_field(payload: object, field_name: str, *, depth: int) -> str | None:
    if depth > _MAX_DEPTH:
        return None
    if isinstance(payload, Mapping):
        value = payload.get(field_name)
        if isinstance(value, str) and value.strip():
            return value.strip()
        for item in payload.values():
            found = _find_string_field(item, field_name, depth=depth + 1)
            if found:
                return found
    elif isinstance(payload, list):
        for item in payload:
            found = _find_string_field(item, field_name, depth=depth + 1)
            if found:
                return found
    return None


def _find_int_field(payload: object, field_name: str, *, depth: int) -> int | None:
    if depth > _MAX_DEPTH:
        return None
    if isinstance(payload, Mapping):
        value = payload.get(field_name)
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
        children: list[object] = list(payload.values())
    elif isinstance(payload, list):
        children = list(payload)
    else:
        return None
    for item in children:
        found = _find_int_field(item, field_name, depth=depth + 1)
        if found is not None:
            return found
    return None


__all__ = [
    "decode_credential_refs",
    "decode_credential_value",
    "decode_quota_limit",
    "decode_resource_ids",
]
