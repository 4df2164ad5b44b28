"""
cloud-provisioner — resource provider contract and normalized errors

Purpose
- Define the async operations the pipeline consumes from a cloud provider.
- Normalize provider failures into one exception type the retry layer classifies.

Functional requirements
- Provider errors carry the human-readable message and, when available, a structured code.
- Adapters never interpret credential payloads; decoding is a separate concern.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, TypeAlias, runtime_checkable

from cloud_provisioner.domain.models import CredentialRef

RawResponse: TypeAlias = str


class ProviderError(RuntimeError):
    """Base class for provider-side failures."""


class ProviderCommandError(ProviderError):
    """A provider operation failed; ``message`` is what the provider reported."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        exit_status: int | None = None,
        operation: str | None = None,
    ) -> None:
        self.message = message.strip() or "provider operation failed"
        self.code = code.strip() if code and code.strip() else None
        self.exit_status = exit_status
        self.operation = operation

        parts: list[str] = []
        if operation is not None:
            parts.append(f"operation={operation}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        if exit_status is not None:
            parts.append(f"exit_status={exit_status}")
        parts.append(f"detail={self.message}")
        super().__init__(" ".join(parts))


class ProviderUnavailableError(ProviderError):
    """Raised when the provider runtime (CLI binary, SDK) cannot be used at all."""


@runtime_checkable
class ResourceProvider(Protocol):
    """Operations consumed by the pipeline stages and maintenance commands."""

    async def create_resource(self, resource_id: str) -> None: ...

    async def enable_capability(self, resource_id: str) -> None: ...

    async def list_credentials(self, resource_id: str) -> Sequence[CredentialRef]: ...

    async def create_credential(self, resource_id: str) -> RawResponse: ...

    async def get_credential_value(self, ref: CredentialRef) -> RawResponse: ...

    async def delete_credential(self, ref: CredentialRef) -> None: ...

    async def list_resources(self) -> Sequence[str]: ...

    async def delete_resource(self, resource_id: str) -> None: ...

    async def active_account(self) -> str | None:
        """Signed-in account the provider acts as, or ``None`` when nobody is signed in."""
        ...

    async def creation_quota(self) -> int | None:
        """Resource-creation limit of the current account, or ``None`` when unknown."""
        ...


__all__ = [
    "ProviderCommandError",
    "ProviderError",
    "ProviderUnavailableError",
    "RawResponse",
    "ResourceProvider",
]
