"""Resource provider contract, the gcloud adapter, and payload decoding."""

from cloud_provisioner.providers.base import (
    ProviderCommandError,
    ProviderError,
    ProviderUnavailableError,
    RawResponse,
    ResourceProvider,
)
from cloud_provisioner.providers.decoder import (
    decode_credential_refs,
    decode_credential_value,
    decode_quota_limit,
    decode_resource_ids,
)
from cloud_provisioner.providers.gcloud import GcloudProvider, GcloudSettings

__all__ = [
    "GcloudProvider",
    "GcloudSettings",
    "ProviderCommandError",
    "ProviderError",
    "ProviderUnavailableError",
    "RawResponse",
    "ResourceProvider",
    "decode_credential_refs",
    "decode_credential_value",
    "decode_quota_limit",
    "decode_resource_ids",
]
