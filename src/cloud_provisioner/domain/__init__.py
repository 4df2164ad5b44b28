"""Domain types shared by the provisioning pipeline."""

from cloud_provisioner.domain.models import (
    Credential,
    CredentialRef,
    ErrorClass,
    FailureRecord,
    PipelineState,
    RunReport,
    StageName,
    StageReport,
    StageResult,
)

__all__ = [
    "Credential",
    "CredentialRef",
    "ErrorClass",
    "FailureRecord",
    "PipelineState",
    "RunReport",
    "StageName",
    "StageReport",
    "StageResult",
]
