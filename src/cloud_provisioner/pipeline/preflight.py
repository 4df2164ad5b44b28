"""
cloud-provisioner — pre-flight checks before creating resources

Purpose
- Report the signed-in account and the resource-creation quota before a batch
  commits to a project count.

Functional requirements
- A failed lookup is reported as unknown, never as an error; only an unusable
  provider runtime propagates.
- When the requested count exceeds a known quota the caller picks one of three
  actions: clamp to the quota, continue anyway, or cancel.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import StrEnum

from cloud_provisioner.providers.base import ProviderCommandError, ResourceProvider

logger = logging.getLogger(__name__)


class QuotaAction(StrEnum):
    CLAMP = "clamp"
    CONTINUE = "continue"
    CANCEL = "cancel"


class PreflightCancelledError(RuntimeError):
    """The operator chose not to proceed past a pre-flight warning."""


@dataclass(frozen=True, slots=True)
class PreflightReport:
    requested: int
    account: str | None
    quota: int | None

    def __post_init__(self) -> None:
        if self.requested <= 0:
            raise ValueError("requested must be > 0")

    @property
    def signed_in(self) -> bool:
        return self.account is not None

    @property
    def quota_known(self) -> bool:
        return self.quota is not None

    @property
    def over_quota(self) -> bool:
        return self.quota is not None and self.requested > self.quota

    def resolve_total(self, action: QuotaAction) -> int:
        """Project count to run with after ``action`` was chosen."""

        quota = self.quota
        if quota is None or quota >= self.requested or action is QuotaAction.CONTINUE:
            return self.requested
        if action is QuotaAction.CANCEL:
            raise PreflightCancelledError("cancelled at the quota check")
        if quota == 0:
            raise PreflightCancelledError("project creation quota is exhausted")
        return quota


async def run_preflight(provider: ResourceProvider, requested: int) -> PreflightReport:
    account: str | None
    try:
        account = await provider.active_account()
    except ProviderCommandError as exc:
        logger.warning("preflight_account_unknown", extra={"error": str(exc)})
        account = None

    quota: int | None
    try:
        quota = await provider.creation_quota()
    except ProviderCommandError as exc:
        logger.warning("preflight_quota_unknown", extra={"error": str(exc)})
        quota = None

    report = PreflightReport(requested=requested, account=account, quota=quota)
    logger.info(
        "preflight_checked",
        extra={
            "signed_in": report.signed_in,
            "quota": quota,
            "requested": requested,
            "over_quota": report.over_quota,
        },
    )
    return report


__all__ = [
    "PreflightCancelledError",
    "PreflightReport",
    "QuotaAction",
    "run_preflight",
]
