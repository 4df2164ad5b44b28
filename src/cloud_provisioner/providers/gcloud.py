"""``gcloud`` CLI adapter implementing :class:`ResourceProvider`.

Each operation runs one ``gcloud`` invocation through
``asyncio.create_subprocess_exec`` (argument vector, no shell). A non-zero exit
becomes :class:`ProviderCommandError` whose message is the captured stderr.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Final

from cloud_provisioner.domain.models import CredentialRef
from cloud_provisioner.providers.base import (
    ProviderCommandError,
    ProviderUnavailableError,
    RawResponse,
)
from cloud_provisioner.providers.decoder import (
    decode_credential_refs,
    decode_quota_limit,
    decode_resource_ids,
)

logger = logging.getLogger(__name__)

# Canonical status names gcloud prints alongside API errors.
_STATUS_CODE_PATTERN: Final[re.Pattern[str]] = re.compile(
    r"\b(PERMISSION_DENIED|UNAUTHENTICATED|INVALID_ARGUMENT|ALREADY_EXISTS|"
    r"RESOURCE_EXHAUSTED|UNAVAILABLE|DEADLINE_EXCEEDED|INTERNAL|ABORTED)\b"
)
_MAX_STDERR_CHARS: Final[int] = 2000
_QUOTA_SERVICE: Final[str] = "cloudresourcemanager.googleapis.com"
_QUOTA_METRIC: Final[str] = "cloudresourcemanager.googleapis.com/project_create_requests"


@dataclass(frozen=True, slots=True)
class GcloudSettings:
    binary: str = "gcloud"
    service: str = "generativelanguage.googleapis.com"
    credential_display_name: str = "Gemini-API-Key"
    exclude_pattern: str = "^sys-"


class GcloudProvider:
    """Resource provider backed by the Google Cloud SDK command line."""

    def __init__(self, settings: GcloudSettings | None = None) -> None:
        self._settings = settings or GcloudSettings()
        pattern = self._settings.exclude_pattern
        self._exclude = re.compile(pattern) if pattern else None
        self._binary: str | None = None

    @property
    def settings(self) -> GcloudSettings:
        return self._settings

    def ensure_available(self) -> str:
        """Resolve the CLI binary or raise :class:`ProviderUnavailableError`."""

        if self._binary is None:
            resolved = shutil.which(self._settings.binary)
            if resolved is None:
                raise ProviderUnavailableError(
                    f"{self._settings.binary!r} not found on PATH; install the Google Cloud SDK"
                )
            self._binary = resolved
        return self._binary

    async def create_resource(self, resource_id: str) -> None:
        await self._run(
            "create_resource",
            "projects",
            "create",
            resource_id,
            f"--name={resource_id}",
            "--no-set-as-default",
            "--quiet",
        )

    async def enable_capability(self, resource_id: str) -> None:
        await self._run(
            "enable_capability",
            "services",
            "enable",
            self._settings.service,
            f"--project={resource_id}",
            "--quiet",
        )

    async def list_credentials(self, resource_id: str) -> Sequence[CredentialRef]:
        raw = await self._run(
            "list_credentials",
            "services",
            "api-keys",
            "list",
            f"--project={resource_id}",
            "--format=json",
        )
        return decode_credential_refs(raw)

    async def create_credential(self, resource_id: str) -> RawResponse:
        return await self._run(
            "create_credential",
            "services",
            "api-keys",
            "create",
            f"--project={resource_id}",
            f"--display-name={self._settings.credential_display_name}-{resource_id}",
            "--format=json",
            "--quiet",
        )

    async def get_credential_value(self, ref: CredentialRef) -> RawResponse:
        return await self._run(
            "get_credential_value",
            "services",
            "api-keys",
            "get-key-string",
            ref.name,
            "--format=json",
        )

    async def delete_credential(self, ref: CredentialRef) -> None:
        await self._run("delete_credential", "services", "api-keys", "delete", ref.name, "--quiet")

    async def list_resources(self) -> Sequence[str]:
        raw = await self._run("list_resources", "projects", "list", "--format=json", "--quiet")
        resource_ids = decode_resource_ids(raw)
        if self._exclude is None:
            return resource_ids
        return [item for item in resource_ids if self._exclude.search(item) is None]

    async def delete_resource(self, resource_id: str) -> None:
        await self._run("delete_resource", "projects", "delete", resource_id, "--quiet")

    async def active_account(self) -> str | None:
        raw = await self._run(
            "active_account",
            "auth",
            "list",
            "--filter=status:ACTIVE",
            "--format=value(account)",
        )
        for line in raw.splitlines():
            if line.strip():
                return line.strip()
        return None

    async def creation_quota(self) -> int | None:
        raw = await self._run("current_project", "config", "get-value", "project")
        project = raw.strip()
        if not project or project == "(unset)":
            logger.warning("quota_check_skipped", extra={"reason": "no default project"})
            return None

        consumer = f"--consumer=projects/{project}"
        attempts = (
            ("services", "quota", "list", f"--filter=metric={_QUOTA_METRIC}"),
            ("alpha", "services", "quota", "list", f"--filter=metric({_QUOTA_METRIC})"),
        )
        for command in attempts:
            try:
                raw = await self._run(
                    "creation_quota",
                    *command,
                    f"--service={_QUOTA_SERVICE}",
                    consumer,
                    "--format=json",
                )
            except ProviderCommandError as exc:
                logger.debug(
                    "quota_lookup_failed", extra={"argv": list(command), "error": str(exc)}
                )
                continue
            limit = decode_quota_limit(raw)
            if limit is not None:
                return limit
        return None

    async def _run(self, operation: str, *args: str) -> str:
        binary = self.ensure_available()
        logger.debug("gcloud_invoke", extra={"operation": operation, "argv": list(args)})

        try:
            proc = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise ProviderUnavailableError(f"unable to start {binary!r}: {exc}") from exc

        try:
            stdout_bytes, stderr_bytes = await proc.communicate()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        stdout = stdout_bytes.decode("utf-8", errors="replace")
        if proc.returncode != 0:
            stderr = stderr_bytes.decode("utf-8", errors="replace").strip()[:_MAX_STDERR_CHARS]
            match = _STATUS_CODE_PATTERN.search(stderr)
            raise ProviderCommandError(
                stderr or f"gcloud exited with code {proc.returncode}",
                code=match.group(1) if match else None,
                exit_status=proc.returncode,
                operation=operation,
            )
        return stdout


__all__ = ["GcloudProvider", "GcloudSettings"]
