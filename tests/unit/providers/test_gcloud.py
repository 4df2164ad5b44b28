"""
cloud-provisioner — unit tests for the gcloud CLI adapter

Purpose
- Exercise the adapter against a scripted stand-in executable: argument vectors,
  JSON decoding, exclusion filtering and stderr-to-error normalization.
"""

from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest

from cloud_provisioner.domain.models import CredentialRef
from cloud_provisioner.providers.base import ProviderCommandError, ProviderUnavailableError
from cloud_provisioner.providers.gcloud import GcloudProvider, GcloudSettings

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="uses a POSIX shell script")

_SCRIPT = """#!/bin/sh
echo "$@" >> "$GCLOUD_ARGS_LOG"
case "$1 $2 $3" in
  "projects list "*)
    printf '[{"projectId": "gk-ns-001"}, {"projectId": "sys-4821"}, {"projectId": "gk-ns-002"}]'
    ;;
  "projects create "*)
    echo "ERROR: (gcloud.projects.create) PERMISSION_DENIED: caller lacks permission" >&2
    exit 1
    ;;
  "services api-keys list")
    printf '[{"name": "projects/p/locations/global/keys/k1", "displayName": "Gemini-API-Key"}]'
    ;;
  "services api-keys create")
    printf '{"done": true, "response": {"keyString": "AIzaFromScript"}}'
    ;;
  "auth list "*)
    printf '%s\n' "$GCLOUD_ACCOUNT"
    ;;
  "config get-value project")
    printf '%s\n' "${GCLOUD_PROJECT:-(unset)}"
    ;;
  "services quota list")
    echo "ERROR: (gcloud.services) Invalid choice: 'quota'." >&2
    exit 2
    ;;
  "alpha services quota")
    printf '[{"metric": "project_create_requests", '
    printf '"consumerQuotaLimits": [{"quotaBuckets": [{"INT64": "30"}]}]}]'
    ;;
  *)
    printf ''
    ;;
esac
"""


@pytest.fixture
def fake_gcloud(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> tuple[Path, Path]:
    binary = tmp_path / "gcloud"
    binary.write_text(_SCRIPT, encoding="utf-8")
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    args_log = tmp_path / "args.log"
    monkeypatch.setenv("GCLOUD_ARGS_LOG", str(args_log))
    return binary, args_log


def _provider(binary: Path) -> GcloudProvider:
    return GcloudProvider(GcloudSettings(binary=str(binary)))


async def test_list_resources_filters_excluded_ids(fake_gcloud: tuple[Path, Path]) -> None:
    binary, args_log = fake_gcloud

    resources = await _provider(binary).list_resources()

    assert resources == ["gk-ns-001", "gk-ns-002"]
    assert "projects list --format=json --quiet" in args_log.read_text(encoding="utf-8")


async def test_failed_command_raises_with_structured_code(
    fake_gcloud: tuple[Path, Path],
) -> None:
    binary, _ = fake_gcloud

    with pytest.raises(ProviderCommandError) as excinfo:
        await _provider(binary).create_resource("gk-ns-003")

    assert excinfo.value.code == "PERMISSION_DENIED"
    assert excinfo.value.exit_status == 1
    assert excinfo.value.operation == "create_resource"
    assert "caller lacks permission" in excinfo.value.message


async def test_create_credential_passes_project_and_display_name(
    fake_gcloud: tuple[Path, Path],
) -> None:
    binary, args_log = fake_gcloud

    raw = await _provider(binary).create_credential("gk-ns-001")

    assert "AIzaFromScript" in raw
    logged = args_log.read_text(encoding="utf-8")
    assert "--project=gk-ns-001" in logged
    assert "--display-name=Gemini-API-Key-gk-ns-001" in logged


async def test_list_credentials_decodes_refs(fake_gcloud: tuple[Path, Path]) -> None:
    binary, _ = fake_gcloud

    refs = await _provider(binary).list_credentials("gk-ns-001")

    assert refs == [
        CredentialRef(name="projects/p/locations/global/keys/k1", display_name="Gemini-API-Key")
    ]


async def test_enable_capability_targets_configured_service(
    fake_gcloud: tuple[Path, Path],
) -> None:
    binary, args_log = fake_gcloud

    await _provider(binary).enable_capability("gk-ns-001")

    assert (
        "services enable generativelanguage.googleapis.com --project=gk-ns-001 --quiet"
        in args_log.read_text(encoding="utf-8")
    )



async def test_active_account_reads_the_active_entry(
    fake_gcloud: tuple[Path, Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    binary, args_log = fake_gcloud
    monkeypatch.setenv("GCLOUD_ACCOUNT", "ops@example.com")

    account = await _provider(binary).active_account()

    assert account == "ops@example.com"
    assert "auth list --filter=status:ACTIVE --format=value(account)" in args_log.read_text(
        encoding="utf-8"
    )


async def test_active_account_is_none_when_nobody_is_signed_in(
    fake_gcloud: tuple[Path, Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    binary, _ = fake_gcloud
    monkeypatch.setenv("GCLOUD_ACCOUNT", "")

    assert await _provider(binary).active_account() is None


async def test_creation_quota_falls_back_to_the_alpha_listing(
    fake_gcloud: tuple[Path, Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    binary, args_log = fake_gcloud
    monkeypatch.setenv("GCLOUD_PROJECT", "home-project")

    quota = await _provider(binary).creation_quota()

    assert quota == 30
    invocations = args_log.read_text(encoding="utf-8").splitlines()
    assert invocations[0] == "config get-value project"
    assert invocations[1].startswith("services quota list")
    assert invocations[2].startswith("alpha services quota list")
    assert "--consumer=projects/home-project" in invocations[2]
    assert "--service=cloudresourcemanager.googleapis.com" in invocations[2]


async def test_creation_quota_is_skipped_without_a_default_project(
    fake_gcloud: tuple[Path, Path], monkeypatch: pytest.MonkeyPatch
) -> None:
    binary, args_log = fake_gcloud
    monkeypatch.delenv("GCLOUD_PROJECT", raising=False)

    assert await _provider(binary).creation_quota() is None
    assert args_log.read_text(encoding="utf-8").splitlines() == ["config get-value project"]

def test_missing_binary_is_reported(tmp_path: Path) -> None:
    provider = GcloudProvider(GcloudSettings(binary=str(tmp_path / "missing-gcloud")))

    with pytest.raises(ProviderUnavailableError, match="not found"):
        provider.ensure_available()
