"""Command-line interface router for cloud-provisioner."""

from __future__ import annotations

import argparse
import asyncio
import json
import signal
import sys
import uuid
from collections.abc import Awaitable, Callable, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final, TypeVar

from rich.prompt import Confirm, Prompt

from cloud_provisioner.config import (
    ConfigLoadError,
    ConfigValidationError,
    LayeredConfig,
    RuntimeSettings,
    dump_effective_config,
    effective_config,
    load_layered_config,
    runtime_settings,
)
from cloud_provisioner.constants import CONFIRMATION_PHRASE
from cloud_provisioner.domain.ids import (
    generate_namespace_token,
    generate_work_items,
    validate_resource_id,
)
from cloud_provisioner.domain.models import RunReport, StageName
from cloud_provisioner.observability.logging import setup_logging, shutdown_logging
from cloud_provisioner.pipeline.maintenance import (
    ListingFailedError,
    MaintenanceOperations,
    RebuildOutcome,
    timestamped_name,
)
from cloud_provisioner.pipeline.observer import PipelineObserver
from cloud_provisioner.pipeline.orchestrator import (
    INTERRUPTED_REASON,
    PipelineOrchestrator,
    RunContext,
)
from cloud_provisioner.pipeline.preflight import (
    PreflightCancelledError,
    QuotaAction,
    run_preflight,
)
from cloud_provisioner.providers.gcloud import GcloudProvider
from cloud_provisioner.ui.render import CLIRenderer, PipelineProgressRenderer, create_renderer
from cloud_provisioner.utils.concurrency import CancellationToken
from cloud_provisioner.utils.fs import atomic_write

if TYPE_CHECKING:
    from collections.abc import Iterator

    from cloud_provisioner.providers.base import ResourceProvider

T = TypeVar("T")

EXIT_INTERRUPTED: Final[int] = 130
_BATCH_OPERATIONS: Final[frozenset[str]] = frozenset({"create", "extract"})


class CLIError(RuntimeError):
    """Typed CLI failure with an explicit process exit code.

    Raised from inside ``_session``, so it must accept ``__traceback__``
    assignment while ``contextlib`` unwinds.
    """

    def __init__(self, message: str, exit_code: int = 1) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True)
class _Session:
    """Everything a command needs once config and logging are in place."""

    args: argparse.Namespace
    settings: RuntimeSettings
    renderer: CLIRenderer
    provider: ResourceProvider
    run_id: str


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse command router for all supported CLI workflows."""

    parser = argparse.ArgumentParser(
        prog="provision",
        description=(
            "cloud-provisioner: bulk cloud projects and API credentials.\n\n"
            "Common workflows:\n"
            "  provision create --count 20     Create projects and extract one key each\n"
            "  provision extract               Extract keys from existing projects\n"
            "  provision delete                Delete every listed project\n"
            "  provision config --json         Show the effective configuration\n"
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        dest="config_path",
        default=None,
        help="Path to provisioner TOML config (default: ./provisioner.toml if present).",
    )
    common.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        default=False,
        help="Show detailed output.",
    )
    common.add_argument(
        "--no-color",
        action="store_true",
        default=False,
        help="Disable colored output (also respects NO_COLOR env var).",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    # create --------------------------------------------------------------
    create_parser = subparsers.add_parser(
        "create",
        parents=[common],
        help="Create new projects, enable the API and extract one key per project",
    )
    create_parser.add_argument(
        "--count",
        type=_positive_int,
        default=None,
        help="Number of projects to create (default: run.total from config).",
    )
    create_parser.add_argument(
        "--failed-ids",
        default=None,
        help="Write ids of failed projects to this file for a later `extract --ids-file`.",
    )
    create_parser.add_argument(
        "--skip-preflight",
        action="store_true",
        default=False,
        help="Skip the signed-in account and creation quota checks.",
    )
    create_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation.")
    create_parser.set_defaults(handler=_cmd_create)

    # extract -------------------------------------------------------------
    extract_parser = subparsers.add_parser(
        "extract",
        parents=[common],
        help="Enable the API and extract keys from existing projects",
    )
    extract_parser.add_argument(
        "--ids-file",
        default=None,
        help="Read project ids (one per line) instead of listing all projects.",
    )
    extract_parser.add_argument(
        "--skip-enable",
        action="store_true",
        default=False,
        help="Start at key extraction; the API is assumed to be enabled already.",
    )
    extract_parser.add_argument(
        "--failed-ids",
        default=None,
        help="Write ids of failed projects to this file.",
    )
    extract_parser.add_argument("--yes", "-y", action="store_true", help="Skip confirmation.")
    extract_parser.set_defaults(handler=_cmd_extract)

    # delete --------------------------------------------------------------
    delete_parser = subparsers.add_parser(
        "delete",
        parents=[common],
        help="Delete every listed project (destructive)",
    )
    delete_parser.add_argument(
        "--yes", "-y", action="store_true", help=f"Skip typing {CONFIRMATION_PHRASE}."
    )
    delete_parser.set_defaults(handler=_cmd_delete)

    # cleanup -------------------------------------------------------------
    cleanup_parser = subparsers.add_parser(
        "cleanup",
        parents=[common],
        help="Delete every API key of every listed project (destructive)",
    )
    cleanup_parser.add_argument(
        "--yes", "-y", action="store_true", help=f"Skip typing {CONFIRMATION_PHRASE}."
    )
    cleanup_parser.set_defaults(handler=_cmd_cleanup)

    # rebuild -------------------------------------------------------------
    rebuild_parser = subparsers.add_parser(
        "rebuild",
        parents=[common],
        help="Delete every listed project, then run a fresh create batch (destructive)",
    )
    rebuild_parser.add_argument(
        "--count",
        type=_positive_int,
        default=None,
        help="Number of projects to create after deletion (default: run.total).",
    )
    rebuild_parser.add_argument(
        "--skip-preflight",
        action="store_true",
        default=False,
        help="Skip the signed-in account and creation quota checks.",
    )
    rebuild_parser.add_argument(
        "--yes", "-y", action="store_true", help=f"Skip typing {CONFIRMATION_PHRASE}."
    )
    rebuild_parser.set_defaults(handler=_cmd_rebuild)

    # config --------------------------------------------------------------
    config_parser = subparsers.add_parser(
        "config",
        parents=[common],
        help="Show the effective (redacted) configuration",
    )
    config_parser.add_argument("--json", action="store_true", help="Emit JSON.")
    config_parser.set_defaults(handler=_cmd_config)

    return parser


# ---------------------------------------------------------------------------
# Entrypoints
# ---------------------------------------------------------------------------


def run_cli(argv: Sequence[str] | None = None) -> int:
    """Parse argv, route to a command handler, and return process exit code."""

    parser = build_parser()
    namespace = parser.parse_args(list(argv) if argv is not None else None)
    handler = getattr(namespace, "handler", None)
    if not callable(handler):
        parser.print_help(sys.stderr)
        return 2

    try:
        result = handler(namespace)
    except CLIError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return exc.exit_code
    return int(result)


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def _cmd_create(args: argparse.Namespace) -> int:
    overrides = {"run.total": getattr(args, "count", None)}
    with _session(args, overrides=overrides) as session:
        settings = session.settings
        total = _preflight(session, settings.total)
        namespace = generate_namespace_token(settings.user_prefix)
        items = generate_work_items(settings.resource_prefix, namespace, total)

        renderer = session.renderer
        renderer.heading("Create projects")
        renderer.kv("namespace", namespace)
        renderer.kv("projects", len(items))
        renderer.kv("first / last", f"{items[0]} / {items[-1]}")
        if not _flag(args, "yes"):
            _confirm(renderer, f"Create {len(items)} projects?")

        report = _run_batch(session, namespace, lambda orchestrator: orchestrator.run_batch(items))
        _write_failed_ids(args, report)
        return _batch_exit_code(report)


def _cmd_extract(args: argparse.Namespace) -> int:
    with _session(args) as session:
        ids_file = _optional_str(getattr(args, "ids_file", None))
        if ids_file is not None:
            items = _read_ids_file(Path(ids_file))
        else:
            items = _list_resources(session)
        if not items:
            session.renderer.text("No projects to process.")
            return 0

        renderer = session.renderer
        renderer.heading("Extract keys from existing projects")
        renderer.kv("projects", len(items))
        if not _flag(args, "yes"):
            _confirm(renderer, f"Extract keys from {len(items)} projects?")

        start_at = StageName.EXTRACT if _flag(args, "skip_enable") else StageName.ENABLE
        namespace = generate_namespace_token(session.settings.user_prefix)
        report = _run_batch(
            session,
            namespace,
            lambda orchestrator: orchestrator.run_existing(items, start_at=start_at),
        )
        _write_failed_ids(args, report)
        return _batch_exit_code(report)


def _cmd_delete(args: argparse.Namespace) -> int:
    with _session(args) as session:
        items = _list_resources(session)
        if not items:
            session.renderer.text("No projects to delete.")
            return 0
        _confirm_destructive(session, f"This deletes {len(items)} projects:", items)

        log_path = timestamped_name(session.settings.output.deletion_log)
        report = _run_maintenance(
            session,
            lambda operations: operations.delete_resources(items, log_path=log_path),
        )
        return _maintenance_exit_code(report)


def _cmd_cleanup(args: argparse.Namespace) -> int:
    with _session(args) as session:
        items = _list_resources(session)
        if not items:
            session.renderer.text("No projects found.")
            return 0
        _confirm_destructive(
            session, f"This deletes every API key in {len(items)} projects:", items
        )

        log_path = timestamped_name(session.settings.output.cleanup_log)
        report = _run_maintenance(
            session,
            lambda operations: operations.cleanup_credentials(items, log_path=log_path),
        )
        return _maintenance_exit_code(report)


def _cmd_rebuild(args: argparse.Namespace) -> int:
    overrides = {"run.total": getattr(args, "count", None)}
    with _session(args, overrides=overrides) as session:
        settings = session.settings
        total = _preflight(session, settings.total)
        existing = _list_resources(session)
        namespace = generate_namespace_token(settings.user_prefix)
        items = generate_work_items(settings.resource_prefix, namespace, total)
        _confirm_destructive(
            session,
            f"This deletes {len(existing)} projects, then creates {len(items)} new ones:",
            existing,
        )

        observer = PipelineProgressRenderer(session.renderer)
        deletion_log = timestamped_name(settings.output.deletion_log)

        async def rebuild(token: CancellationToken) -> RebuildOutcome:
            with _run_context(session, namespace, token) as context:
                return await _maintenance(session, token, observer=observer).rebuild(
                    _orchestrator(session, context, observer),
                    items,
                    existing=existing,
                    deletion_log=deletion_log,
                    delete_settle_seconds=settings.delete_settle_seconds,
                )

        try:
            outcome = _run_async(rebuild)
        finally:
            observer.close()

        if outcome.deletion is not None:
            session.renderer.report(outcome.deletion)
            session.renderer.blank()
        if outcome.provisioning is None:
            # Provisioning only gets skipped when the deletion phase was interrupted.
            return EXIT_INTERRUPTED
        session.renderer.report(outcome.provisioning)
        return _batch_exit_code(outcome.provisioning)


def _cmd_config(args: argparse.Namespace) -> int:
    layered = _load_layered_config(args)

    if _flag(args, "json"):
        _emit_json(
            {
                "command": "config",
                "config": effective_config(layered.values),
                "sources": layered.overridden(),
            }
        )
        return 0

    renderer = _get_renderer(args)
    config_file = layered.config_file
    renderer.kv("Config file", config_file.as_posix() if config_file else "(none, defaults)")
    for key, layer in layered.overridden().items():
        renderer.kv(key, f"from {layer}")
    renderer.text(dump_effective_config(layered.values, indent=2))
    return 0


# ---------------------------------------------------------------------------
# Helpers: sessions, async execution, confirmation
# ---------------------------------------------------------------------------


@contextmanager
def _session(
    args: argparse.Namespace,
    *,
    overrides: Mapping[str, object] | None = None,
) -> Iterator[_Session]:
    config = _load_effective_config(args, overrides=overrides)
    settings = runtime_settings(config)
    renderer = _get_renderer(args)
    provider = _build_provider(settings)
    run_id = uuid.uuid4().hex

    handle = setup_logging(config["observability"], run_id=run_id)
    try:
        if _flag(args, "verbose"):
            renderer.kv("log file", handle.log_path)
        yield _Session(
            args=args,
            settings=settings,
            renderer=renderer,
            provider=provider,
            run_id=run_id,
        )
    finally:
        shutdown_logging(handle)


def _build_provider(settings: RuntimeSettings) -> ResourceProvider:
    provider = GcloudProvider(settings.provider)
    provider.ensure_available()
    return provider


def _run_context(session: _Session, namespace: str, token: CancellationToken) -> RunContext:
    output = session.settings.output
    return RunContext(
        namespace=namespace,
        lines_file=output.lines_file,
        comma_file=output.comma_file,
        flush_every=output.flush_every,
        cancel_token=token,
        run_id=session.run_id,
    )


def _orchestrator(
    session: _Session,
    context: RunContext,
    observer: PipelineProgressRenderer,
) -> PipelineOrchestrator:
    return PipelineOrchestrator(
        session.provider,
        context,
        settings=session.settings.pipeline,
        retry_policy=session.settings.retry,
        observer=observer,
    )


def _maintenance(
    session: _Session,
    token: CancellationToken,
    *,
    observer: PipelineObserver,
) -> MaintenanceOperations:
    return MaintenanceOperations(
        session.provider,
        settings=session.settings.pipeline,
        retry_policy=session.settings.retry,
        cancel_token=token,
        observer=observer,
    )


def _run_batch(
    session: _Session,
    namespace: str,
    run: Callable[[PipelineOrchestrator], Awaitable[RunReport]],
) -> RunReport:
    observer = PipelineProgressRenderer(session.renderer)

    async def provision(token: CancellationToken) -> RunReport:
        with _run_context(session, namespace, token) as context:
            return await run(_orchestrator(session, context, observer))

    try:
        report = _run_async(provision)
    finally:
        observer.close()
    session.renderer.report(report)
    return report


def _run_maintenance(
    session: _Session,
    run: Callable[[MaintenanceOperations], Awaitable[RunReport]],
) -> RunReport:
    observer = PipelineProgressRenderer(session.renderer)
    try:
        report = _run_async(lambda token: run(_maintenance(session, token, observer=observer)))
    finally:
        observer.close()
    session.renderer.report(report)
    return report


def _run_async(operation: Callable[[CancellationToken], Awaitable[T]]) -> T:
    """Run ``operation`` on a fresh event loop with SIGINT/SIGTERM wired to its token.

    The token is created inside the loop it is waited on.
    """

    async def main() -> T:
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        installed: list[signal.Signals] = []
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, token.cancel, INTERRUPTED_REASON)
            except (NotImplementedError, RuntimeError, ValueError):
                continue
            installed.append(sig)
        try:
            return await operation(token)
        finally:
            for sig in installed:
                loop.remove_signal_handler(sig)

    return asyncio.run(main())


def _list_resources(session: _Session) -> list[str]:
    try:
        return _run_async(
            lambda token: _maintenance(session, token, observer=PipelineObserver()).list_resources()
        )
    except ListingFailedError as exc:
        raise CLIError(str(exc), exit_code=1) from exc


def _preflight(session: _Session, requested: int) -> int:
    """Check the signed-in account and creation quota; returns the project count to run."""

    if _flag(session.args, "skip_preflight"):
        return requested
    renderer = session.renderer
    unattended = _flag(session.args, "yes")
    report = _run_async(lambda token: run_preflight(session.provider, requested))

    if report.account is None:
        renderer.warning("No active gcloud account; run `gcloud auth login` first.")
    else:
        renderer.kv("account", report.account)

    if report.quota is None:
        renderer.warning("Unable to read the project creation quota; check it manually.")
        if not unattended:
            _confirm(renderer, "Continue without a quota check?")
        return requested
    renderer.kv("creation quota", report.quota)
    if not report.over_quota:
        return requested

    renderer.warning(
        f"Planned projects ({requested}) exceed the creation quota ({report.quota})."
    )
    if unattended:
        action = QuotaAction.CLAMP
    else:
        answer = Prompt.ask(
            "Clamp to the quota, continue anyway, or cancel?",
            console=renderer.console,
            choices=[choice.value for choice in QuotaAction],
            default=QuotaAction.CLAMP.value,
        )
        action = QuotaAction(answer)
    try:
        total = report.resolve_total(action)
    except PreflightCancelledError as exc:
        raise CLIError(str(exc), exit_code=1) from exc
    if total != requested:
        renderer.text(f"Project count adjusted to {total}.")
    return total


def _confirm(renderer: CLIRenderer, question: str) -> None:
    if not Confirm.ask(question, console=renderer.console, default=False):
        raise CLIError("cancelled by user", exit_code=1)


def _confirm_destructive(session: _Session, headline: str, items: Sequence[str]) -> None:
    renderer = session.renderer
    renderer.warning(headline)
    renderer.items(items[:10])
    if len(items) > 10:
        renderer.text(f"  ... and {len(items) - 10} more")
    if _flag(session.args, "yes"):
        return
    answer = Prompt.ask(f"Type {CONFIRMATION_PHRASE} to continue", console=renderer.console)
    if answer.strip() != CONFIRMATION_PHRASE:
        raise CLIError("confirmation phrase did not match; nothing was changed", exit_code=1)


# ---------------------------------------------------------------------------
# Helpers: exit codes and output files
# ---------------------------------------------------------------------------


def _batch_exit_code(report: RunReport) -> int:
    if report.abort_reason == INTERRUPTED_REASON:
        return EXIT_INTERRUPTED
    if report.operation in _BATCH_OPERATIONS and report.credentials > 0:
        return 0
    return 1


def _maintenance_exit_code(report: RunReport) -> int:
    if report.abort_reason == INTERRUPTED_REASON:
        return EXIT_INTERRUPTED
    if report.aborted or report.failures:
        return 1
    return 0


def _write_failed_ids(args: argparse.Namespace, report: RunReport) -> None:
    target = _optional_str(getattr(args, "failed_ids", None))
    if target is None:
        return
    failed = sorted({failure.work_item_id for failure in report.failures})
    atomic_write(target, "".join(f"{item}\n" for item in failed))


def _read_ids_file(path: Path) -> list[str]:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError as exc:
        raise CLIError(f"unable to read ids file {path}: {exc}", exit_code=2) from exc

    items: list[str] = []
    seen: set[str] = set()
    for number, raw in enumerate(lines, start=1):
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        try:
            item = validate_resource_id(line)
        except ValueError as exc:
            raise CLIError(f"{path}:{number}: {exc}", exit_code=2) from exc
        if item not in seen:
            seen.add(item)
            items.append(item)
    return items


# ---------------------------------------------------------------------------
# Helpers: config and argument parsing
# ---------------------------------------------------------------------------


def _emit_json(payload: Mapping[str, object]) -> None:
    """Emit a JSON payload to stdout with deterministic formatting."""

    print(json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False))


def _get_renderer(args: argparse.Namespace) -> CLIRenderer:
    return create_renderer(no_color=_flag(args, "no_color"), verbose=_flag(args, "verbose"))


def _load_layered_config(
    args: argparse.Namespace,
    *,
    overrides: Mapping[str, object] | None = None,
) -> LayeredConfig:
    config_path = _optional_str(getattr(args, "config_path", None))
    try:
        return load_layered_config(config_path, cli_overrides=overrides)
    except (ConfigLoadError, ConfigValidationError) as exc:
        raise CLIError(str(exc), exit_code=2) from exc


def _load_effective_config(
    args: argparse.Namespace,
    *,
    overrides: Mapping[str, object] | None = None,
) -> dict[str, object]:
    return _load_layered_config(args, overrides=overrides).values


def _positive_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"expected an integer, got {raw!r}") from exc
    if value <= 0:
        raise argparse.ArgumentTypeError("must be > 0")
    return value


def _optional_str(value: object) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _flag(args: argparse.Namespace, name: str) -> bool:
    return bool(getattr(args, name, False))


__all__ = ["CLIError", "EXIT_INTERRUPTED", "build_parser", "run_cli"]
