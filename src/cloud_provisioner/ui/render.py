"""Output rendering for the cloud-provisioner CLI.

Purpose
- Provide a thin rendering layer over ``rich`` for CLI output.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.
- Render per-stage progress bars, the settle-wait heartbeat and the final report.

Functional requirements
- Rendering is observational only; nothing here feeds back into the pipeline.
- Non-interactive output (pipes, CI) degrades to plain lines.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING

from rich.console import Console
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
)
from rich.style import Style
from rich.table import Table
from rich.text import Text

from cloud_provisioner.domain.models import PipelineState, RunReport
from cloud_provisioner.pipeline.observer import PipelineObserver

if TYPE_CHECKING:
    from collections.abc import Sequence

    from cloud_provisioner.domain.models import StageName
    from cloud_provisioner.pipeline.heartbeat import HeartbeatTick
    from cloud_provisioner.pipeline.runner import BatchResult, ProgressSnapshot

_S_HEADING = Style(color="#3fa9f5", bold=True)
_S_OK = Style(color="#4ec990", bold=True)
_S_FAIL = Style(color="#e05555", bold=True)
_S_WARN = Style(color="#e0b455")
_S_DIM = Style(color="#7f8aa3")

# Failures listed in the report before the rest is summarized.
_MAX_FAILURE_ROWS = 20


def _color_allowed(no_color_flag: bool) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    return not os.environ.get("NO_COLOR", "")


class CLIRenderer:
    """Thin CLI output renderer backed by a ``rich`` console."""

    def __init__(
        self,
        *,
        no_color: bool = False,
        verbose: bool = False,
        console: Console | None = None,
    ) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)
        self.console = console or Console(no_color=not self._color, highlight=False)

    def heading(self, text: str) -> None:
        self.console.print(Text(text, style=_S_HEADING))

    def kv(self, key: str, value: object) -> None:
        self.console.print(Text.assemble((f"{key}: ", _S_DIM), str(value)))

    def text(self, line: str) -> None:
        self.console.print(Text(line))

    def blank(self) -> None:
        self.console.print()

    def warning(self, text: str) -> None:
        self.console.print(Text(f"  Warning: {text}", style=_S_WARN))

    def error(self, text: str) -> None:
        self.console.print(Text(f"error: {text}", style=_S_FAIL))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        for entry in entries:
            self.console.print(Text(f"  {prefix}{entry}"))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        if not rows:
            return
        table = Table(title=title, title_style=_S_HEADING, header_style=_S_DIM)
        for header in headers:
            table.add_column(header)
        for row in rows:
            table.add_row(*(str(cell) for cell in row))
        self.console.print(table)

    def report(self, report: RunReport) -> None:
        """Render the end-of-run summary table, failures and output locations."""

        outcome_style = _S_FAIL if report.aborted else _S_OK
        self.console.print(
            Text.assemble(
                (f"{report.operation} ", _S_HEADING),
                (report.state.value.upper(), outcome_style),
                (f"  ({report.abort_reason})" if report.abort_reason else "", _S_DIM),
            )
        )
        self.table(
            ("stage", "attempted", "succeeded", "failed", "skipped", "notes"),
            [
                (
                    stage.stage.value,
                    str(stage.attempted),
                    str(stage.succeeded),
                    str(stage.failed),
                    str(stage.skipped),
                    _stage_notes(stage.halted, stage.cancelled),
                )
                for stage in report.stages
            ],
            title="Stages",
        )
        self.kv("items", report.attempted)
        if report.operation in ("create", "extract"):
            self.kv("credentials", report.credentials)
            self.kv("success rate", f"{report.success_rate:.1%}")
            self.kv("throughput", f"{report.throughput_per_minute:.2f} credentials/min")
        self.kv("elapsed", f"{report.elapsed_seconds:.1f}s")

        if report.failures:
            shown = report.failures[:_MAX_FAILURE_ROWS]
            self.table(
                ("stage", "item", "class", "detail"),
                [
                    (
                        failure.stage.value,
                        failure.work_item_id,
                        failure.error_class.value + (" (exhausted)" if failure.exhausted else ""),
                        (failure.detail or "")[:120],
                    )
                    for failure in shown
                ],
                title="Failures",
            )
            hidden = len(report.failures) - len(shown)
            if hidden > 0:
                self.text(f"  ... {hidden} more failures in the log")

        if report.output_files:
            self.blank()
            self.heading("Output files")
            self.items(report.output_files)


class PipelineProgressRenderer(PipelineObserver):
    """Drive one ``rich`` progress bar per stage and print heartbeat lines."""

    def __init__(self, renderer: CLIRenderer) -> None:
        self._renderer = renderer
        self._progress: Progress | None = None
        self._task_id: TaskID | None = None

    def on_state(self, state: PipelineState) -> None:
        if self._renderer.verbose or state in (PipelineState.DONE, PipelineState.ABORTED):
            self._renderer.console.print(Text(f"state: {state.value}", style=_S_DIM))

    def on_stage_started(self, stage: StageName, total: int) -> None:
        self._close_progress()
        progress = Progress(
            TextColumn("[bold]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TextColumn("ok {task.fields[succeeded]}  failed {task.fields[failed]}"),
            TimeElapsedColumn(),
            console=self._renderer.console,
            transient=False,
        )
        progress.start()
        self._progress = progress
        self._task_id = progress.add_task(stage.value, total=total, succeeded=0, failed=0)

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        if self._progress is None or self._task_id is None:
            return
        self._progress.update(
            self._task_id,
            completed=snapshot.completed,
            succeeded=snapshot.succeeded,
            failed=snapshot.failed,
        )

    def on_stage_finished(self, batch: BatchResult) -> None:
        self._close_progress()
        if batch.halted:
            skipped = len(batch.skipped)
            self._renderer.warning(
                f"{batch.stage.value}: failure rate too high, {skipped} items not dispatched"
            )
        if batch.cancelled:
            self._renderer.warning(f"{batch.stage.value}: interrupted")

    def on_wait_started(self, total_seconds: float) -> None:
        self._renderer.text(f"waiting {total_seconds:.0f}s for provisioning to settle")

    def on_wait_tick(self, tick: HeartbeatTick) -> None:
        elapsed = f"{tick.elapsed_seconds:.0f}s elapsed"
        remaining = f"{tick.remaining_seconds:.0f}s remaining"
        self._renderer.console.print(Text(f"  ... {elapsed}, {remaining}", style=_S_DIM))

    def close(self) -> None:
        self._close_progress()

    def _close_progress(self) -> None:
        progress, self._progress = self._progress, None
        self._task_id = None
        if progress is not None:
            progress.stop()


def _stage_notes(halted: bool, cancelled: bool) -> str:
    notes: list[str] = []
    if halted:
        notes.append("halted")
    if cancelled:
        notes.append("cancelled")
    return ", ".join(notes)


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "PipelineProgressRenderer", "create_renderer"]
