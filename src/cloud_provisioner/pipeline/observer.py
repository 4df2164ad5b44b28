"""Observation hooks the pipeline calls for progress reporting.

Observers are purely informational: nothing they do feeds back into dispatch
or survival decisions.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from cloud_provisioner.domain.models import PipelineState, StageName
    from cloud_provisioner.pipeline.heartbeat import HeartbeatTick
    from cloud_provisioner.pipeline.runner import BatchResult, ProgressSnapshot


class PipelineObserver:
    """No-op base; renderers override the hooks they care about."""

    def on_state(self, state: PipelineState) -> None:
        return None

    def on_stage_started(self, stage: StageName, total: int) -> None:
        return None

    def on_progress(self, snapshot: ProgressSnapshot) -> None:
        return None

    def on_stage_finished(self, batch: BatchResult) -> None:
        return None

    def on_wait_started(self, total_seconds: float) -> None:
        return None

    def on_wait_tick(self, tick: HeartbeatTick) -> None:
        return None


__all__ = ["PipelineObserver"]
