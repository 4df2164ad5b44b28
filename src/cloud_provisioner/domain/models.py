"""Domain models for provisioning stages, outcomes, credentials, and run reports."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]


class ErrorClass(StrEnum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PERMISSION_DENIED = "permission_denied"
    INVALID_ARGUMENT = "invalid_argument"
    ALREADY_EXISTS = "already_exists"

    @property
    def is_retryable(self) -> bool:
        return self in _RETRYABLE_ERROR_CLASSES

    @property
    def is_fatal(self) -> bool:
        return not self.is_retryable


_RETRYABLE_ERROR_CLASSES = frozenset({ErrorClass.RATE_LIMITED, ErrorClass.TRANSIENT})


class StageName(StrEnum):
    CREATE = "create"
    ENABLE = "enable"
    EXTRACT = "extract"
    DELETE = "delete"
    CLEANUP = "cleanup"


class PipelineState(StrEnum):
    CREATE = "create"
    WAIT = "wait"
    ENABLE = "enable"
    EXTRACT = "extract"
    DONE = "done"
    ABORTED = "aborted"


@dataclass(frozen=True, slots=True)
class StageResult:
    """Outcome of one work item in one stage."""

    work_item_id: str
    ok: bool
    error_class: ErrorClass | None = None
    detail: str | None = None
    attempts: int = 0
    exhausted: bool = False

    def __post_init__(self) -> None:
        if not self.work_item_id:
            raise ValueError("work_item_id must not be empty")
        if self.attempts < 0:
            raise ValueError("attempts must be >= 0")
        if self.ok and (self.error_class is not None or self.exhausted):
            raise ValueError("successful results carry no error classification")
        if not self.ok and self.error_class is None:
            raise ValueError("failed results require an error_class")

    @classmethod
    def success(cls, work_item_id: str, *, attempts: int = 1) -> StageResult:
        return cls(work_item_id=work_item_id, ok=True, attempts=attempts)

    @classmethod
    def failure(
        cls,
        work_item_id: str,
        error_class: ErrorClass,
        *,
        detail: str | None = None,
        attempts: int = 0,
        exhausted: bool = False,
    ) -> StageResult:
        return cls(
            work_item_id=work_item_id,
            ok=False,
            error_class=error_class,
            detail=detail,
            attempts=attempts,
            exhausted=exhausted,
        )


@dataclass(frozen=True, slots=True)
class Credential:
    """Extracted secret bound to the resource it came from."""

    value: str = field(repr=False)
    work_item_id: str
    extracted_at: datetime = field(default_factory=lambda: datetime.now(tz=UTC))

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value.strip():
            raise ValueError("credential value must be a non-empty string")
        if any(char in self.value for char in ",\r\n"):
            raise ValueError("credential value must not contain commas or line breaks")
        if not self.work_item_id:
            raise ValueError("work_item_id must not be empty")


@dataclass(frozen=True, slots=True)
class CredentialRef:
    """Provider-side handle of an existing credential."""

    name: str
    display_name: str | None = None

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("credential name must not be empty")


@dataclass(frozen=True, slots=True)
class StageReport:
    stage: StageName
    attempted: int
    succeeded: int
    failed: int
    skipped: int = 0
    halted: bool = False
    cancelled: bool = False

    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return self.succeeded / self.attempted

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "stage": self.stage.value,
            "attempted": self.attempted,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "halted": self.halted,
            "cancelled": self.cancelled,
        }


@dataclass(frozen=True, slots=True)
class FailureRecord:
    """Terminal failure of one item, detailed enough to retry it by hand."""

    stage: StageName
    work_item_id: str
    error_class: ErrorClass
    detail: str | None
    exhausted: bool

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "stage": self.stage.value,
            "work_item_id": self.work_item_id,
            "error_class": self.error_class.value,
            "detail": self.detail,
            "exhausted": self.exhausted,
        }


@dataclass(frozen=True, slots=True)
class RunReport:
    """Aggregated outcome of one pipeline run."""

    operation: str
    state: PipelineState
    attempted: int
    stages: tuple[StageReport, ...]
    credentials: int
    elapsed_seconds: float
    failures: tuple[FailureRecord, ...] = ()
    abort_reason: str | None = None
    output_files: tuple[str, ...] = ()

    def survivors(self, stage: StageName) -> int:
        for report in self.stages:
            if report.stage is stage:
                return report.succeeded
        return 0

    @property
    def success_rate(self) -> float:
        if self.attempted == 0:
            return 0.0
        return self.credentials / self.attempted

    @property
    def throughput_per_minute(self) -> float:
        if self.elapsed_seconds <= 0:
            return 0.0
        return self.credentials * 60.0 / self.elapsed_seconds

    @property
    def aborted(self) -> bool:
        return self.state is PipelineState.ABORTED

    def to_dict(self) -> dict[str, JSONValue]:
        return {
            "operation": self.operation,
            "state": self.state.value,
            "attempted": self.attempted,
            "stages": [stage.to_dict() for stage in self.stages],
            "credentials": self.credentials,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
            "success_rate": round(self.success_rate, 4),
            "throughput_per_minute": round(self.throughput_per_minute, 3),
            "abort_reason": self.abort_reason,
            "failures": [failure.to_dict() for failure in self.failures],
            "output_files": list(self.output_files),
        }


__all__ = [
    "Credential",
    "CredentialRef",
    "ErrorClass",
    "FailureRecord",
    "JSONScalar",
    "JSONValue",
    "PipelineState",
    "RunReport",
    "StageName",
    "StageReport",
    "StageResult",
]
