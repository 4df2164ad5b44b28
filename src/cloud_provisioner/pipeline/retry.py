"""
cloud-provisioner — retry/backoff executor and error classification

Purpose
- Wrap one provider operation with bounded retries.
- Classify provider failures through one central table (pattern -> ErrorClass).

Functional requirements
- Fatal classes stop immediately; retryable classes back off linearly with a ceiling.
- Rate-limit responses back off longer by a configurable multiplier.
- Exhausting the attempt cap returns the last classification, flagged as exhausted.
- Every attempt emits one structured log record.

Non-functional requirements
- Matching provider message text is inherently coupled to the provider's wording;
  structured provider codes win whenever the provider supplies one.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Final, Generic, TypeVar

from cloud_provisioner.domain.models import ErrorClass
from cloud_provisioner.observability.logging import redact_text
from cloud_provisioner.providers.base import ProviderCommandError
from cloud_provisioner.utils.concurrency import (
    CancellationToken,
    SleepFn,
    run_with_timeout,
    sleep_with_cancellation,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Ordered: the first matching pattern wins, so fatal patterns come first.
# Matching is a case-insensitive substring test against the provider message.
CLASSIFICATION_TABLE: Final[tuple[tuple[str, ErrorClass], ...]] = (
    ("permission denied", ErrorClass.PERMISSION_DENIED),
    ("permission_denied", ErrorClass.PERMISSION_DENIED),
    ("authentication failed", ErrorClass.PERMISSION_DENIED),
    ("unauthenticated", ErrorClass.PERMISSION_DENIED),
    ("invalid_argument", ErrorClass.INVALID_ARGUMENT),
    ("invalid argument", ErrorClass.INVALID_ARGUMENT),
    ("already exists", ErrorClass.ALREADY_EXISTS),
    ("already_exists", ErrorClass.ALREADY_EXISTS),
    ("already enabled", ErrorClass.ALREADY_EXISTS),
    ("quota exceeded", ErrorClass.RATE_LIMITED),
    ("resource_exhausted", ErrorClass.RATE_LIMITED),
    ("rate limit", ErrorClass.RATE_LIMITED),
    ("ratelimitexceeded", ErrorClass.RATE_LIMITED),
    ("too many requests", ErrorClass.RATE_LIMITED),
)

PROVIDER_CODE_TABLE: Final[Mapping[str, ErrorClass]] = {
    "PERMISSION_DENIED": ErrorClass.PERMISSION_DENIED,
    "UNAUTHENTICATED": ErrorClass.PERMISSION_DENIED,
    "INVALID_ARGUMENT": ErrorClass.INVALID_ARGUMENT,
    "ALREADY_EXISTS": ErrorClass.ALREADY_EXISTS,
    "RESOURCE_EXHAUSTED": ErrorClass.RATE_LIMITED,
    "UNAVAILABLE": ErrorClass.TRANSIENT,
    "DEADLINE_EXCEEDED": ErrorClass.TRANSIENT,
    "INTERNAL": ErrorClass.TRANSIENT,
    "ABORTED": ErrorClass.TRANSIENT,
}


def classify_message(message: str) -> ErrorClass:
    """Classify free-text provider output; unmatched text is transient."""

    lowered = message.lower()
    for pattern, error_class in CLASSIFICATION_TABLE:
        if pattern in lowered:
            return error_class
    return ErrorClass.TRANSIENT


def classify_error(error: BaseException | str) -> ErrorClass:
    """Classify an operation failure, preferring structured provider codes."""

    if isinstance(error, str):
        return classify_message(error)
    if isinstance(error, ProviderCommandError):
        if error.code is not None:
            coded = PROVIDER_CODE_TABLE.get(error.code.upper())
            if coded is not None:
                return coded
        return classify_message(error.message)
    if isinstance(error, TimeoutError):
        return ErrorClass.TRANSIENT
    return classify_message(str(error))


def error_detail(error: BaseException) -> str:
    message = error.message if isinstance(error, ProviderCommandError) else str(error)
    return redact_text(message.strip() or type(error).__name__)


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded linear backoff policy."""

    max_attempts: int = 3
    base_delay_seconds: float = 5.0
    max_delay_seconds: float = 60.0
    rate_limit_multiplier: float = 2.0
    operation_timeout_seconds: float | None = 300.0

    def __post_init__(self) -> None:
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.base_delay_seconds < 0:
            raise ValueError("base_delay_seconds must be >= 0")
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError("max_delay_seconds must be >= base_delay_seconds")
        if self.rate_limit_multiplier < 1.0:
            raise ValueError("rate_limit_multiplier must be >= 1.0")
        if self.operation_timeout_seconds is not None and self.operation_timeout_seconds <= 0:
            raise ValueError("operation_timeout_seconds must be > 0 when set")

    def delay_for(self, attempt: int, error_class: ErrorClass) -> float:
        """Delay before the attempt following failed attempt ``attempt`` (1-based)."""

        if attempt <= 0:
            raise ValueError("attempt must be > 0")
        delay = min(self.base_delay_seconds * attempt, self.max_delay_seconds)
        if error_class is ErrorClass.RATE_LIMITED:
            delay *= self.rate_limit_multiplier
        return delay


@dataclass(frozen=True, slots=True)
class RetryResult(Generic[T]):
    """Outcome of one retried operation."""

    ok: bool
    attempts: int
    value: T | None = None
    error_class: ErrorClass | None = None
    detail: str | None = None
    exhausted: bool = False

    @property
    def fatal(self) -> bool:
        return not self.ok and self.error_class is not None and self.error_class.is_fatal


class RetryExecutor:
    """Run async operations under a :class:`RetryPolicy`."""

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        sleep: SleepFn = asyncio.sleep,
        cancel_token: CancellationToken | None = None,
    ) -> None:
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._cancel_token = cancel_token

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        max_attempts: int | None = None,
        operation_name: str = "operation",
    ) -> RetryResult[T]:
        limit = self._policy.max_attempts if max_attempts is None else max_attempts
        if limit <= 0:
            raise ValueError("max_attempts must be > 0")

        attempt = 0
        while True:
            attempt += 1
            try:
                value = await self._call(operation)
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001 - every failure is classified.
                error_class = classify_error(exc)
                detail = error_detail(exc)
            else:
                logger.debug(
                    "retry_attempt",
                    extra={
                        "operation": operation_name,
                        "attempt": attempt,
                        "max_attempts": limit,
                        "outcome": "success",
                    },
                )
                return RetryResult(ok=True, attempts=attempt, value=value)

            if error_class.is_fatal:
                self._log_attempt(operation_name, attempt, limit, error_class, None, detail)
                return RetryResult(
                    ok=False, attempts=attempt, error_class=error_class, detail=detail
                )

            if attempt >= limit:
                self._log_attempt(operation_name, attempt, limit, error_class, None, detail)
                logger.warning(
                    "retry_exhausted",
                    extra={
                        "operation": operation_name,
                        "attempts": attempt,
                        "classification": error_class.value,
                        "last_error": detail,
                    },
                )
                return RetryResult(
                    ok=False,
                    attempts=attempt,
                    error_class=error_class,
                    detail=detail,
                    exhausted=True,
                )

            delay = self._policy.delay_for(attempt, error_class)
            self._log_attempt(operation_name, attempt, limit, error_class, delay, detail)
            cancelled = await sleep_with_cancellation(
                delay, cancel_token=self._cancel_token, sleep=self._sleep
            )
            if cancelled:
                return RetryResult(
                    ok=False,
                    attempts=attempt,
                    error_class=error_class,
                    detail=f"cancelled during backoff: {detail}",
                )

    async def _call(self, operation: Callable[[], Awaitable[T]]) -> T:
        timeout = self._policy.operation_timeout_seconds
        if timeout is None:
            return await operation()
        return await run_with_timeout(operation(), timeout)

    @staticmethod
    def _log_attempt(
        operation_name: str,
        attempt: int,
        limit: int,
        error_class: ErrorClass,
        delay: float | None,
        detail: str,
    ) -> None:
        logger.warning(
            "retry_attempt",
            extra={
                "operation": operation_name,
                "attempt": attempt,
                "max_attempts": limit,
                "outcome": "failure",
                "classification": error_class.value,
                "delay_seconds": delay,
                "last_error": detail,
            },
        )


__all__ = [
    "CLASSIFICATION_TABLE",
    "PROVIDER_CODE_TABLE",
    "RetryExecutor",
    "RetryPolicy",
    "RetryResult",
    "classify_error",
    "classify_message",
    "error_detail",
]
