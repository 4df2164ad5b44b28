"""
cloud-provisioner — extracted credential sink

Purpose
- Persist every extracted credential in two encodings: one per line, and all
  credentials joined by commas on a single line.

Functional requirements
- Both files are truncated when the sink opens.
- ``append`` is safe to call from any task or thread; one credential per work item.
- ``append_async`` runs the periodic flush in a worker thread.
- Every flush writes both files from the same in-memory snapshot with an atomic
  replace, so the two encodings never disagree.
- The sink flushes on close and on every exit path of its context manager.
"""

from __future__ import annotations

import asyncio
import logging
import re
import threading
from pathlib import Path
from types import TracebackType
from typing import Final

from cloud_provisioner.domain.models import Credential
from cloud_provisioner.utils.fs import PathLike, atomic_write, truncate_file

logger = logging.getLogger(__name__)

_EXPECTED_CREDENTIAL_SHAPE: Final[re.Pattern[str]] = re.compile(r"^[A-Za-z0-9_-]+$")


class SinkClosedError(RuntimeError):
    """Raised when appending to a sink that was already closed."""


def encode_lines(values: list[str]) -> str:
    return "".join(f"{value}\n" for value in values)


def encode_comma_joined(values: list[str]) -> str:
    return ",".join(values)


class ResultSink:
    """Thread-safe, append-only credential store backed by two output files."""

    def __init__(
        self,
        lines_path: PathLike,
        comma_path: PathLike,
        *,
        staging_dir: PathLike | None = None,
        flush_every: int = 10,
    ) -> None:
        if flush_every <= 0:
            raise ValueError("flush_every must be > 0")
        self._lines_path = Path(lines_path)
        self._comma_path = Path(comma_path)
        self._staging_dir = Path(staging_dir) if staging_dir is not None else None
        self._flush_every = flush_every
        self._lock = threading.Lock()
        self._credentials: list[Credential] = []
        self._seen: set[str] = set()
        self._unflushed = 0
        self._opened = False
        self._closed = False

    @property
    def lines_path(self) -> Path:
        return self._lines_path

    @property
    def comma_path(self) -> Path:
        return self._comma_path

    @property
    def output_files(self) -> tuple[str, ...]:
        return (str(self._lines_path), str(self._comma_path))

    def open(self) -> ResultSink:
        with self._lock:
            if self._opened:
                return self
            truncate_file(self._lines_path)
            truncate_file(self._comma_path)
            self._opened = True
        logger.info(
            "sink_opened",
            extra={"lines_file": str(self._lines_path), "comma_file": str(self._comma_path)},
        )
        return self

    def append(self, credential: Credential) -> bool:
        """Record ``credential``; returns ``False`` if its work item already has one."""

        accepted, flush_due = self._record(credential)
        if flush_due:
            self.flush()
        return accepted

    async def append_async(self, credential: Credential) -> bool:
        """Same as ``append``, with the periodic flush run off the event loop thread."""

        accepted, flush_due = self._record(credential)
        if flush_due:
            await asyncio.to_thread(self.flush)
        return accepted

    def flush(self) -> None:
        with self._lock:
            self._flush_locked()

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            if self._opened:
                self._flush_locked()
            self._closed = True
            count = len(self._credentials)
        logger.info("sink_closed", extra={"credentials": count})

    @property
    def credentials(self) -> tuple[Credential, ...]:
        with self._lock:
            return tuple(self._credentials)

    def __len__(self) -> int:
        with self._lock:
            return len(self._credentials)

    def __enter__(self) -> ResultSink:
        return self.open()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()

    def _record(self, credential: Credential) -> tuple[bool, bool]:
        flush_due = False
        with self._lock:
            if self._closed:
                raise SinkClosedError("result sink is closed")
            duplicate = credential.work_item_id in self._seen
            if not duplicate:
                self._seen.add(credential.work_item_id)
                self._credentials.append(credential)
                self._unflushed += 1
                if self._unflushed >= self._flush_every:
                    # Claimed here so concurrent appends schedule one flush.
                    self._unflushed = 0
                    flush_due = True

        if duplicate:
            logger.warning(
                "sink_duplicate_ignored", extra={"work_item_id": credential.work_item_id}
            )
            return False, False
        if _EXPECTED_CREDENTIAL_SHAPE.match(credential.value) is None:
            logger.warning(
                "credential_unexpected_format", extra={"work_item_id": credential.work_item_id}
            )
        return True, flush_due

    def _flush_locked(self) -> None:
        if not self._opened:
            raise RuntimeError("result sink must be opened before flushing")
        values = [credential.value for credential in self._credentials]
        atomic_write(self._lines_path, encode_lines(values), staging_dir=self._staging_dir)
        atomic_write(self._comma_path, encode_comma_joined(values), staging_dir=self._staging_dir)
        self._unflushed = 0
        logger.debug("sink_flushed", extra={"credentials": len(values)})


__all__ = [
    "ResultSink",
    "SinkClosedError",
    "encode_comma_joined",
    "encode_lines",
]
