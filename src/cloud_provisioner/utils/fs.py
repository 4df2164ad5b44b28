"""
cloud-provisioner — filesystem utilities

Purpose
- Atomic replacement of output artifacts and run-scoped scratch directories.

Functional requirements
- Atomic writes stage a temp file on the destination's filesystem and replace in one step.
- Scratch directories are removed on every exit path of their scope.
"""

from __future__ import annotations

import contextlib
import os
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Iterator

PathLike = str | os.PathLike[str]

__all__ = [
    "atomic_write",
    "scratch_directory",
    "truncate_file",
]


def atomic_write(
    path: PathLike,
    data: str,
    *,
    staging_dir: PathLike | None = None,
    encoding: str = "utf-8",
) -> None:
    """
    Atomically write ``data`` to ``path``.

    The temp file lives in ``staging_dir`` when given (it must share a
    filesystem with ``path``), otherwise next to the target. It is flushed,
    fsynced and moved over the target with ``os.replace``.
    """

    target = Path(path)
    target_parent = target.parent.resolve(strict=True)
    stage_parent = target_parent
    if staging_dir is not None:
        stage_parent = Path(staging_dir).resolve(strict=True)
    if not stage_parent.is_dir():
        raise NotADirectoryError(f"{stage_parent!s} is not a directory")

    fd, temp_name = tempfile.mkstemp(
        prefix=f".{target.name}.",
        suffix=".tmp",
        dir=str(stage_parent),
    )
    temp_path = Path(temp_name)

    try:
        with os.fdopen(fd, "w", encoding=encoding, newline="") as file_handle:
            file_handle.write(data)
            file_handle.flush()
            os.fsync(file_handle.fileno())
        os.replace(temp_path, target)
    except Exception:
        with contextlib.suppress(OSError):
            temp_path.unlink(missing_ok=True)
        raise


def truncate_file(path: PathLike) -> Path:
    """Create or empty ``path`` and return it."""

    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text("", encoding="utf-8")
    return target


@contextmanager
def scratch_directory(parent: PathLike, *, prefix: str = ".cloudprov-") -> Iterator[Path]:
    """Yield a fresh directory under ``parent`` and remove it on exit."""

    parent_path = Path(parent)
    parent_path.mkdir(parents=True, exist_ok=True)
    scratch = Path(tempfile.mkdtemp(prefix=prefix, dir=str(parent_path)))
    try:
        yield scratch
    finally:
        shutil.rmtree(scratch, ignore_errors=True)
