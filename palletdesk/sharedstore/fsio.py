"""
Filesystem helpers for files on a shared directory.

The shared directory may be a network share written by several machines.
Without a transactional filesystem the minimum guarantee we can give is
that a reader never observes a half-written file: content is written to a
temporary sibling, flushed to disk, and then moved over the target with
os.replace(), which is atomic on the same filesystem.

All helpers here are blocking; async callers run them in an executor.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Any, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def write_atomic(path: Path, data: bytes) -> None:
    """Replace path with data without exposing a partial file.

    The temporary file lives in the target directory so that os.replace
    never crosses a filesystem boundary.

    Raises:
        OSError: If the directory is missing or the write fails. The
            previous content of path is left intact in that case.
    """
    fd, tmp_path = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent))
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    finally:
        if os.path.exists(tmp_path):
            try:
                os.remove(tmp_path)
            except OSError:
                logger.warning(f"Could not remove temporary file {tmp_path}")


def read_if_exists(path: Path) -> bytes | None:
    """Read a whole file, returning None when it does not exist.

    Other errors (permissions, share unavailable) propagate.
    """
    try:
        return path.read_bytes()
    except FileNotFoundError:
        return None


def unlink_if_exists(path: Path) -> bool:
    """Delete a file; return False when it was already gone."""
    try:
        path.unlink()
        return True
    except FileNotFoundError:
        return False


def preserve_copy(path: Path, suffix: str) -> Path | None:
    """Copy path aside as <name><suffix>, returning the copy's path."""
    if not path.exists():
        return None
    target = path.with_name(path.name + suffix)
    shutil.copy2(path, target)
    return target


def append_text(path: Path, text: str) -> None:
    """Append text to a file, creating it if needed."""
    with open(path, "a", encoding="utf-8") as f:
        f.write(text)


async def run_blocking(func: Callable[..., T], *args: Any) -> T:
    """Run a blocking filesystem call without stalling the event loop."""
    return await asyncio.get_event_loop().run_in_executor(None, functools.partial(func, *args))
