"""Shared utility functions."""

from __future__ import annotations

import errno
import hashlib
import os
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

from loguru import logger

from confighistory.errors import ReadError, WriteError

T = TypeVar("T")

ILLEGAL_FILENAME_CHARS = '<>:"/\\|?*'

_TRANSIENT_ERRNOS = {
    errno.EAGAIN,
    errno.EBUSY,
    errno.EIO,
    errno.ESTALE,
    errno.ETIMEDOUT,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.ENETRESET,
    errno.ENETDOWN,
    errno.ENETUNREACH,
}


def format_size(size_bytes: int) -> str:
    """Format byte count to human-readable string."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.2f} GB"


def sanitize_filename(name: str) -> str:
    """Remove or replace illegal filename characters."""
    for ch in ILLEGAL_FILENAME_CHARS:
        name = name.replace(ch, "_")
    name = name.replace("\n", " ").replace("\r", "").strip()
    # Collapse multiple underscores / spaces
    while "  " in name:
        name = name.replace("  ", " ")
    while "__" in name:
        name = name.replace("__", "_")
    return name.strip(". ")


def path_key(path: str) -> str:
    """Directory name for a tracked path: readable prefix plus a short digest."""
    digest = hashlib.sha1(path.encode("utf-8")).hexdigest()[:8]
    readable = sanitize_filename(path) or "config"
    return f"{readable}-{digest}"


def stage_bytes(path: Path, data: bytes) -> Path:
    """Write *data* to a synced temp file beside *path*; the caller moves it into place."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    try:
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
    except OSError:
        tmp.unlink(missing_ok=True)
        raise
    return tmp


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Write *data* next to *path* and move it into place in one rename."""
    tmp = stage_bytes(path, data)
    try:
        tmp.replace(path)
    except OSError:
        tmp.unlink(missing_ok=True)
        raise


def is_transient(exc: BaseException) -> bool:
    """True for I/O failures worth one more attempt."""
    if isinstance(exc, TimeoutError):
        return True
    if isinstance(exc, (ReadError, WriteError)):
        return exc.retryable
    if isinstance(exc, OSError):
        return exc.errno in _TRANSIENT_ERRNOS
    return False


def call_with_timeout(
    func: Callable[[], T],
    timeout: float | None,
    *,
    description: str = "filesystem operation",
    error_cls: type[ReadError] | type[WriteError] = ReadError,
) -> T:
    """
    Run *func* on a helper thread and wait at most *timeout* seconds.

    A timed-out call keeps running in the background (it is never interrupted
    mid-write) but the caller gets a retryable error instead of hanging.
    """
    if not timeout:
        return func()

    outcome: dict[str, object] = {}

    def _runner() -> None:
        try:
            outcome["value"] = func()
        except BaseException as e:  # re-raised on the calling thread
            outcome["error"] = e

    worker = threading.Thread(target=_runner, name="confighistory-io", daemon=True)
    worker.start()
    worker.join(timeout)
    if worker.is_alive():
        raise error_cls(f"{description} timed out after {timeout:g}s", retryable=True)
    if "error" in outcome:
        raise outcome["error"]  # type: ignore[misc]
    return outcome["value"]  # type: ignore[return-value]


def retry_io(
    func: Callable[[], T],
    *,
    description: str = "filesystem operation",
    attempts: int = 2,
    backoff: float = 0.2,
) -> T:
    """Call *func*, retrying transient I/O failures with a linear backoff."""
    for attempt in range(1, attempts + 1):
        try:
            return func()
        except (OSError, ReadError, WriteError) as e:
            if attempt >= attempts or not is_transient(e):
                raise
            logger.warning(f"{description} failed ({e}), retrying in {backoff * attempt:.1f}s")
            time.sleep(backoff * attempt)
    raise AssertionError("unreachable")
