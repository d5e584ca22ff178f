"""Per-path locks — serialize snapshot and restore pipelines of the same config."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from loguru import logger

from confighistory.errors import ConcurrencyConflict


class PathLockRegistry:
    """
    Explicit map from tracked path to a lock.

    Locks are re-entrant so a pipeline holding a path may call store operations
    that take the same path. Different paths never contend; the registry lock
    only guards the map.
    """

    def __init__(self, timeout: float | None = 30.0) -> None:
        self._timeout = timeout
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def _lock_for(self, path: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = threading.RLock()
                self._locks[path] = lock
            return lock

    @contextmanager
    def hold(self, path: str, timeout: float | None = None) -> Iterator[None]:
        """Hold *path*'s lock for the duration of the block; ConcurrencyConflict on timeout."""
        wait = self._timeout if timeout is None else timeout
        lock = self._lock_for(path)
        acquired = lock.acquire(timeout=wait) if wait is not None else lock.acquire()
        if not acquired:
            raise ConcurrencyConflict(f"Another backup or restore of '{path}' is in progress")
        logger.trace(f"Lock acquired: {path}")
        try:
            yield
        finally:
            lock.release()
            logger.trace(f"Lock released: {path}")
