"""Content hasher — capture a config's live content and fingerprint it for change detection."""

from __future__ import annotations

import hashlib
from fnmatch import fnmatch
from pathlib import Path, PurePosixPath
from typing import Iterable

from loguru import logger

from confighistory.errors import ReadError
from confighistory.models.backup_record import Snapshot
from confighistory.models.tracked_config import TrackedConfig
from confighistory.utils import is_transient


def matches_filters(
    rel_path: str, include: Iterable[str], exclude: Iterable[str]
) -> bool:
    """
    Include/exclude test for a file inside a tracked directory.

    Patterns are matched against both the relative POSIX path and the base
    name. An empty include list accepts everything; exclusion wins.
    """
    name = PurePosixPath(rel_path).name

    def _hit(patterns: Iterable[str]) -> bool:
        return any(fnmatch(rel_path, p) or fnmatch(name, p) for p in patterns)

    include = list(include)
    if include and not _hit(include):
        return False
    return not _hit(exclude)


def iter_tracked_files(config: TrackedConfig, root: Path) -> list[tuple[str, Path]]:
    """Files of a directory config that pass its filters, sorted by relative path."""
    found: list[tuple[str, Path]] = []
    for child in root.rglob("*"):
        if not child.is_file() or child.name.endswith(".tmp"):
            continue
        rel = child.relative_to(root).as_posix()
        if matches_filters(rel, config.include_file_patterns, config.exclude_file_patterns):
            found.append((rel, child))
    found.sort(key=lambda item: item[0])
    return found


class ContentHasher:
    """Deterministic, content-only SHA-256 fingerprints (mtime and permissions are ignored)."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = base_dir

    def live_path(self, config: TrackedConfig) -> Path:
        return config.resolve(self._base_dir)

    def snapshot(self, config: TrackedConfig) -> Snapshot:
        """Read the current content of *config*. Raises ReadError if missing or unreadable."""
        target = self.live_path(config)
        if config.is_directory:
            if not target.is_dir():
                raise ReadError(f"Tracked directory not found: {target}")
            try:
                files = {rel: path.read_bytes() for rel, path in iter_tracked_files(config, target)}
            except OSError as e:
                raise ReadError(f"Failed to read {target}: {e}", retryable=is_transient(e)) from e
            return Snapshot(files=files, is_directory=True)

        if not target.is_file():
            raise ReadError(f"Tracked file not found: {target}")
        try:
            content = target.read_bytes()
        except OSError as e:
            raise ReadError(f"Failed to read {target}: {e}", retryable=is_transient(e)) from e
        return Snapshot(files={target.name: content})

    @staticmethod
    def fingerprint(snapshot: Snapshot) -> str:
        """SHA-256 hex digest of a snapshot's content."""
        h = hashlib.sha256()
        if not snapshot.is_directory:
            h.update(snapshot.single_content())
            return h.hexdigest()

        # Length-prefixed (path, content) pairs in path order
        for rel in sorted(snapshot.files):
            encoded = rel.encode("utf-8")
            content = snapshot.files[rel]
            h.update(len(encoded).to_bytes(8, "big"))
            h.update(encoded)
            h.update(len(content).to_bytes(8, "big"))
            h.update(content)
        return h.hexdigest()

    def hash(self, config: TrackedConfig) -> str:
        snap = self.snapshot(config)
        digest = self.fingerprint(snap)
        logger.debug(f"Fingerprint {config.path}: {digest[:12]} ({len(snap.files)} file(s))")
        return digest
